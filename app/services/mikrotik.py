"""MikroTik hotspot IP-binding management.

Paid customers whose device MAC was captured by the captive portal get a
``bypassed`` entry under ``/ip/hotspot/ip-binding`` so they are online
without typing the voucher. Router calls are best-effort: every outcome is
returned as an ``AuthorizationOutcome`` and never raised to the caller.
"""

from __future__ import annotations

import concurrent.futures
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

import routeros_api
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.network import MacBinding, MacBindingStatus
from app.models.orders import AutologinStatus
from app.services.common import as_utc, utcnow

logger = logging.getLogger(__name__)

IP_BINDING_PATH = "/ip/hotspot/ip-binding"
_NON_HEX_RE = re.compile(r"[^0-9a-fA-F]")

_router_executor = concurrent.futures.ThreadPoolExecutor(
    max_workers=4, thread_name_prefix="routeros"
)

# A pending row may still have a router entry: a timed-out call keeps running.
_LIVE_STATUSES = (MacBindingStatus.active, MacBindingStatus.pending)


class RouterTimeout(Exception):
    """RouterOS API call did not finish within the configured timeout."""

    pass


@dataclass(frozen=True)
class MikrotikConfig:
    enabled: bool = False
    host: str = ""
    port: int = 8728
    username: str = ""
    password: str = ""
    use_ssl: bool = False
    hotspot_server: str | None = "hotspot1"
    timeout_seconds: int = 15

    @classmethod
    def from_settings(cls) -> "MikrotikConfig":
        return cls(
            enabled=settings.mikrotik_enabled,
            host=settings.mikrotik_host,
            port=settings.mikrotik_port,
            username=settings.mikrotik_username,
            password=settings.mikrotik_password,
            use_ssl=settings.mikrotik_use_ssl,
            hotspot_server=settings.mikrotik_hotspot_server or None,
            timeout_seconds=settings.mikrotik_timeout_seconds,
        )

    @property
    def available(self) -> bool:
        return bool(self.enabled and self.host and self.username)


@dataclass
class AuthorizationOutcome:
    status: AutologinStatus
    message: str
    mac_address: str | None = None
    binding_id: str | None = None

    @property
    def success(self) -> bool:
        return self.status == AutologinStatus.success


def normalize_mac_address(mac: str | None) -> str | None:
    """Return ``AA:BB:CC:DD:EE:FF`` or None when ``mac`` is not 12 hex digits."""
    if not mac:
        return None
    cleaned = _NON_HEX_RE.sub("", mac)
    if len(cleaned) != 12:
        return None
    cleaned = cleaned.upper()
    return ":".join(cleaned[i : i + 2] for i in range(0, 12, 2))


def _routeros_api(config: MikrotikConfig) -> routeros_api.RouterOsApiPool:
    if not config.host:
        raise ValueError("RouterOS host is required")
    return routeros_api.RouterOsApiPool(
        host=config.host,
        username=config.username,
        password=config.password,
        port=int(config.port or 8728),
        use_ssl=bool(config.use_ssl),
        plaintext_login=True,
    )


def _binding_id(entry: dict) -> str | None:
    return entry.get("id") or entry.get(".id")


def _extract_added_id(result: Any) -> str | None:
    done = getattr(result, "done_message", None)
    if isinstance(done, dict) and done.get("ret"):
        return str(done["ret"])
    if isinstance(result, (list, tuple)) and result:
        first = result[0]
        if isinstance(first, dict):
            value = first.get("ret") or _binding_id(first)
            return str(value) if value else None
    if isinstance(result, dict):
        value = result.get("ret") or _binding_id(result)
        return str(value) if value else None
    return None


class MikrotikBindings:
    def __init__(self, config: MikrotikConfig | None = None):
        self._config = config

    @property
    def config(self) -> MikrotikConfig:
        return self._config or MikrotikConfig.from_settings()

    def _call(self, fn: Callable[[Any], Any]) -> Any:
        """Run ``fn(ip_binding_resource)`` on a fresh connection with a timeout."""
        config = self.config

        def _run():
            pool = _routeros_api(config)
            try:
                api = pool.get_api()
                return fn(api.get_resource(IP_BINDING_PATH))
            finally:
                pool.disconnect()

        future = _router_executor.submit(_run)
        try:
            return future.result(timeout=config.timeout_seconds)
        except concurrent.futures.TimeoutError as exc:
            raise RouterTimeout(
                f"RouterOS call to {config.host} timed out after {config.timeout_seconds}s"
            ) from exc

    @staticmethod
    def _remove_all(resource, mac: str) -> int:
        removed = 0
        for entry in resource.get(**{"mac-address": mac}):
            existing_id = _binding_id(entry)
            if existing_id:
                resource.remove(id=existing_id)
                removed += 1
        return removed

    @staticmethod
    def _replace_binding(resource, mac: str, params: dict[str, str]) -> str | None:
        MikrotikBindings._remove_all(resource, mac)
        return _extract_added_id(resource.add(**params))

    def authorize(
        self,
        db: Session,
        mac: str | None,
        ip: str | None = None,
        duration_minutes: int | None = None,
        comment: str | None = None,
        order_id: int | None = None,
    ) -> AuthorizationOutcome:
        config = self.config
        if not config.enabled:
            return AuthorizationOutcome(AutologinStatus.skipped, "MikroTik not enabled")
        normalized = normalize_mac_address(mac)
        if not normalized:
            return AuthorizationOutcome(AutologinStatus.failed, "Invalid MAC address")
        if not config.available:
            return AuthorizationOutcome(
                AutologinStatus.skipped, "MikroTik not configured", mac_address=normalized
            )

        params = {
            "mac-address": normalized,
            "type": "bypassed",
            "comment": comment or f"Hotspot - Order {order_id or 'N/A'}",
        }
        if ip:
            params["address"] = ip
        if config.hotspot_server:
            params["server"] = config.hotspot_server

        expires_at = (
            utcnow() + timedelta(minutes=int(duration_minutes)) if duration_minutes else None
        )
        try:
            binding_id = self._call(lambda resource: self._replace_binding(resource, normalized, params))
        except (
            RouterTimeout,
            routeros_api.exceptions.RouterOsApiError,
            OSError,
            ValueError,
        ) as exc:
            logger.warning("MikroTik authorize failed for %s: %s", normalized, exc)
            self._record(db, order_id, normalized, ip, None, params["comment"], MacBindingStatus.pending, expires_at, str(exc))
            return AuthorizationOutcome(
                AutologinStatus.failed,
                "Failed to authorize device",
                mac_address=normalized,
            )

        self._supersede(db, normalized)
        self._record(db, order_id, normalized, ip, binding_id, params["comment"], MacBindingStatus.active, expires_at, None)
        logger.info("MikroTik binding %s created for %s", binding_id, normalized)
        return AuthorizationOutcome(
            AutologinStatus.success,
            "Device authorized for WiFi access",
            mac_address=normalized,
            binding_id=binding_id,
        )

    @staticmethod
    def _supersede(db: Session, mac: str) -> None:
        previous = db.scalars(
            select(MacBinding).where(
                MacBinding.mac_address == mac,
                MacBinding.status.in_(_LIVE_STATUSES),
            )
        ).all()
        for binding in previous:
            binding.status = MacBindingStatus.removed

    @staticmethod
    def _record(
        db: Session,
        order_id: int | None,
        mac: str,
        ip: str | None,
        binding_id: str | None,
        comment: str | None,
        status: MacBindingStatus,
        expires_at,
        error: str | None,
    ) -> MacBinding:
        binding = MacBinding(
            order_id=order_id,
            mac_address=mac,
            ip_address=ip,
            binding_id=binding_id,
            comment=comment,
            status=status,
            expires_at=expires_at,
            error_message=error,
        )
        db.add(binding)
        db.commit()
        return binding

    def remove(self, db: Session, mac: str | None) -> dict:
        config = self.config
        if not config.enabled:
            return {"success": False, "message": "MikroTik not enabled"}
        normalized = normalize_mac_address(mac)
        if not normalized:
            return {"success": False, "message": "Invalid MAC address"}

        try:
            removed = self._call(lambda resource: self._remove_all(resource, normalized))
        except (
            RouterTimeout,
            routeros_api.exceptions.RouterOsApiError,
            OSError,
            ValueError,
        ) as exc:
            logger.warning("MikroTik remove failed for %s: %s", normalized, exc)
            return {"success": False, "message": "Failed to remove binding"}

        self._supersede(db, normalized)
        db.commit()
        if not removed:
            return {"success": True, "message": "No binding found", "removed": 0}
        return {"success": True, "message": f"Removed {removed} binding(s)", "removed": removed}

    def list_active_bindings(self) -> list[dict]:
        return self._call(lambda resource: [dict(entry) for entry in resource.get(type="bypassed")])

    def test_connection(self) -> dict:
        config = self.config
        if not config.host or not config.username:
            return {"success": False, "message": "MikroTik not configured"}

        def _identity():
            pool = _routeros_api(config)
            try:
                api = pool.get_api()
                identity = api.get_resource("/system/identity").get()
                resource = api.get_resource("/system/resource").get()
                return identity, resource
            finally:
                pool.disconnect()

        future = _router_executor.submit(_identity)
        try:
            identity, resource = future.result(timeout=config.timeout_seconds)
        except concurrent.futures.TimeoutError:
            return {"success": False, "message": "Connection timed out"}
        except (routeros_api.exceptions.RouterOsApiError, OSError) as exc:
            logger.warning("MikroTik connection test failed: %s", exc)
            return {"success": False, "message": "Connection failed"}
        name = identity[0].get("name", "Unknown") if identity else "Unknown"
        version = resource[0].get("version", "Unknown") if resource else "Unknown"
        return {
            "success": True,
            "message": f"Connected to {name}",
            "identity": name,
            "version": version,
        }

    def expire_due_bindings(self, db: Session) -> int:
        """Expire bindings past their window and drop them from the router.

        Pending rows are included and removed by MAC address. A row whose
        router removal fails keeps its status and is retried on the next run.
        """
        now = utcnow()
        due = [
            binding
            for binding in db.scalars(
                select(MacBinding).where(
                    MacBinding.status.in_(_LIVE_STATUSES),
                    MacBinding.expires_at.is_not(None),
                )
            ).all()
            if as_utc(binding.expires_at) <= now
        ]
        if not due:
            return 0
        due_ids = [binding.id for binding in due]
        router_available = self.config.available
        expired = 0
        for binding in due:
            still_bound = db.scalars(
                select(MacBinding).where(
                    MacBinding.mac_address == binding.mac_address,
                    MacBinding.status == MacBindingStatus.active,
                    MacBinding.id.not_in(due_ids),
                )
            ).first()
            if router_available and not still_bound:
                try:
                    self._call(
                        lambda resource, mac=binding.mac_address: self._remove_all(resource, mac)
                    )
                except (
                    RouterTimeout,
                    routeros_api.exceptions.RouterOsApiError,
                    OSError,
                    ValueError,
                ) as exc:
                    logger.warning("Could not remove expired binding %s: %s", binding.mac_address, exc)
                    binding.error_message = str(exc)
                    continue
            binding.status = MacBindingStatus.expired
            expired += 1
        db.commit()
        return expired


mikrotik_bindings = MikrotikBindings()
