"""Voucher security gate.

Every voucher validation passes through ``VoucherGate.check_and_validate``
before anything is activated. The gate applies, in order: the persisted IP
block list, the per-IP fixed-window rate limit (plus the escalated lockout),
voucher lookup, disabled/used/expired checks and the active-session check.
Security relevant outcomes are written to ``voucher_security_logs``.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import record_gate_denial
from app.models.catalog import Plan
from app.models.orders import Order, OrderStatus
from app.models.vouchers import (
    FlaggedIp,
    SecurityEventType,
    SecuritySeverity,
    Voucher,
    VoucherSecurityLog,
    VoucherSourceKind,
    VoucherStatus,
    VoucherUsage,
)
from app.services.common import as_utc, utcnow
from app.services.radius import radius_vouchers
from app.services.rate_counters import CounterStore, get_counter_store

logger = logging.getLogger(__name__)


class DenialCode(enum.Enum):
    ip_blocked = "ip_blocked"
    rate_limited = "rate_limited"
    not_found = "not_found"
    disabled = "disabled"
    already_used = "already_used"
    expired = "expired"
    active_session = "active_session"


@dataclass(frozen=True)
class VoucherSource:
    """Where a voucher code lives: a generated voucher row or a paid order."""

    kind: VoucherSourceKind
    source_id: int
    code: str


@dataclass
class ClientInfo:
    ip_address: str | None = None
    user_agent: str | None = None
    mac_address: str | None = None

    @property
    def key(self) -> str:
        return self.ip_address or "unknown"


@dataclass
class ValidationResult:
    valid: bool
    message: str
    denial: DenialCode | None = None
    retry_after: int | None = None
    source: VoucherSource | None = None
    plan: Plan | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GateThresholds:
    rate_window_seconds: int = 60
    rate_max_attempts: int = 10
    failure_window_seconds: int = 300
    failure_threshold: int = 30
    lockout_seconds: int = 900
    block_minutes: int = 60

    @classmethod
    def from_settings(cls) -> "GateThresholds":
        return cls(
            rate_window_seconds=settings.voucher_rate_window_seconds,
            rate_max_attempts=settings.voucher_rate_max_attempts,
            failure_window_seconds=settings.voucher_failure_window_seconds,
            failure_threshold=settings.voucher_failure_threshold,
            lockout_seconds=settings.voucher_lockout_seconds,
            block_minutes=settings.voucher_block_minutes,
        )


def _deny(code: DenialCode, message: str, **kwargs) -> ValidationResult:
    record_gate_denial(code.value)
    return ValidationResult(valid=False, message=message, denial=code, **kwargs)


class VoucherGate:
    def __init__(
        self,
        store: CounterStore | None = None,
        thresholds: GateThresholds | None = None,
    ):
        self._store = store
        self._thresholds = thresholds

    @property
    def store(self) -> CounterStore:
        return self._store or get_counter_store()

    @property
    def thresholds(self) -> GateThresholds:
        return self._thresholds or GateThresholds.from_settings()

    def log_event(
        self,
        db: Session,
        event_type: SecurityEventType,
        client: ClientInfo,
        *,
        voucher_code: str | None = None,
        severity: SecuritySeverity = SecuritySeverity.info,
        details: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> None:
        db.add(
            VoucherSecurityLog(
                event_type=event_type,
                severity=severity,
                voucher_code=voucher_code,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                mac_address=client.mac_address,
                details=details,
            )
        )
        if commit:
            db.commit()

    def is_ip_blocked(self, db: Session, ip_address: str | None) -> FlaggedIp | None:
        if not ip_address:
            return None
        flagged = db.scalars(
            select(FlaggedIp).where(FlaggedIp.ip_address == ip_address)
        ).first()
        if not flagged:
            return None
        if flagged.is_permanent:
            return flagged
        blocked_until = as_utc(flagged.blocked_until)
        if blocked_until and blocked_until > utcnow():
            return flagged
        return None

    def flag_ip(
        self,
        db: Session,
        ip_address: str,
        reason: str,
        block_minutes: int | None = None,
        permanent: bool = False,
    ) -> FlaggedIp:
        minutes = block_minutes if block_minutes is not None else self.thresholds.block_minutes
        blocked_until = utcnow() + timedelta(minutes=minutes)
        flagged = db.scalars(
            select(FlaggedIp).where(FlaggedIp.ip_address == ip_address)
        ).first()
        if flagged:
            flagged.reason = reason
            flagged.failed_attempts = (flagged.failed_attempts or 0) + 1
            flagged.blocked_until = blocked_until
            flagged.is_permanent = flagged.is_permanent or permanent
        else:
            flagged = FlaggedIp(
                ip_address=ip_address,
                reason=reason,
                failed_attempts=1,
                blocked_until=blocked_until,
                is_permanent=permanent,
            )
            db.add(flagged)
        self.log_event(
            db,
            SecurityEventType.ip_locked,
            ClientInfo(ip_address=ip_address),
            severity=SecuritySeverity.critical,
            details={
                "reason": reason,
                "blocked_until": blocked_until.isoformat(),
                "block_minutes": minutes,
                "permanent": permanent,
            },
            commit=False,
        )
        db.commit()
        logger.warning("Flagged IP %s: %s", ip_address, reason)
        return flagged

    def unblock_ip(self, db: Session, ip_address: str) -> bool:
        result = db.execute(delete(FlaggedIp).where(FlaggedIp.ip_address == ip_address))
        db.commit()
        self.store.reset(f"fail:{ip_address}")
        self.store.reset(f"rate:{ip_address}")
        return bool(result.rowcount)

    def record_failed_attempt(self, db: Session, client: ClientInfo) -> bool:
        """Count a failed lookup; returns True when the IP crossed the lockout threshold."""
        thresholds = self.thresholds
        count, _ = self.store.hit(f"fail:{client.key}", thresholds.failure_window_seconds)
        if count < thresholds.failure_threshold:
            return False
        self.store.lock(f"rate:{client.key}", thresholds.lockout_seconds)
        if client.ip_address:
            self.flag_ip(
                db,
                client.ip_address,
                "Too many failed voucher validation attempts",
            )
        return True

    def _check_rate(self, client: ClientInfo) -> tuple[bool, int, bool]:
        locked_for = self.store.locked_for(f"rate:{client.key}")
        if locked_for:
            return False, locked_for, True
        thresholds = self.thresholds
        count, resets_in = self.store.hit(f"rate:{client.key}", thresholds.rate_window_seconds)
        if count > thresholds.rate_max_attempts:
            return False, resets_in, False
        return True, 0, False

    def find_source(self, db: Session, voucher_code: str) -> tuple[VoucherSource, Any] | None:
        voucher = db.scalars(select(Voucher).where(Voucher.code == voucher_code)).first()
        if voucher:
            return VoucherSource(VoucherSourceKind.vouchers, voucher.id, voucher.code), voucher
        order = db.scalars(
            select(Order).where(
                Order.voucher_code == voucher_code,
                Order.status.in_([OrderStatus.paid, OrderStatus.completed]),
            )
        ).first()
        if order:
            return VoucherSource(VoucherSourceKind.orders, order.id, order.voucher_code), order
        return None

    def check_and_validate(
        self,
        db: Session,
        radius_db: Session,
        voucher_code: str,
        client: ClientInfo,
    ) -> ValidationResult:
        blocked = self.is_ip_blocked(db, client.ip_address)
        if blocked:
            self.log_event(
                db,
                SecurityEventType.validation_attempt,
                client,
                voucher_code=voucher_code,
                severity=SecuritySeverity.warning,
                details={"blocked": True, "reason": blocked.reason},
            )
            return _deny(DenialCode.ip_blocked, "Access denied. Please contact support.")

        allowed, retry_after, locked = self._check_rate(client)
        if not allowed:
            self.log_event(
                db,
                SecurityEventType.rate_limit_exceeded,
                client,
                voucher_code=voucher_code,
                severity=SecuritySeverity.warning,
                details={"retry_after": retry_after, "locked": locked},
            )
            prefix = "Too many attempts" if locked else "Rate limit exceeded"
            return _deny(
                DenialCode.rate_limited,
                f"{prefix}. Try again in {retry_after} seconds.",
                retry_after=retry_after,
            )

        found = self.find_source(db, voucher_code)
        if not found:
            locked_out = self.record_failed_attempt(db, client)
            self.log_event(
                db,
                SecurityEventType.validation_failed,
                client,
                voucher_code=voucher_code,
                severity=SecuritySeverity.critical if locked_out else SecuritySeverity.warning,
                details={"reason": "not_found"},
            )
            if locked_out:
                return _deny(
                    DenialCode.ip_blocked,
                    "Too many failed attempts. Access temporarily blocked.",
                )
            return _deny(DenialCode.not_found, "Voucher code not found")

        source, record = found
        plan = db.get(Plan, record.plan_id)

        if source.kind == VoucherSourceKind.vouchers and record.status == VoucherStatus.disabled:
            self.log_event(
                db,
                SecurityEventType.validation_failed,
                client,
                voucher_code=voucher_code,
                details={"reason": "disabled"},
            )
            return _deny(DenialCode.disabled, "This voucher has been disabled", source=source)

        usage = self._usage_evidence(db, radius_db, source, record)
        if usage:
            self.log_event(
                db,
                SecurityEventType.multiple_use_attempt,
                client,
                voucher_code=voucher_code,
                severity=SecuritySeverity.warning,
                details=usage,
            )
            return _deny(
                DenialCode.already_used,
                "This voucher has already been used",
                source=source,
                details=usage,
            )

        expires_at = self._expires_at(source, record)
        if expires_at and expires_at < utcnow():
            self.log_event(
                db,
                SecurityEventType.validation_failed,
                client,
                voucher_code=voucher_code,
                details={"reason": "expired", "expires_at": expires_at.isoformat()},
            )
            return _deny(DenialCode.expired, "This voucher has expired", source=source)

        if radius_vouchers.has_active_session(radius_db, voucher_code):
            self.log_event(
                db,
                SecurityEventType.validation_failed,
                client,
                voucher_code=voucher_code,
                details={"reason": "active_session"},
            )
            return _deny(
                DenialCode.active_session, "This voucher is currently in use", source=source
            )

        self.log_event(
            db,
            SecurityEventType.validation_success,
            client,
            voucher_code=voucher_code,
            details={"source": source.kind.value, "plan": plan.name if plan else None},
        )
        return ValidationResult(
            valid=True, message="Voucher is valid", source=source, plan=plan
        )

    def _usage_evidence(
        self, db: Session, radius_db: Session, source: VoucherSource, record
    ) -> dict[str, Any] | None:
        if source.kind == VoucherSourceKind.vouchers and record.status == VoucherStatus.used:
            return {"source": "voucher_status"}
        if source.kind == VoucherSourceKind.orders and record.status == OrderStatus.completed:
            return {"source": "order_status"}
        ledger = db.scalars(
            select(VoucherUsage).where(VoucherUsage.voucher_code == source.code)
        ).first()
        if ledger:
            used_at = as_utc(ledger.used_at)
            return {
                "source": "usage_ledger",
                "used_at": used_at.isoformat() if used_at else None,
            }
        if radius_vouchers.has_completed_session(radius_db, source.code):
            return {"source": "radius_accounting"}
        return None

    @staticmethod
    def _expires_at(source: VoucherSource, record) -> datetime | None:
        if source.kind == VoucherSourceKind.vouchers:
            if record.status == VoucherStatus.expired:
                return utcnow() - timedelta(seconds=1)
            return as_utc(record.expires_at)
        return as_utc(record.access_expires_at)

    def mark_used(
        self,
        db: Session,
        source: VoucherSource,
        client: ClientInfo,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Record the single use of a voucher; False when it was already marked."""
        db.add(
            VoucherUsage(
                voucher_code=source.code,
                source=source.kind,
                source_id=source.source_id,
                client_ip=client.ip_address,
                mac_address=client.mac_address,
                metadata_=metadata,
            )
        )
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            self.log_event(
                db,
                SecurityEventType.multiple_use_attempt,
                client,
                voucher_code=source.code,
                severity=SecuritySeverity.warning,
                details={"reason": "usage_ledger_conflict"},
            )
            return False

        now = utcnow()
        if source.kind == VoucherSourceKind.vouchers:
            voucher = db.get(Voucher, source.source_id)
            if voucher:
                voucher.status = VoucherStatus.used
                voucher.used_at = now
        else:
            order = db.get(Order, source.source_id)
            if order and order.status == OrderStatus.paid:
                order.status = OrderStatus.completed
        self.log_event(
            db,
            SecurityEventType.voucher_used,
            client,
            voucher_code=source.code,
            details={
                "source": source.kind.value,
                "source_id": source.source_id,
                "mac_address": client.mac_address,
            },
            commit=False,
        )
        db.commit()
        return True

    def suspicious_activity(self, db: Session, hours: int = 24) -> dict[str, Any]:
        since = utcnow() - timedelta(hours=hours)
        events = db.scalars(
            select(VoucherSecurityLog)
            .where(
                VoucherSecurityLog.severity.in_(
                    [SecuritySeverity.warning, SecuritySeverity.critical]
                ),
                VoucherSecurityLog.created_at >= since,
            )
            .order_by(VoucherSecurityLog.created_at.desc())
            .limit(100)
        ).all()
        attempts = func.count(VoucherSecurityLog.id)
        top_failed = db.execute(
            select(VoucherSecurityLog.ip_address, attempts)
            .where(
                VoucherSecurityLog.event_type == SecurityEventType.validation_failed,
                VoucherSecurityLog.created_at >= since,
            )
            .group_by(VoucherSecurityLog.ip_address)
            .having(attempts >= 5)
            .order_by(attempts.desc())
            .limit(20)
        ).all()
        flagged = db.scalars(
            select(FlaggedIp)
            .where(
                or_(
                    FlaggedIp.is_permanent.is_(True),
                    and_(
                        FlaggedIp.blocked_until.is_not(None),
                        FlaggedIp.blocked_until > utcnow(),
                    ),
                )
            )
            .order_by(FlaggedIp.updated_at.desc())
        ).all()
        return {
            "events": events,
            "top_failed_ips": [{"ip_address": ip, "attempts": count} for ip, count in top_failed],
            "flagged_ips": flagged,
        }

    def cleanup_old_logs(self, db: Session, days: int | None = None) -> int:
        """Delete info-level events older than the retention window."""
        days = days if days is not None else settings.voucher_log_retention_days
        cutoff = utcnow() - timedelta(days=days)
        result = db.execute(
            delete(VoucherSecurityLog).where(
                VoucherSecurityLog.created_at < cutoff,
                VoucherSecurityLog.severity == SecuritySeverity.info,
            )
        )
        db.commit()
        return int(result.rowcount or 0)


voucher_gate = VoucherGate()
