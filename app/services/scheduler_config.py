import logging
import os
from datetime import timedelta

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_value(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def get_celery_config() -> dict:
    broker = (
        _env_value("CELERY_BROKER_URL")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/0"
    )
    backend = (
        _env_value("CELERY_RESULT_BACKEND")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    return {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": _env_value("CELERY_TIMEZONE") or "UTC",
        "task_acks_late": True,
    }


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    if _env_bool("RECONCILE_ENABLED", True):
        minutes = _env_int("RECONCILE_INTERVAL_MINUTES", 2)
        schedule["reconcile_pending_orders"] = {
            "task": "app.tasks.hotspot.reconcile_pending_orders",
            "schedule": timedelta(minutes=max(minutes, 1)),
        }
    if _env_bool("MAC_BINDING_EXPIRY_ENABLED", True):
        minutes = _env_int("MAC_BINDING_EXPIRY_INTERVAL_MINUTES", 5)
        schedule["expire_mac_bindings"] = {
            "task": "app.tasks.hotspot.expire_mac_bindings",
            "schedule": timedelta(minutes=max(minutes, 1)),
        }
    hours = _env_int("SECURITY_LOG_CLEANUP_INTERVAL_HOURS", 24)
    schedule["cleanup_security_logs"] = {
        "task": "app.tasks.hotspot.cleanup_security_logs",
        "schedule": timedelta(hours=max(hours, 1)),
    }
    return schedule
