import logging
import time

from app.celery_app import celery_app
from app.db import RadiusSessionLocal, SessionLocal
from app.metrics import observe_job
from app.services.exceptions import HotspotError
from app.services.mikrotik import mikrotik_bindings
from app.services.order_activation import order_activation
from app.services.voucher_security import voucher_gate

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.hotspot.reconcile_pending_orders")
def reconcile_pending_orders(older_than_minutes: int | None = None):
    """Re-verify pending orders whose webhook never arrived."""
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    radius_session = RadiusSessionLocal()
    summary = {"checked": 0, "paid": 0, "failed": 0, "pending": 0, "errors": 0}
    try:
        for order in order_activation.pending_for_reconcile(session, older_than_minutes):
            summary["checked"] += 1
            try:
                outcome = order_activation.poll_status(
                    session, radius_session, order.reference, retry_provisioning=True
                )
            except HotspotError as exc:
                session.rollback()
                summary["errors"] += 1
                logger.warning("Reconcile of %s skipped: %s", order.reference, exc)
                continue
            except Exception:
                session.rollback()
                radius_session.rollback()
                summary["errors"] += 1
                logger.exception("Reconcile of %s failed", order.reference)
                continue
            summary[outcome.status if outcome.status in summary else "pending"] += 1
        logger.info("Pending order reconcile %s", summary)
        return summary
    except Exception:
        status = "error"
        session.rollback()
        radius_session.rollback()
        logger.exception("Pending order reconcile failed.")
        raise
    finally:
        session.close()
        radius_session.close()
        duration = time.monotonic() - start
        observe_job("reconcile_pending_orders", status, duration)


@celery_app.task(name="app.tasks.hotspot.expire_mac_bindings")
def expire_mac_bindings():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        expired = mikrotik_bindings.expire_due_bindings(session)
        if expired:
            logger.info("Expired %s MAC binding(s)", expired)
        return expired
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("MAC binding expiry failed.")
        raise
    finally:
        session.close()
        duration = time.monotonic() - start
        observe_job("expire_mac_bindings", status, duration)


@celery_app.task(name="app.tasks.hotspot.cleanup_security_logs")
def cleanup_security_logs(days: int | None = None):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        deleted = voucher_gate.cleanup_old_logs(session, days)
        logger.info("Deleted %s voucher security log row(s)", deleted)
        return deleted
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Security log cleanup failed.")
        raise
    finally:
        session.close()
        duration = time.monotonic() - start
        observe_job("cleanup_security_logs", status, duration)
