"""Payment webhook orchestration.

Providers retry anything that is not a 2xx, so every path here answers
200 ``{"status": "ok"}``; outcomes are logged and counted instead.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.metrics import record_webhook
from app.services.exceptions import HotspotError, OrderNotFound, VerificationMismatch
from app.services.order_activation import order_activation
from app.services.payment_providers import get_adapter

logger = logging.getLogger(__name__)


def _ack() -> JSONResponse:
    return JSONResponse({"status": "ok"}, status_code=200)


def process_payment_webhook(
    *,
    db: Session,
    radius_db: Session,
    provider: str,
    body: bytes,
    headers: Mapping[str, str],
) -> JSONResponse:
    adapter = get_adapter(provider)
    try:
        authentic = adapter.verify_webhook_signature(db, headers, body)
    except Exception:
        logger.exception("%s webhook signature check errored", provider)
        authentic = False
    if not authentic:
        logger.warning("Invalid %s webhook signature", provider)
        record_webhook(provider, "invalid_signature")
        return _ack()

    event = adapter.parse_webhook(body, headers)
    if event is None or not event.reference:
        logger.info("%s webhook without a usable reference, ignoring", provider)
        record_webhook(provider, "unparseable")
        return _ack()

    logger.info(
        "%s webhook for %s (claimed status %s)", provider, event.reference, event.claimed_status
    )
    try:
        outcome = order_activation.confirm_payment(
            db,
            radius_db,
            event.reference,
            claimed_tx_id=event.provider_tx_id,
            provider=provider,
            channel="webhook",
        )
        record_webhook(provider, outcome.status)
    except OrderNotFound:
        logger.warning("%s webhook for unknown order %s", provider, event.reference)
        record_webhook(provider, "order_not_found")
    except VerificationMismatch:
        record_webhook(provider, "mismatch")
    except HotspotError as exc:
        logger.error("%s webhook for %s not processed: %s", provider, event.reference, exc)
        record_webhook(provider, exc.code)
    except Exception:
        db.rollback()
        logger.exception("%s webhook processing error for %s", provider, event.reference)
        record_webhook(provider, "error")
    return _ack()


def process_flutterwave_webhook(
    *, db: Session, radius_db: Session, body: bytes, headers: Mapping[str, str]
) -> JSONResponse:
    return process_payment_webhook(
        db=db, radius_db=radius_db, provider="flutterwave", body=body, headers=headers
    )


def process_yopayments_webhook(
    *, db: Session, radius_db: Session, body: bytes, headers: Mapping[str, str]
) -> JSONResponse:
    return process_payment_webhook(
        db=db, radius_db=radius_db, provider="yopayments", body=body, headers=headers
    )
