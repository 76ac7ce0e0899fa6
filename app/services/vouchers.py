"""Voucher code generation and batch issuing."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable

from sqlalchemy import exists, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.catalog import Plan
from app.models.orders import Order
from app.models.vouchers import Voucher, VoucherStatus
from app.services.common import random_digits, utcnow
from app.services.exceptions import HotspotError, InvalidInput, PlanNotFound
from app.services.radius import radius_vouchers

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100
MAX_CODE_ATTEMPTS = 5


class VoucherCodeExhausted(HotspotError):
    """No free voucher code was found within the retry budget."""

    code = "voucher_code_exhausted"
    status_code = 503
    public_message = "Could not allocate a voucher code, please retry"


def generate_code(length: int | None = None) -> str:
    return random_digits(length or settings.voucher_code_length)


def code_in_use(db: Session, code: str) -> bool:
    return bool(
        db.scalar(
            select(
                or_(
                    exists().where(Voucher.code == code),
                    exists().where(Order.voucher_code == code),
                )
            )
        )
    )


def insert_with_unique_code(
    db: Session,
    build: Callable[[str], object],
    attempts: int = MAX_CODE_ATTEMPTS,
    length: int | None = None,
):
    """Insert and commit ``build(code)``, drawing a new code on unique conflicts.

    Vouchers and orders share one code space, so both tables are checked
    before the insert; the unique constraint still decides under races.
    """
    for _ in range(attempts):
        code = generate_code(length)
        if code_in_use(db, code):
            continue
        row = build(code)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Voucher code collision, retrying")
            continue
        return row
    raise VoucherCodeExhausted(f"No free voucher code after {attempts} attempts")


class Vouchers:
    @staticmethod
    def generate_batch(
        db: Session,
        radius_db: Session,
        plan_id: int,
        count: int,
        expires_days: int | None = None,
        activate_radius: bool = False,
    ) -> list[Voucher]:
        if count < 1 or count > MAX_BATCH_SIZE:
            raise InvalidInput(f"count must be between 1 and {MAX_BATCH_SIZE}")
        plan = db.get(Plan, plan_id)
        if not plan:
            raise PlanNotFound(f"Plan {plan_id} not found")
        expires_at = utcnow() + timedelta(days=expires_days) if expires_days else None

        created: list[Voucher] = []
        for _ in range(count):
            created.append(
                insert_with_unique_code(
                    db,
                    lambda code: Voucher(
                        code=code,
                        plan_id=plan.id,
                        status=VoucherStatus.unused,
                        expires_at=expires_at,
                    ),
                )
            )

        if activate_radius:
            for voucher in created:
                radius_vouchers.activate(
                    radius_db,
                    voucher.code,
                    voucher.code,
                    plan.duration_minutes,
                    speed_down_kbps=plan.speed_down_kbps,
                    speed_up_kbps=plan.speed_up_kbps,
                    data_mb=plan.data_limit_mb,
                    rate=plan.rate_limit,
                )
        logger.info("Generated %d vouchers for plan %s", len(created), plan.id)
        return created

    @staticmethod
    def disable(db: Session, radius_db: Session, code: str) -> Voucher:
        voucher = db.scalars(select(Voucher).where(Voucher.code == code)).first()
        if not voucher:
            raise InvalidInput(f"Voucher {code} not found")
        voucher.status = VoucherStatus.disabled
        db.commit()
        radius_vouchers.deactivate(radius_db, code)
        return voucher


vouchers = Vouchers()
