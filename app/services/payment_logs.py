"""Append-only payment audit trail, independent of the orders table."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.orders import Order, PaymentLog, PaymentLogStatus


class PaymentLogs:
    @staticmethod
    def record(
        db: Session,
        order: Order,
        status: PaymentLogStatus,
        message: str | None = None,
        provider_tx_id: str | None = None,
        commit: bool = False,
    ) -> PaymentLog:
        entry = PaymentLog(
            order_id=order.id,
            provider=order.provider,
            status=status,
            amount=order.amount,
            currency=order.currency,
            provider_tx_id=provider_tx_id or order.provider_tx_id,
            message=message,
        )
        db.add(entry)
        if commit:
            db.commit()
        return entry

    @staticmethod
    def has_status(db: Session, order_id: int, status: PaymentLogStatus) -> bool:
        return (
            db.scalars(
                select(PaymentLog.id).where(PaymentLog.order_id == order_id, PaymentLog.status == status)
            ).first()
            is not None
        )

    @staticmethod
    def list_for_order(db: Session, order_id: int) -> list[PaymentLog]:
        return list(
            db.scalars(
                select(PaymentLog)
                .where(PaymentLog.order_id == order_id)
                .order_by(PaymentLog.id)
            ).all()
        )


payment_logs = PaymentLogs()
