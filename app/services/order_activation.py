"""Payment-to-access activation.

Webhooks, the provider redirect, client polling and the reconcile task all
funnel into ``OrderActivation.confirm_payment``. The PENDING -> PAID move is
a single conditional UPDATE: whichever signal flips the row provisions
RADIUS, every other signal sees PAID and gets the stored result back.

PAID is never undone. An order whose RADIUS write failed stays PAID with
``radius_provisioned_at`` unset, and the next signal for it (poll, webhook
retry, redemption or the reconcile task) repeats the idempotent upsert.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import record_activation
from app.models.catalog import Plan
from app.models.orders import AutologinStatus, Order, OrderStatus, PaymentLogStatus
from app.models.vouchers import VoucherSourceKind
from app.services.common import as_utc, generate_reference, round_money, utcnow
from app.services.exceptions import (
    AccessProvisioningFailed,
    ChargeRejected,
    OrderNotFound,
    PlanNotFound,
    ProviderNotConfigured,
    ProviderUnavailable,
    VerificationMismatch,
)
from app.services.mikrotik import AuthorizationOutcome, mikrotik_bindings, normalize_mac_address
from app.services.payment_logs import payment_logs
from app.services.payment_providers import ChargeHandle, TransactionStatus, VerifiedTransaction, get_adapter
from app.services.provider_settings import resolve_credentials
from app.services.radius import radius_vouchers
from app.services.voucher_security import ClientInfo, ValidationResult, voucher_gate
from app.services.vouchers import insert_with_unique_code

logger = logging.getLogger(__name__)

_REFERENCE_PREFIXES = {"flutterwave": "ORD", "yopayments": "YO"}
_PAID_STATES = (OrderStatus.paid, OrderStatus.completed)


@dataclass
class ActivationOutcome:
    """Result of a confirmation signal or a status poll."""

    status: str
    order_reference: str
    message: str
    payload: dict[str, Any] = field(default_factory=dict)
    already_processed: bool = False

    @property
    def paid(self) -> bool:
        return self.status == "paid"


@dataclass
class RedemptionOutcome:
    success: bool
    message: str
    validation: ValidationResult | None = None
    payload: dict[str, Any] = field(default_factory=dict)


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def success_payload(order: Order, plan: Plan | None) -> dict[str, Any]:
    """Customer-facing result for a paid order, derived only from stored rows."""
    return {
        "order_reference": order.reference,
        "status": "paid",
        "voucher": {"code": order.voucher_code, "username": order.voucher_code, "password": order.voucher_code},
        "plan": (
            {
                "id": plan.id,
                "name": plan.name,
                "duration_minutes": plan.duration_minutes,
            }
            if plan
            else None
        ),
        "amount": str(round_money(order.amount)),
        "currency": order.currency,
        "provider_tx_id": order.provider_tx_id,
        "paid_at": _iso(order.paid_at),
        "expires_at": _iso(order.access_expires_at),
        "autologin": {
            "status": order.autologin_status.value if order.autologin_status else None,
            "message": order.autologin_message,
        },
    }


def _autologin_comment(order: Order, plan: Plan) -> str:
    return f"Hotspot - Order {order.reference} - {plan.name}"


class OrderActivation:
    @staticmethod
    def get_order(db: Session, reference: str, provider: str | None = None) -> Order:
        query = select(Order).where(
            or_(Order.reference == reference, Order.provider_ref == reference)
        )
        if provider:
            query = query.where(Order.provider == provider)
        order = db.scalars(query.order_by(Order.id)).first()
        if not order:
            raise OrderNotFound(f"Order {reference} not found")
        return order

    @staticmethod
    def create_purchase(
        db: Session,
        provider_code: str,
        plan_id: int,
        customer: dict[str, Any],
    ) -> tuple[Order, ChargeHandle]:
        plan = db.get(Plan, plan_id)
        if not plan or not plan.is_active:
            raise PlanNotFound(f"Plan {plan_id} not found")
        adapter = get_adapter(provider_code)
        if not resolve_credentials(db, provider_code).enabled:
            raise ProviderNotConfigured(f"{provider_code} is not enabled")

        prefix = _REFERENCE_PREFIXES.get(provider_code, "ORD")
        currency = plan.currency or settings.default_currency
        order = insert_with_unique_code(
            db,
            lambda code: Order(
                reference=generate_reference(prefix),
                plan_id=plan.id,
                voucher_code=code,
                amount=round_money(plan.price),
                currency=currency,
                provider=provider_code,
                status=OrderStatus.pending,
                customer_msisdn=customer.get("msisdn"),
                customer_email=customer.get("email"),
                customer_mac=normalize_mac_address(customer.get("mac")),
                customer_ip=customer.get("ip"),
                login_url=customer.get("login_url"),
            ),
        )
        payment_logs.record(db, order, PaymentLogStatus.initiated, "Order created", commit=True)

        redirect_url = f"{settings.base_url}/api/payments/{provider_code}/redirect?orderRef={order.reference}"
        try:
            handle = adapter.create_charge(
                db,
                reference=order.reference,
                amount=order.amount,
                currency=order.currency,
                customer=customer,
                redirect_url=redirect_url,
                metadata={
                    "title": "WiFi Access",
                    "description": f"{plan.name} - Order {order.reference}",
                    "order_ref": order.reference,
                    "plan_id": plan.id,
                },
            )
        except (ChargeRejected, ProviderNotConfigured) as exc:
            order.status = OrderStatus.failed
            payment_logs.record(db, order, PaymentLogStatus.failed, str(exc))
            db.commit()
            raise
        except ProviderUnavailable as exc:
            # The charge may still exist on the provider side; leave the order pending.
            payment_logs.record(db, order, PaymentLogStatus.pending, f"Charge request unconfirmed: {exc}")
            db.commit()
            raise

        if handle.provider_ref:
            order.provider_ref = handle.provider_ref
        payment_logs.record(db, order, PaymentLogStatus.pending, handle.message or "Awaiting payment")
        db.commit()
        logger.info("Order %s created for plan %s via %s", order.reference, plan.id, provider_code)
        return order, handle

    @staticmethod
    def _cached(db: Session, order: Order) -> ActivationOutcome:
        return ActivationOutcome(
            status="paid",
            order_reference=order.reference,
            message="Payment completed",
            payload=success_payload(order, db.get(Plan, order.plan_id)),
            already_processed=True,
        )

    @staticmethod
    def _failed(order: Order) -> ActivationOutcome:
        return ActivationOutcome(
            status="failed",
            order_reference=order.reference,
            message="Payment failed",
            payload={"order_reference": order.reference, "status": "failed"},
        )

    @staticmethod
    def _check_verified(order: Order, verified: VerifiedTransaction, adapter) -> None:
        expected = {
            "status": TransactionStatus.success.value,
            "reference": adapter.expected_reference(order),
            "currency": order.currency,
            "amount": str(round_money(order.amount)),
        }
        observed = {
            "status": verified.status.value,
            "reference": verified.reference,
            "currency": verified.currency,
            "amount": str(verified.amount) if verified.amount is not None else None,
        }
        problems = []
        if verified.reference != expected["reference"]:
            problems.append("reference")
        if verified.currency is not None or adapter.reports_amount:
            if (verified.currency or "").upper() != (order.currency or "").upper():
                problems.append("currency")
        if verified.amount is not None or adapter.reports_amount:
            if verified.amount is None or round_money(verified.amount) != round_money(order.amount):
                problems.append("amount")
        if problems:
            logger.warning(
                "Verification mismatch for order %s (%s): expected=%s observed=%s",
                order.reference,
                ", ".join(problems),
                expected,
                observed,
            )
            raise VerificationMismatch(
                f"Verified {', '.join(problems)} disagree with order {order.reference}",
                expected=expected,
                observed=observed,
            )

    @staticmethod
    def _provision(db: Session, radius_db: Session, order: Order, plan: Plan) -> None:
        """Write RADIUS credentials for a PAID order. Safe to repeat."""
        now = utcnow()
        try:
            activation = radius_vouchers.activate(
                radius_db,
                order.voucher_code,
                order.voucher_code,
                plan.duration_minutes,
                speed_down_kbps=plan.speed_down_kbps,
                speed_up_kbps=plan.speed_up_kbps,
                data_mb=plan.data_limit_mb,
                rate=plan.rate_limit,
                now=now,
            )
        except Exception as exc:
            radius_db.rollback()
            db.rollback()
            logger.exception("RADIUS activation failed for order %s, kept paid for retry", order.reference)
            payment_logs.record(db, order, PaymentLogStatus.processing, f"RADIUS activation failed: {exc}")
            db.commit()
            record_activation(order.provider, "error")
            raise AccessProvisioningFailed(
                f"RADIUS activation pending for order {order.reference}"
            ) from exc
        db.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(radius_provisioned_at=now, access_expires_at=activation.expires_at, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(order)

    @staticmethod
    def _record_autologin(db: Session, order: Order, plan: Plan) -> Order:
        outcome = OrderActivation._authorize_device(db, order, plan)
        order = db.get(Order, order.id)
        order.autologin_status = outcome.status
        order.autologin_message = outcome.message
        db.commit()
        db.refresh(order)
        if outcome.status != AutologinStatus.success:
            logger.info("Order %s paid without auto-login: %s", order.reference, outcome.message)
        return order

    @staticmethod
    def _ensure_provisioned(
        db: Session, radius_db: Session, order: Order, plan: Plan, force: bool = False
    ) -> None:
        if order.radius_provisioned_at is not None:
            return
        if not force and not payment_logs.has_status(db, order.id, PaymentLogStatus.processing):
            # The signal that claimed PAID has not finished its RADIUS write yet.
            raise AccessProvisioningFailed(f"RADIUS activation in progress for order {order.reference}")
        OrderActivation._provision(db, radius_db, order, plan)
        logger.info("Order %s provisioned on a follow-up signal", order.reference)

    @staticmethod
    def _settled(
        db: Session, radius_db: Session, order: Order, force: bool = False
    ) -> ActivationOutcome:
        """Return the stored result for a PAID order, finishing its provisioning first.

        Provisioning is retried only after the claiming signal recorded a
        failure, or when ``force`` is set by the reconcile task.
        """
        if order.radius_provisioned_at is None:
            plan = db.get(Plan, order.plan_id)
            if not plan:
                raise PlanNotFound(f"Plan {order.plan_id} not found for order {order.reference}")
            OrderActivation._ensure_provisioned(db, radius_db, order, plan, force)
            if order.autologin_status is None:
                order = OrderActivation._record_autologin(db, order, plan)
        return OrderActivation._cached(db, order)

    @staticmethod
    def mark_failed(
        db: Session, radius_db: Session, order: Order, verified: VerifiedTransaction
    ) -> ActivationOutcome:
        result = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.pending)
            .values(status=OrderStatus.failed, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            payment_logs.record(
                db,
                order,
                PaymentLogStatus.failed,
                verified.message or f"Provider reported {verified.status.value}",
                provider_tx_id=verified.provider_tx_id,
            )
        db.commit()
        db.refresh(order)
        if order.status in _PAID_STATES:
            return OrderActivation._settled(db, radius_db, order)
        record_activation(order.provider, "failed")
        return OrderActivation._failed(order)

    @staticmethod
    def _authorize_device(db: Session, order: Order, plan: Plan) -> AuthorizationOutcome:
        if not order.customer_mac:
            return AuthorizationOutcome(AutologinStatus.skipped, "No device address captured")
        try:
            return mikrotik_bindings.authorize(
                db,
                order.customer_mac,
                ip=order.customer_ip,
                duration_minutes=plan.duration_minutes,
                comment=_autologin_comment(order, plan),
                order_id=order.id,
            )
        except Exception as exc:
            db.rollback()
            logger.exception("Auto-login failed for order %s", order.reference)
            return AuthorizationOutcome(AutologinStatus.failed, f"Auto-login unavailable: {exc}")

    @staticmethod
    def confirm_payment(
        db: Session,
        radius_db: Session,
        reference: str,
        claimed_tx_id: str | None = None,
        provider: str | None = None,
        channel: str = "webhook",
    ) -> ActivationOutcome:
        """Verify a payment signal with the provider and activate the order once.

        Raises:
            OrderNotFound: No order matches ``reference``.
            PlanNotFound: The order's plan no longer exists.
            VerificationMismatch: Provider data disagrees with the order.
            ProviderUnavailable: The verification call failed in transport.
            AccessProvisioningFailed: The order is PAID but RADIUS could not be
                written; it stays PAID and later signals retry the write.
        """
        order = OrderActivation.get_order(db, reference, provider)
        if order.status in _PAID_STATES:
            return OrderActivation._settled(db, radius_db, order)
        if order.status == OrderStatus.failed:
            return OrderActivation._failed(order)

        adapter = get_adapter(order.provider)
        verified = adapter.verify(
            db, adapter.verification_id(order, claimed_tx_id), order.reference
        )
        if verified.status != TransactionStatus.success:
            if verified.status.is_terminal_failure:
                OrderActivation._check_reference(order, verified, adapter)
                return OrderActivation.mark_failed(db, radius_db, order, verified)
            return ActivationOutcome(
                status="pending",
                order_reference=order.reference,
                message=verified.message or "Payment not completed yet",
                payload={"order_reference": order.reference, "status": verified.status.value},
            )

        try:
            OrderActivation._check_verified(order, verified, adapter)
        except VerificationMismatch:
            record_activation(order.provider, "mismatch")
            raise

        plan = db.get(Plan, order.plan_id)
        if not plan:
            raise PlanNotFound(f"Plan {order.plan_id} not found for order {order.reference}")

        now = utcnow()
        provider_tx_id = verified.provider_tx_id or claimed_tx_id
        claimed = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.pending)
            .values(
                status=OrderStatus.paid,
                provider_tx_id=provider_tx_id,
                paid_at=now,
                access_expires_at=now + timedelta(minutes=plan.duration_minutes),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.rollback()
            db.refresh(order)
            logger.info("Order %s already settled by a concurrent %s", order.reference, order.status.value)
            if order.status in _PAID_STATES:
                return OrderActivation._settled(db, radius_db, order)
            return OrderActivation._failed(order)
        payment_logs.record(
            db, order, PaymentLogStatus.success, f"Verified via {channel}", provider_tx_id=provider_tx_id
        )
        db.commit()

        OrderActivation._provision(db, radius_db, order, plan)
        order = OrderActivation._record_autologin(db, order, plan)

        record_activation(order.provider, "paid")
        logger.info("Order %s activated via %s", order.reference, channel)
        return ActivationOutcome(
            status="paid",
            order_reference=order.reference,
            message="Payment completed",
            payload=success_payload(order, plan),
        )

    @staticmethod
    def _check_reference(order: Order, verified: VerifiedTransaction, adapter) -> None:
        expected = adapter.expected_reference(order)
        if verified.reference is not None and verified.reference != expected:
            logger.warning(
                "Failure signal for order %s carries reference %s", order.reference, verified.reference
            )
            raise VerificationMismatch(
                f"Verified reference disagrees with order {order.reference}",
                expected={"reference": expected},
                observed={"reference": verified.reference},
            )

    @staticmethod
    def poll_status(
        db: Session, radius_db: Session, reference: str, retry_provisioning: bool = False
    ) -> ActivationOutcome:
        order = OrderActivation.get_order(db, reference)
        if order.status in _PAID_STATES:
            return OrderActivation._settled(db, radius_db, order, retry_provisioning)
        if order.status == OrderStatus.failed:
            return OrderActivation._failed(order)
        adapter = get_adapter(order.provider)
        if not adapter.verification_id(order, None) and not adapter.can_verify_by_reference:
            return ActivationOutcome(
                status="pending",
                order_reference=order.reference,
                message="Payment not yet processed",
                payload={"order_reference": order.reference, "status": "pending"},
            )
        return OrderActivation.confirm_payment(
            db, radius_db, order.reference, provider=order.provider, channel="poll"
        )

    @staticmethod
    def redeem_voucher(
        db: Session,
        radius_db: Session,
        code: str,
        client: ClientInfo,
    ) -> RedemptionOutcome:
        validation = voucher_gate.check_and_validate(db, radius_db, code, client)
        if not validation.valid:
            return RedemptionOutcome(False, validation.message, validation=validation)

        source = validation.source
        plan = validation.plan
        if plan is None:
            raise PlanNotFound(f"No plan attached to voucher {code}")
        expires_at = None
        if source.kind == VoucherSourceKind.vouchers:
            activation = radius_vouchers.activate(
                radius_db,
                source.code,
                source.code,
                plan.duration_minutes,
                speed_down_kbps=plan.speed_down_kbps,
                speed_up_kbps=plan.speed_up_kbps,
                data_mb=plan.data_limit_mb,
                rate=plan.rate_limit,
            )
            expires_at = activation.expires_at
        else:
            paid_order = db.get(Order, source.source_id)
            OrderActivation._ensure_provisioned(db, radius_db, paid_order, plan)
            expires_at = as_utc(paid_order.access_expires_at)

        if not voucher_gate.mark_used(db, source, client, {"plan_id": plan.id}):
            return RedemptionOutcome(False, "This voucher has already been used", validation=validation)

        autologin = AuthorizationOutcome(AutologinStatus.skipped, "No device address captured")
        if client.mac_address:
            try:
                autologin = mikrotik_bindings.authorize(
                    db,
                    client.mac_address,
                    ip=client.ip_address,
                    duration_minutes=plan.duration_minutes,
                    comment=f"Hotspot - Voucher {source.code} - {plan.name}",
                    order_id=source.source_id if source.kind == VoucherSourceKind.orders else None,
                )
            except Exception as exc:
                db.rollback()
                logger.exception("Auto-login failed for voucher %s", source.code)
                autologin = AuthorizationOutcome(AutologinStatus.failed, f"Auto-login unavailable: {exc}")

        return RedemptionOutcome(
            True,
            "Voucher activated",
            validation=validation,
            payload={
                "voucher": {"code": source.code, "username": source.code, "password": source.code},
                "source": source.kind.value,
                "plan": {"id": plan.id, "name": plan.name, "duration_minutes": plan.duration_minutes},
                "expires_at": _iso(expires_at),
                "autologin": {"status": autologin.status.value, "message": autologin.message},
            },
        )

    @staticmethod
    def pending_for_reconcile(db: Session, older_than_minutes: int | None = None) -> list[Order]:
        """PENDING orders past the grace period, plus PAID ones still missing RADIUS credentials."""
        grace = older_than_minutes if older_than_minutes is not None else settings.pending_order_grace_minutes
        cutoff = utcnow() - timedelta(minutes=grace)
        return list(
            db.scalars(
                select(Order)
                .where(
                    or_(
                        Order.status == OrderStatus.pending,
                        and_(
                            Order.status.in_(_PAID_STATES),
                            Order.radius_provisioned_at.is_(None),
                        ),
                    ),
                    Order.created_at <= cutoff,
                )
                .order_by(Order.created_at)
                .limit(200)
            ).all()
        )


order_activation = OrderActivation()
