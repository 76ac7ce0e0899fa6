"""Contract shared by the payment provider adapters."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.orm import Session

from app.models.orders import Order


class TransactionStatus(enum.Enum):
    success = "success"
    failed = "failed"
    cancelled = "cancelled"
    pending = "pending"
    processing = "processing"
    unknown = "unknown"

    @property
    def is_terminal_failure(self) -> bool:
        return self in (TransactionStatus.failed, TransactionStatus.cancelled)


@dataclass
class ChargeHandle:
    provider: str
    reference: str
    status: TransactionStatus = TransactionStatus.pending
    payment_link: str | None = None
    provider_ref: str | None = None
    message: str | None = None


@dataclass
class VerifiedTransaction:
    """Provider-side view of a transaction, fetched server-to-server."""

    status: TransactionStatus
    reference: str | None = None
    provider_tx_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    message: str | None = None


@dataclass
class WebhookEvent:
    reference: str | None = None
    provider_tx_id: str | None = None
    claimed_status: str | None = None


def to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class ProviderAdapter(ABC):
    code: str
    display_name: str
    # Whether verify() returns amount and currency that must match the order.
    reports_amount: bool = True
    can_verify_by_reference: bool = True

    @abstractmethod
    def create_charge(
        self,
        db: Session,
        *,
        reference: str,
        amount: Decimal,
        currency: str,
        customer: dict[str, Any],
        redirect_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeHandle:
        raise NotImplementedError

    @abstractmethod
    def verify(
        self, db: Session, provider_tx_id: str | None, reference: str | None = None
    ) -> VerifiedTransaction:
        raise NotImplementedError

    @abstractmethod
    def verify_webhook_signature(
        self, db: Session, headers: Mapping[str, str], body: bytes
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        raise NotImplementedError

    def expected_reference(self, order: Order) -> str | None:
        """Reference the provider echoes back for ``order``."""
        return order.reference

    def verification_id(self, order: Order, claimed_tx_id: str | None) -> str | None:
        """Identifier to verify with: the claimed transaction id, else the stored one."""
        return claimed_tx_id or order.provider_tx_id
