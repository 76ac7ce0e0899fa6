"""Flutterwave hosted-payment (card / mobile money link) adapter."""

from __future__ import annotations

import hmac
import json
import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.services.exceptions import ChargeRejected, ProviderNotConfigured, ProviderUnavailable
from app.services.payment_providers.base import (
    ChargeHandle,
    ProviderAdapter,
    TransactionStatus,
    VerifiedTransaction,
    WebhookEvent,
    to_decimal,
)
from app.services.provider_settings import resolve_credentials

logger = logging.getLogger(__name__)

FLUTTERWAVE_API_BASE = "https://api.flutterwave.com/v3"

_STATUS_MAP = {
    "successful": TransactionStatus.success,
    "failed": TransactionStatus.failed,
    "cancelled": TransactionStatus.cancelled,
    "pending": TransactionStatus.pending,
}


def _get_secret_key(db: Session | None = None) -> str:
    """Resolve the Flutterwave secret key from the provider table or env."""
    return resolve_credentials(db, "flutterwave").get("secret_key")


def _get_secret_hash(db: Session | None = None) -> str:
    """Resolve the Flutterwave webhook secret hash from the provider table or env."""
    return resolve_credentials(db, "flutterwave").get("secret_hash")


def _auth_headers(secret_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {secret_key}"}


def _json(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _to_verified(data: dict[str, Any]) -> VerifiedTransaction:
    status = _STATUS_MAP.get(str(data.get("status", "")).lower(), TransactionStatus.unknown)
    tx_id = data.get("id")
    return VerifiedTransaction(
        status=status,
        reference=data.get("tx_ref") or data.get("txRef"),
        provider_tx_id=str(tx_id) if tx_id is not None else None,
        amount=to_decimal(data.get("amount")),
        currency=data.get("currency"),
        message=data.get("processor_response"),
    )


class FlutterwaveAdapter(ProviderAdapter):
    code = "flutterwave"
    display_name = "Flutterwave"

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
        """Create a hosted payment link.

        Raises:
            ProviderNotConfigured: If the secret key is not configured.
            ProviderUnavailable: On transport errors or 5xx from Flutterwave.
            ChargeRejected: When Flutterwave refuses the payment request.
        """
        secret_key = _get_secret_key(db)
        if not secret_key:
            raise ProviderNotConfigured("Flutterwave secret key is not configured")

        payload: dict[str, Any] = {
            "tx_ref": reference,
            "amount": str(amount),
            "currency": currency,
            "redirect_url": redirect_url,
            "customer": {
                "email": customer.get("email") or f"{reference.lower()}@hotspot.local",
                "phonenumber": customer.get("msisdn"),
                "name": customer.get("name") or "Hotspot customer",
            },
            "customizations": {
                "title": (metadata or {}).get("title", "WiFi Access"),
                "description": (metadata or {}).get("description", f"Order {reference}"),
            },
        }
        if metadata:
            payload["meta"] = metadata

        try:
            resp = httpx.post(
                f"{FLUTTERWAVE_API_BASE}/payments",
                json=payload,
                headers=_auth_headers(secret_key),
                timeout=settings.provider_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"Flutterwave payment request failed: {exc}") from exc
        if resp.status_code >= 500:
            raise ProviderUnavailable(f"Flutterwave returned HTTP {resp.status_code}")
        data = _json(resp)
        if resp.status_code >= 400 or data.get("status") != "success":
            logger.error("Flutterwave initialize failed: %s", data.get("message"))
            raise ChargeRejected(data.get("message", "Flutterwave initialization failed"))

        return ChargeHandle(
            provider=self.code,
            reference=reference,
            status=TransactionStatus.pending,
            payment_link=(data.get("data") or {}).get("link"),
        )

    def verify(
        self, db: Session, provider_tx_id: str | None, reference: str | None = None
    ) -> VerifiedTransaction:
        """Verify by transaction id, or by our tx_ref when no id is known yet."""
        secret_key = _get_secret_key(db)
        if not secret_key:
            raise ProviderNotConfigured("Flutterwave secret key is not configured")
        if provider_tx_id:
            url = f"{FLUTTERWAVE_API_BASE}/transactions/{provider_tx_id}/verify"
            params = None
        elif reference:
            url = f"{FLUTTERWAVE_API_BASE}/transactions/verify_by_reference"
            params = {"tx_ref": reference}
        else:
            return VerifiedTransaction(status=TransactionStatus.unknown, message="nothing to verify")

        try:
            resp = httpx.get(
                url, params=params, headers=_auth_headers(secret_key), timeout=settings.provider_timeout_seconds
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"Flutterwave verification failed: {exc}") from exc
        if resp.status_code >= 500:
            raise ProviderUnavailable(f"Flutterwave returned HTTP {resp.status_code}")
        data = _json(resp)
        if resp.status_code >= 400 or data.get("status") != "success":
            logger.warning("Flutterwave verify rejected: %s", data.get("message"))
            return VerifiedTransaction(status=TransactionStatus.unknown, message=data.get("message"))
        return _to_verified(data.get("data") or {})

    def verify_webhook_signature(
        self, db: Session, headers: Mapping[str, str], body: bytes
    ) -> bool:
        """Compare the ``verif-hash`` header against the configured secret hash."""
        secret_hash = _get_secret_hash(db)
        signature = headers.get("verif-hash") or ""
        if not secret_hash or not signature:
            return False
        return hmac.compare_digest(secret_hash, signature)

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        if not isinstance(payload, dict):
            return None
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        reference = data.get("tx_ref") or data.get("txRef")
        if not reference:
            return None
        tx_id = data.get("id")
        return WebhookEvent(
            reference=str(reference),
            provider_tx_id=str(tx_id) if tx_id is not None else None,
            claimed_status=data.get("status"),
        )
