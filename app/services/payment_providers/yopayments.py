"""Yo! Payments mobile money (USSD push) adapter.

The Yo API takes ``AutoCreate`` XML documents posted to a single task
endpoint; the ``Method`` element selects the operation.
"""

from __future__ import annotations

import hmac
import logging
import re
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from decimal import Decimal
from typing import Any
from urllib.parse import parse_qs

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.models.orders import Order
from app.services.exceptions import ChargeRejected, ProviderNotConfigured, ProviderUnavailable
from app.services.payment_providers.base import (
    ChargeHandle,
    ProviderAdapter,
    TransactionStatus,
    VerifiedTransaction,
    WebhookEvent,
    to_decimal,
)
from app.services.provider_settings import ProviderCredentials, resolve_credentials

logger = logging.getLogger(__name__)

YO_API_URLS = {
    "test": "https://sandbox.yo.co.ug/services/yopaymentsdev/task.php",
    "live": "https://paymentsapi1.yo.co.ug/ybs/task.php",
}
WEBHOOK_TOKEN_HEADER = "x-yo-webhook-token"

_STATUS_MAP = {
    "SUCCEEDED": TransactionStatus.success,
    "FAILED": TransactionStatus.failed,
    "PENDING": TransactionStatus.pending,
    "INDETERMINATE": TransactionStatus.processing,
}
_MTN_PREFIXES = ("77", "78", "76", "39")
_AIRTEL_PREFIXES = ("70", "75", "74")


def format_msisdn(msisdn: str) -> str:
    """Normalise a Ugandan number to ``256XXXXXXXXX``."""
    cleaned = re.sub(r"\D", "", str(msisdn))
    if cleaned.startswith("256"):
        return cleaned
    if cleaned.startswith("0"):
        return "256" + cleaned[1:]
    return "256" + cleaned


def detect_network(msisdn: str) -> str:
    prefix = format_msisdn(msisdn)[3:5]
    if prefix in _MTN_PREFIXES:
        return "MTN"
    if prefix in _AIRTEL_PREFIXES:
        return "AIRTEL"
    return "unknown"


def build_request(method: str, params: dict[str, Any], creds: ProviderCredentials) -> bytes:
    root = ET.Element("AutoCreate")
    request = ET.SubElement(root, "Request")
    ET.SubElement(request, "APIUsername").text = creds.get("api_username")
    ET.SubElement(request, "APIPassword").text = creds.get("api_password")
    ET.SubElement(request, "Method").text = method
    for key, value in params.items():
        ET.SubElement(request, key).text = str(value)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def parse_response(payload: bytes | str) -> dict[str, str | None]:
    """Flatten a Yo response document; raises ``ET.ParseError`` on bad XML."""
    root = ET.fromstring(payload)
    fields = {
        "Status": None,
        "StatusCode": None,
        "StatusMessage": None,
        "ErrorMessage": None,
        "TransactionStatus": None,
        "TransactionReference": None,
        "PrivateTransactionReference": None,
        "ExternalReference": None,
        "NetworkRef": None,
        "MnoPRN": None,
        "Amount": None,
        "CurrencyCode": None,
    }
    for element in root.iter():
        if element.tag in fields and element.text and element.text.strip():
            fields[element.tag] = element.text.strip()
    return fields


def _is_error(fields: dict[str, str | None]) -> bool:
    return fields.get("Status") == "ERROR" or fields.get("StatusCode") == "ERROR"


def _credentials(db: Session | None) -> ProviderCredentials:
    creds = resolve_credentials(db, "yopayments")
    if not creds.get("api_username") or not creds.get("api_password"):
        raise ProviderNotConfigured("Yo Payments credentials not configured")
    return creds


def _post(creds: ProviderCredentials, body: bytes) -> dict[str, str | None]:
    url = YO_API_URLS["live"] if creds.environment == "live" else YO_API_URLS["test"]
    try:
        resp = httpx.post(
            url,
            content=body,
            headers={"Content-Type": "application/xml", "Accept": "application/xml"},
            timeout=settings.provider_timeout_seconds,
        )
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        raise ProviderUnavailable(f"Yo Payments request failed: {exc}") from exc
    try:
        return parse_response(resp.content)
    except ET.ParseError as exc:
        raise ProviderUnavailable("Yo Payments returned an unreadable response") from exc


class YoPaymentsAdapter(ProviderAdapter):
    code = "yopayments"
    display_name = "Mobile Money (Yo! Payments)"
    reports_amount = False
    can_verify_by_reference = False

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
        msisdn = customer.get("msisdn")
        if not msisdn:
            raise ChargeRejected("A mobile money number is required")
        creds = _credentials(db)
        params: dict[str, Any] = {
            "NonBlocking": "TRUE",
            # Yo expects whole shillings
            "Amount": int(amount),
            "Account": format_msisdn(msisdn),
            "Narrative": (metadata or {}).get("description", "WiFi Voucher"),
        }
        if creds.environment == "live":
            params["ExternalReference"] = reference
            params["ProviderReferenceText"] = (metadata or {}).get("title", "WiFi Voucher")

        fields = _post(creds, build_request("acdepositfunds", params, creds))
        if _is_error(fields) or fields.get("Status") != "OK":
            message = fields.get("StatusMessage") or fields.get("ErrorMessage")
            logger.error("Yo Payments deposit rejected for %s: %s", reference, message)
            raise ChargeRejected(message or "Mobile money request was rejected")

        return ChargeHandle(
            provider=self.code,
            reference=reference,
            status=_STATUS_MAP.get(fields.get("TransactionStatus") or "", TransactionStatus.pending),
            provider_ref=fields.get("TransactionReference"),
            message=f"Payment prompt sent to {detect_network(msisdn)} number",
        )

    def verify(
        self, db: Session, provider_tx_id: str | None, reference: str | None = None
    ) -> VerifiedTransaction:
        """Query ``actransactioncheckstatus`` for the Yo transaction reference."""
        transaction_ref = provider_tx_id or reference
        if not transaction_ref:
            return VerifiedTransaction(status=TransactionStatus.unknown, message="nothing to verify")
        creds = _credentials(db)
        fields = _post(
            creds,
            build_request(
                "actransactioncheckstatus",
                {
                    "TransactionReference": transaction_ref,
                    "PrivateTransactionReference": transaction_ref,
                },
                creds,
            ),
        )
        if _is_error(fields):
            return VerifiedTransaction(
                status=TransactionStatus.unknown,
                message=fields.get("StatusMessage") or fields.get("ErrorMessage"),
            )
        return VerifiedTransaction(
            status=_STATUS_MAP.get(fields.get("TransactionStatus") or "", TransactionStatus.pending),
            reference=fields.get("TransactionReference") or transaction_ref,
            provider_tx_id=fields.get("NetworkRef") or fields.get("MnoPRN") or transaction_ref,
            amount=to_decimal(fields.get("Amount")),
            currency=fields.get("CurrencyCode"),
            message=fields.get("StatusMessage"),
        )

    def expected_reference(self, order: Order) -> str | None:
        return order.provider_ref

    def verification_id(self, order: Order, claimed_tx_id: str | None) -> str | None:
        # Check status is keyed by Yo's own reference, never by a claimed value.
        return order.provider_ref

    def verify_webhook_signature(
        self, db: Session, headers: Mapping[str, str], body: bytes
    ) -> bool:
        token = resolve_credentials(db, self.code).get("webhook_token")
        supplied = headers.get(WEBHOOK_TOKEN_HEADER) or ""
        if not token or not supplied:
            return False
        return hmac.compare_digest(token, supplied)

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        text = body.decode("utf-8", errors="replace").strip()
        if not text:
            return None
        if text.startswith("<"):
            try:
                fields = parse_response(text)
            except ET.ParseError:
                return None
            reference = fields.get("TransactionReference") or fields.get("ExternalReference")
            status = fields.get("TransactionStatus")
        else:
            form = {key: values[0] for key, values in parse_qs(text).items() if values}
            reference = (
                form.get("transaction_reference")
                or form.get("TransactionReference")
                or form.get("external_reference")
            )
            status = (
                form.get("transaction_status")
                or form.get("TransactionStatus")
                or form.get("status")
            )
        if not reference:
            return None
        return WebhookEvent(reference=reference, provider_tx_id=reference, claimed_status=status)
