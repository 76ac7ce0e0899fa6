"""Tests for the Flutterwave and Yo! Payments adapters."""

import xml.etree.ElementTree as ET
from decimal import Decimal

import httpx
import pytest

from app.services.exceptions import ChargeRejected, ProviderNotConfigured, ProviderUnavailable
from app.services.payment_providers import get_adapter, provider_codes
from app.services.payment_providers import flutterwave as flutterwave_service
from app.services.payment_providers import yopayments as yopayments_service
from app.services.payment_providers.base import TransactionStatus
from app.services.provider_settings import resolve_credentials
from tests.mocks import FakeHTTPX, FakeHTTPXResponse


def _yo_xml(**fields) -> bytes:
    body = "".join(f"<{key}>{value}</{key}>" for key, value in fields.items())
    return f"<?xml version='1.0'?><AutoCreate><Response>{body}</Response></AutoCreate>".encode()


def test_registry_lists_both_providers():
    assert {"flutterwave", "yopayments"} <= set(provider_codes())
    with pytest.raises(ProviderNotConfigured):
        get_adapter("paypal")


# --- credentials ---


def test_credentials_from_provider_row(db_session, flutterwave_config):
    creds = resolve_credentials(db_session, "flutterwave")
    assert creds.enabled
    assert creds.get("secret_key") == "FLWSECK_TEST-abc"
    assert creds.environment == "live"


def test_credentials_without_row_or_env_are_disabled(db_session):
    creds = resolve_credentials(db_session, "yopayments")
    assert not creds.configured
    assert not creds.enabled


def test_disabled_row_wins_over_env(db_session, yo_config):
    yo_config.is_enabled = False
    db_session.commit()
    assert not resolve_credentials(db_session, "yopayments").enabled


# --- flutterwave ---


def test_flutterwave_create_charge_returns_link(db_session, flutterwave_config, monkeypatch):
    fake = FakeHTTPX(
        FakeHTTPXResponse({"status": "success", "data": {"link": "https://checkout.flw/abc"}})
    )
    monkeypatch.setattr(flutterwave_service.httpx, "post", fake.post)

    handle = get_adapter("flutterwave").create_charge(
        db_session,
        reference="ORD_ABC",
        amount=Decimal("1000.00"),
        currency="UGX",
        customer={"email": "guest@example.com", "msisdn": "0772123456"},
        redirect_url="http://portal/redirect",
        metadata={"title": "WiFi Access"},
    )

    assert handle.payment_link == "https://checkout.flw/abc"
    method, url, kwargs = fake.requests[0]
    assert url.endswith("/payments")
    assert kwargs["json"]["tx_ref"] == "ORD_ABC"
    assert kwargs["headers"]["Authorization"] == "Bearer FLWSECK_TEST-abc"
    assert kwargs["timeout"] > 0


def test_flutterwave_create_charge_rejected(db_session, flutterwave_config, monkeypatch):
    fake = FakeHTTPX(FakeHTTPXResponse({"status": "error", "message": "Invalid currency"}, 400))
    monkeypatch.setattr(flutterwave_service.httpx, "post", fake.post)
    with pytest.raises(ChargeRejected):
        get_adapter("flutterwave").create_charge(
            db_session, reference="ORD_X", amount=Decimal("1"), currency="XXX", customer={}
        )


def test_flutterwave_transport_error_is_unavailable(db_session, flutterwave_config, monkeypatch):
    fake = FakeHTTPX(httpx.ConnectTimeout("timed out"))
    monkeypatch.setattr(flutterwave_service.httpx, "post", fake.post)
    with pytest.raises(ProviderUnavailable):
        get_adapter("flutterwave").create_charge(
            db_session, reference="ORD_X", amount=Decimal("1"), currency="UGX", customer={}
        )


def test_flutterwave_verify_by_id(db_session, flutterwave_config, monkeypatch):
    fake = FakeHTTPX(
        FakeHTTPXResponse(
            {
                "status": "success",
                "data": {
                    "id": 4455,
                    "tx_ref": "ORD_ABC",
                    "status": "successful",
                    "amount": 1000,
                    "currency": "UGX",
                },
            }
        )
    )
    monkeypatch.setattr(flutterwave_service.httpx, "get", fake.get)

    verified = get_adapter("flutterwave").verify(db_session, "4455", "ORD_ABC")

    assert fake.requests[0][1].endswith("/transactions/4455/verify")
    assert verified.status == TransactionStatus.success
    assert verified.reference == "ORD_ABC"
    assert verified.provider_tx_id == "4455"
    assert verified.amount == Decimal("1000")


def test_flutterwave_verify_by_reference(db_session, flutterwave_config, monkeypatch):
    fake = FakeHTTPX(FakeHTTPXResponse({"status": "success", "data": {"status": "pending"}}))
    monkeypatch.setattr(flutterwave_service.httpx, "get", fake.get)
    verified = get_adapter("flutterwave").verify(db_session, None, "ORD_ABC")
    assert fake.requests[0][1].endswith("/transactions/verify_by_reference")
    assert fake.requests[0][2]["params"] == {"tx_ref": "ORD_ABC"}
    assert verified.status == TransactionStatus.pending


def test_flutterwave_verify_not_found_is_unknown(db_session, flutterwave_config, monkeypatch):
    fake = FakeHTTPX(FakeHTTPXResponse({"status": "error", "message": "No transaction"}, 404))
    monkeypatch.setattr(flutterwave_service.httpx, "get", fake.get)
    verified = get_adapter("flutterwave").verify(db_session, "1", None)
    assert verified.status == TransactionStatus.unknown


def test_flutterwave_webhook_signature(db_session, flutterwave_config):
    adapter = get_adapter("flutterwave")
    assert adapter.verify_webhook_signature(db_session, {"verif-hash": "hash-123"}, b"{}")
    assert not adapter.verify_webhook_signature(db_session, {"verif-hash": "wrong"}, b"{}")
    assert not adapter.verify_webhook_signature(db_session, {}, b"{}")


def test_flutterwave_parse_webhook():
    adapter = get_adapter("flutterwave")
    event = adapter.parse_webhook(
        b'{"event": "charge.completed", "data": {"id": 99, "tx_ref": "ORD_1", "status": "successful"}}',
        {},
    )
    assert (event.reference, event.provider_tx_id, event.claimed_status) == ("ORD_1", "99", "successful")
    assert adapter.parse_webhook(b"not json", {}) is None
    assert adapter.parse_webhook(b'{"data": {}}', {}) is None


# --- yo payments ---


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0772123456", "256772123456"),
        ("+256 772 123 456", "256772123456"),
        ("772123456", "256772123456"),
    ],
)
def test_format_msisdn(raw, expected):
    assert yopayments_service.format_msisdn(raw) == expected


def test_detect_network():
    assert yopayments_service.detect_network("0772123456") == "MTN"
    assert yopayments_service.detect_network("0752123456") == "AIRTEL"
    assert yopayments_service.detect_network("0312123456") == "unknown"


def test_build_request_document(db_session, yo_config):
    creds = resolve_credentials(db_session, "yopayments")
    root = ET.fromstring(
        yopayments_service.build_request("acdepositfunds", {"Amount": 500}, creds)
    )
    request = root.find("Request")
    assert request.findtext("APIUsername") == "yo-user"
    assert request.findtext("Method") == "acdepositfunds"
    assert request.findtext("Amount") == "500"


def test_yo_create_charge_sandbox(db_session, yo_config, monkeypatch):
    fake = FakeHTTPX(
        FakeHTTPXResponse(
            content=_yo_xml(Status="OK", TransactionStatus="PENDING", TransactionReference="YO-REF-1")
        )
    )
    monkeypatch.setattr(yopayments_service.httpx, "post", fake.post)

    handle = get_adapter("yopayments").create_charge(
        db_session,
        reference="YO_ABC",
        amount=Decimal("1000.00"),
        currency="UGX",
        customer={"msisdn": "0772123456"},
    )

    assert handle.provider_ref == "YO-REF-1"
    assert "MTN" in handle.message
    method, url, kwargs = fake.requests[0]
    assert url == yopayments_service.YO_API_URLS["test"]
    sent = ET.fromstring(kwargs["content"]).find("Request")
    assert sent.findtext("Account") == "256772123456"
    assert sent.findtext("Amount") == "1000"
    assert sent.find("ExternalReference") is None


def test_yo_create_charge_live_sends_external_reference(db_session, yo_config, monkeypatch):
    from app.models.payment_provider import ProviderEnvironment

    yo_config.environment = ProviderEnvironment.live
    db_session.commit()
    fake = FakeHTTPX(FakeHTTPXResponse(content=_yo_xml(Status="OK", TransactionReference="R")))
    monkeypatch.setattr(yopayments_service.httpx, "post", fake.post)

    get_adapter("yopayments").create_charge(
        db_session, reference="YO_ABC", amount=Decimal("500"), currency="UGX", customer={"msisdn": "0772123456"}
    )

    method, url, kwargs = fake.requests[0]
    assert url == yopayments_service.YO_API_URLS["live"]
    assert ET.fromstring(kwargs["content"]).find("Request").findtext("ExternalReference") == "YO_ABC"


def test_yo_create_charge_error_status(db_session, yo_config, monkeypatch):
    fake = FakeHTTPX(
        FakeHTTPXResponse(content=_yo_xml(Status="ERROR", StatusMessage="Insufficient balance"))
    )
    monkeypatch.setattr(yopayments_service.httpx, "post", fake.post)
    with pytest.raises(ChargeRejected, match="Insufficient balance"):
        get_adapter("yopayments").create_charge(
            db_session, reference="YO_1", amount=Decimal("1"), currency="UGX", customer={"msisdn": "0772123456"}
        )


def test_yo_create_charge_requires_msisdn(db_session, yo_config):
    with pytest.raises(ChargeRejected):
        get_adapter("yopayments").create_charge(
            db_session, reference="YO_1", amount=Decimal("1"), currency="UGX", customer={}
        )


def test_yo_unreadable_response_is_unavailable(db_session, yo_config, monkeypatch):
    fake = FakeHTTPX(FakeHTTPXResponse(content=b"<html>oops"))
    monkeypatch.setattr(yopayments_service.httpx, "post", fake.post)
    with pytest.raises(ProviderUnavailable):
        get_adapter("yopayments").verify(db_session, "YO-REF-1")


@pytest.mark.parametrize(
    "yo_status, expected",
    [
        ("SUCCEEDED", TransactionStatus.success),
        ("FAILED", TransactionStatus.failed),
        ("PENDING", TransactionStatus.pending),
        ("INDETERMINATE", TransactionStatus.processing),
    ],
)
def test_yo_verify_status_mapping(db_session, yo_config, monkeypatch, yo_status, expected):
    fake = FakeHTTPX(
        FakeHTTPXResponse(
            content=_yo_xml(
                Status="OK",
                TransactionStatus=yo_status,
                TransactionReference="YO-REF-1",
                MnoPRN="MTN123",
            )
        )
    )
    monkeypatch.setattr(yopayments_service.httpx, "post", fake.post)
    verified = get_adapter("yopayments").verify(db_session, "YO-REF-1")
    assert verified.status == expected
    assert verified.reference == "YO-REF-1"
    assert verified.provider_tx_id == "MTN123"


def test_yo_webhook_token(db_session, yo_config):
    adapter = get_adapter("yopayments")
    assert adapter.verify_webhook_signature(db_session, {"x-yo-webhook-token": "yo-token"}, b"")
    assert not adapter.verify_webhook_signature(db_session, {"x-yo-webhook-token": "nope"}, b"")


def test_yo_parse_webhook_form_and_xml():
    adapter = get_adapter("yopayments")
    form = adapter.parse_webhook(b"transaction_reference=YO-REF-1&status=SUCCEEDED", {})
    assert (form.reference, form.claimed_status) == ("YO-REF-1", "SUCCEEDED")

    xml = adapter.parse_webhook(_yo_xml(TransactionReference="YO-REF-2", TransactionStatus="FAILED"), {})
    assert (xml.reference, xml.claimed_status) == ("YO-REF-2", "FAILED")

    assert adapter.parse_webhook(b"", {}) is None
    assert adapter.parse_webhook(b"<broken", {}) is None
