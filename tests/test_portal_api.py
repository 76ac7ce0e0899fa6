"""HTTP-level tests for the captive portal and payment callback routes."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from app.db import get_db, get_radius_db
from app.main import app
from app.api.portal import limiter as portal_limiter
from app.models.catalog import Plan
from app.models.orders import Order, OrderStatus
from app.models.radius import RadAcct
from app.models.vouchers import Voucher, VoucherStatus
from app.services.payment_providers import yopayments as yopayments_service
from tests.mocks import FakeHTTPX, FakeHTTPXResponse


@pytest.fixture()
def client(session_factory, radius_engine):
    radius_factory = sessionmaker(bind=radius_engine, autoflush=False, autocommit=False)

    def _db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def _radius_db():
        db = radius_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_radius_db] = _radius_db
    portal_limiter.reset()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _yo_accepts(monkeypatch):
    body = (
        b"<?xml version='1.0'?><AutoCreate><Response><Status>OK</Status>"
        b"<TransactionStatus>PENDING</TransactionStatus>"
        b"<TransactionReference>YO-REF-9</TransactionReference></Response></AutoCreate>"
    )
    fake = FakeHTTPX(FakeHTTPXResponse(content=body))
    monkeypatch.setattr(yopayments_service.httpx, "post", fake.post)
    return fake


# --- plans and purchase ---


def test_list_plans_hides_inactive(client, db_session, plan):
    db_session.add(
        Plan(name="Retired", duration_minutes=30, price=500, currency="UGX", is_active=False)
    )
    db_session.commit()

    response = client.get("/api/portal/plans")

    assert response.status_code == 200
    assert [item["name"] for item in response.json()] == ["1 Hour"]
    assert response.json()[0]["duration_minutes"] == 60


def test_mobile_money_purchase(client, db_session, plan, yo_config, monkeypatch):
    _yo_accepts(monkeypatch)

    response = client.post(
        "/api/portal/purchase/yopayments",
        json={"plan_id": plan.id, "phone": "0772 123 456", "mac": "aa:bb:cc:dd:ee:ff", "ip": "10.5.50.9"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["provider_ref"] == "YO-REF-9"
    assert data["order_reference"].startswith("YO_")
    order = db_session.scalars(select(Order)).one()
    assert order.customer_mac == "AA:BB:CC:DD:EE:FF"
    assert order.customer_msisdn == "0772123456"


def test_purchase_rejects_bad_phone(client, plan, yo_config):
    response = client.post("/api/portal/purchase/yopayments", json={"plan_id": plan.id, "phone": "07-72-ABC-456"})
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_card_purchase_requires_contact(client, plan, flutterwave_config):
    response = client.post("/api/portal/purchase/flutterwave", json={"plan_id": plan.id})
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_input"


def test_purchase_unknown_plan(client, yo_config):
    response = client.post("/api/portal/purchase/yopayments", json={"plan_id": 404, "phone": "0772123456"})
    assert response.status_code == 404
    assert response.json()["code"] == "plan_not_found"


def test_purchase_endpoint_is_rate_limited(client, plan, yo_config, monkeypatch):
    _yo_accepts(monkeypatch)
    payload = {"plan_id": plan.id, "phone": "0772123456"}
    codes = [client.post("/api/portal/purchase/yopayments", json=payload).status_code for _ in range(11)]
    assert codes[:10] == [201] * 10
    assert codes[10] == 429


def test_purchase_code_exhaustion_is_503(client, order, yo_config, monkeypatch):
    from app.services import vouchers as vouchers_service

    monkeypatch.setattr(vouchers_service, "generate_code", lambda length=None: order.voucher_code)
    response = client.post(
        "/api/portal/purchase/yopayments", json={"plan_id": order.plan_id, "phone": "0772123456"}
    )
    assert response.status_code == 503
    assert response.json()["code"] == "voucher_code_exhausted"


# --- order status and redirect ---


def test_order_status_polls_provider(client, order, fake_provider):
    fake_provider.succeed(order)

    response = client.get(f"/api/portal/orders/{order.reference}/status")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "paid"
    assert data["result"]["voucher"]["code"] == order.voucher_code

    again = client.get(f"/api/portal/orders/{order.reference}/status").json()
    assert again["already_processed"] is True
    assert again["result"] == data["result"]


def test_order_status_while_radius_down_is_503(client, db_session, order, fake_provider, monkeypatch):
    from app.services import order_activation as order_activation_service

    def radius_down(*args, **kwargs):
        raise RuntimeError("radius database unavailable")

    monkeypatch.setattr(order_activation_service.radius_vouchers, "activate", radius_down)
    fake_provider.succeed(order)

    for _ in range(2):
        response = client.get(f"/api/portal/orders/{order.reference}/status")
        assert response.status_code == 503
        assert response.json()["code"] == "access_provisioning_pending"
        assert order.voucher_code not in response.text
    db_session.refresh(order)
    assert order.status == OrderStatus.paid


def test_order_status_unknown(client):
    response = client.get("/api/portal/orders/ORD_MISSING/status")
    assert response.status_code == 404
    assert response.json()["code"] == "order_not_found"


def test_redirect_ignores_query_status(client, db_session, order, flutterwave_config, monkeypatch):
    from app.services.payment_providers import flutterwave as flutterwave_service

    order.provider = "flutterwave"
    db_session.commit()
    fake = FakeHTTPX(FakeHTTPXResponse({"status": "success", "data": {"id": 1, "status": "pending"}}))
    monkeypatch.setattr(flutterwave_service.httpx, "get", fake.get)

    response = client.get(
        "/api/payments/flutterwave/redirect",
        params={"orderRef": order.reference, "status": "successful", "transaction_id": "1"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert fake.requests[0][1].endswith("/transactions/1/verify")
    db_session.refresh(order)
    assert order.status == OrderStatus.pending


def test_webhook_route_always_acknowledges(client, flutterwave_config):
    response = client.post(
        "/api/payments/flutterwave/webhook",
        content=b'{"data": {"tx_ref": "ORD_NOPE", "id": 1}}',
        headers={"verif-hash": "not-the-hash"},
    )
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


# --- vouchers ---


def test_validate_and_redeem_voucher(client, db_session, plan):
    db_session.add(Voucher(code="31415926", plan_id=plan.id))
    db_session.commit()

    validated = client.post("/api/portal/vouchers/validate", json={"code": " 31415926 "})
    assert validated.status_code == 200
    assert validated.json()["valid"] is True
    assert validated.json()["plan"]["name"] == "1 Hour"

    redeemed = client.post("/api/portal/vouchers/redeem", json={"code": "31415926"})
    assert redeemed.status_code == 200
    assert redeemed.json()["result"]["voucher"]["username"] == "31415926"

    db_session.expire_all()
    assert db_session.scalars(select(Voucher)).one().status == VoucherStatus.used

    reused = client.post("/api/portal/vouchers/redeem", json={"code": "31415926"})
    assert reused.status_code == 409
    assert reused.json()["code"] == "already_used"


def test_unknown_voucher_is_404(client):
    response = client.post("/api/portal/vouchers/validate", json={"code": "00000000"})
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_expired_voucher_is_410(client, db_session, plan):
    db_session.add(
        Voucher(code="27182818", plan_id=plan.id, expires_at=datetime.now(timezone.utc) - timedelta(days=1))
    )
    db_session.commit()
    response = client.post("/api/portal/vouchers/validate", json={"code": "27182818"})
    assert response.status_code == 410


def test_rate_limited_voucher_sets_retry_after(client, counter_store):
    counter_store.lock("rate:testclient", 120)

    response = client.post("/api/portal/vouchers/validate", json={"code": "12345678"})

    assert response.status_code == 429
    assert response.json()["code"] == "rate_limited"
    assert 0 < int(response.headers["Retry-After"]) <= 120


def test_blocked_ip_is_403(client, db_session):
    from app.services.voucher_security import voucher_gate

    voucher_gate.flag_ip(db_session, "testclient", "manual")
    response = client.post("/api/portal/vouchers/redeem", json={"code": "12345678"})
    assert response.status_code == 403
    assert response.json()["code"] == "ip_blocked"


def test_voucher_usage(client, radius_session):
    start = datetime(2026, 5, 1, 10, 0, 0)
    radius_session.add(
        RadAcct(
            acctsessionid="u1",
            username="31415926",
            acctstarttime=start,
            acctstoptime=start + timedelta(minutes=20),
            acctsessiontime=1200,
            acctinputoctets=2 * 1024 * 1024,
            acctoutputoctets=8 * 1024 * 1024,
        )
    )
    radius_session.commit()

    data = client.get("/api/portal/vouchers/31415926/usage").json()

    assert data["total_sessions"] == 1
    assert data["total_download_mb"] == 8.0
    assert data["total_upload_mb"] == 2.0
    assert data["total_session_minutes"] == 20


# --- operational endpoints ---


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_metrics_exposes_activation_counters(client, order, fake_provider):
    fake_provider.succeed(order)
    client.get(f"/api/portal/orders/{order.reference}/status")

    body = client.get("/metrics").text

    assert "hotspot_order_activations_total" in body
    assert "http_requests_total" in body
