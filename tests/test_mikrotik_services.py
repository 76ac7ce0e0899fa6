"""Tests for MikroTik hotspot IP-binding management."""

import time
from datetime import datetime, timedelta, timezone

import pytest
import routeros_api
from sqlalchemy import select

from app.models.network import MacBinding, MacBindingStatus
from app.models.orders import AutologinStatus
from app.services import mikrotik as mikrotik_service
from app.services.mikrotik import IP_BINDING_PATH, MikrotikBindings, MikrotikConfig
from tests.mocks import FakeRouterOsApiPool, FakeRouterResource

CONFIG = MikrotikConfig(enabled=True, host="10.0.0.1", username="api", password="secret", timeout_seconds=2)


@pytest.fixture()
def router(monkeypatch):
    resources = {IP_BINDING_PATH: FakeRouterResource()}
    monkeypatch.setattr(routeros_api, "RouterOsApiPool", FakeRouterOsApiPool.factory(resources))
    return resources[IP_BINDING_PATH]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("aa:bb:cc:dd:ee:ff", "AA:BB:CC:DD:EE:FF"),
        ("AA-BB-CC-DD-EE-FF", "AA:BB:CC:DD:EE:FF"),
        ("aabb.ccdd.eeff", "AA:BB:CC:DD:EE:FF"),
        ("aabbccddeeff", "AA:BB:CC:DD:EE:FF"),
        ("aa:bb:cc", None),
        ("zz:bb:cc:dd:ee:ff", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_mac_address(raw, expected):
    assert mikrotik_service.normalize_mac_address(raw) == expected


def test_authorize_skipped_when_disabled(db_session):
    bindings = MikrotikBindings(MikrotikConfig(enabled=False))
    outcome = bindings.authorize(db_session, "aa:bb:cc:dd:ee:ff")
    assert outcome.status == AutologinStatus.skipped


def test_authorize_rejects_bad_mac(db_session):
    outcome = MikrotikBindings(CONFIG).authorize(db_session, "not-a-mac")
    assert outcome.status == AutologinStatus.failed
    assert outcome.message == "Invalid MAC address"


def test_authorize_skipped_without_host(db_session):
    bindings = MikrotikBindings(MikrotikConfig(enabled=True, host="", username="api"))
    outcome = bindings.authorize(db_session, "aa:bb:cc:dd:ee:ff")
    assert outcome.status == AutologinStatus.skipped


def test_authorize_creates_bypassed_binding(db_session, router):
    outcome = MikrotikBindings(CONFIG).authorize(
        db_session,
        "aa-bb-cc-dd-ee-ff",
        ip="10.5.50.23",
        duration_minutes=60,
        comment="Hotspot - Order ORD_1",
        order_id=None,
    )

    assert outcome.success
    assert outcome.binding_id == "*1"
    assert router.added == [
        {
            "mac-address": "AA:BB:CC:DD:EE:FF",
            "type": "bypassed",
            "comment": "Hotspot - Order ORD_1",
            "address": "10.5.50.23",
            "server": "hotspot1",
        }
    ]
    binding = db_session.scalars(select(MacBinding)).one()
    assert binding.status == MacBindingStatus.active
    assert binding.expires_at is not None


def test_authorize_replaces_existing_binding(db_session, router):
    router.entries.append({"id": "*A", "mac-address": "AA:BB:CC:DD:EE:FF", "type": "bypassed"})
    bindings = MikrotikBindings(CONFIG)
    bindings.authorize(db_session, "aa:bb:cc:dd:ee:ff", duration_minutes=30)
    bindings.authorize(db_session, "aa:bb:cc:dd:ee:ff", duration_minutes=30)

    assert "*A" in router.removed
    assert len(router.get(**{"mac-address": "AA:BB:CC:DD:EE:FF"})) == 1
    statuses = sorted(b.status.value for b in db_session.scalars(select(MacBinding)).all())
    assert statuses == ["active", "removed"]


def test_authorize_router_error_is_reported_not_raised(db_session, monkeypatch):
    resources = {IP_BINDING_PATH: FakeRouterResource()}
    error = routeros_api.exceptions.RouterOsApiConnectionError("connection refused")
    monkeypatch.setattr(routeros_api, "RouterOsApiPool", FakeRouterOsApiPool.factory(resources, error))

    outcome = MikrotikBindings(CONFIG).authorize(db_session, "aa:bb:cc:dd:ee:ff")

    assert outcome.status == AutologinStatus.failed
    binding = db_session.scalars(select(MacBinding)).one()
    assert binding.status == MacBindingStatus.pending
    assert "connection refused" in binding.error_message


def test_authorize_times_out(db_session, monkeypatch):
    class SlowPool(FakeRouterOsApiPool):
        def get_api(self):
            time.sleep(1.5)
            return super().get_api()

    resources = {IP_BINDING_PATH: FakeRouterResource()}
    monkeypatch.setattr(routeros_api, "RouterOsApiPool", SlowPool.factory(resources))
    config = MikrotikConfig(enabled=True, host="10.0.0.1", username="api", timeout_seconds=1)

    started = time.monotonic()
    outcome = MikrotikBindings(config).authorize(db_session, "aa:bb:cc:dd:ee:ff")

    assert outcome.status == AutologinStatus.failed
    assert time.monotonic() - started < 1.4


def test_remove_binding(db_session, router):
    bindings = MikrotikBindings(CONFIG)
    bindings.authorize(db_session, "aa:bb:cc:dd:ee:ff")
    result = bindings.remove(db_session, "AA:BB:CC:DD:EE:FF")
    assert result == {"success": True, "message": "Removed 1 binding(s)", "removed": 1}
    assert router.entries == []


def test_list_active_bindings(router):
    router.entries.extend(
        [
            {"id": "*1", "mac-address": "AA:AA:AA:AA:AA:AA", "type": "bypassed"},
            {"id": "*2", "mac-address": "BB:BB:BB:BB:BB:BB", "type": "blocked"},
        ]
    )
    active = MikrotikBindings(CONFIG).list_active_bindings()
    assert [entry["id"] for entry in active] == ["*1"]


def test_test_connection_reports_identity(monkeypatch):
    resources = {
        "/system/identity": FakeRouterResource([{"name": "hotspot-gw"}]),
        "/system/resource": FakeRouterResource([{"version": "7.14"}]),
    }
    monkeypatch.setattr(routeros_api, "RouterOsApiPool", FakeRouterOsApiPool.factory(resources))
    result = MikrotikBindings(CONFIG).test_connection()
    assert result["success"] is True
    assert result["identity"] == "hotspot-gw"
    assert result["version"] == "7.14"


def test_expire_due_bindings(db_session, router):
    bindings = MikrotikBindings(CONFIG)
    bindings.authorize(db_session, "aa:bb:cc:dd:ee:ff", duration_minutes=10)
    binding = db_session.scalars(select(MacBinding)).one()
    binding.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db_session.commit()

    assert bindings.expire_due_bindings(db_session) == 1
    db_session.refresh(binding)
    assert binding.status == MacBindingStatus.expired
    assert router.entries == []


def test_expire_removes_binding_created_after_timeout(db_session, monkeypatch):
    class SlowPool(FakeRouterOsApiPool):
        def get_api(self):
            time.sleep(1.5)
            return super().get_api()

    resources = {IP_BINDING_PATH: FakeRouterResource()}
    router = resources[IP_BINDING_PATH]
    monkeypatch.setattr(routeros_api, "RouterOsApiPool", SlowPool.factory(resources))
    config = MikrotikConfig(enabled=True, host="10.0.0.1", username="api", timeout_seconds=1)
    bindings = MikrotikBindings(config)

    outcome = bindings.authorize(db_session, "aa:bb:cc:dd:ee:ff", duration_minutes=10)
    assert outcome.status == AutologinStatus.failed

    deadline = time.monotonic() + 5
    while not router.entries and time.monotonic() < deadline:
        time.sleep(0.1)
    assert router.entries[0]["type"] == "bypassed"

    binding = db_session.scalars(select(MacBinding)).one()
    assert binding.status == MacBindingStatus.pending
    binding.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db_session.commit()
    monkeypatch.setattr(routeros_api, "RouterOsApiPool", FakeRouterOsApiPool.factory(resources))

    assert bindings.expire_due_bindings(db_session) == 1
    db_session.refresh(binding)
    assert binding.status == MacBindingStatus.expired
    assert router.entries == []


def test_expire_retries_when_router_removal_fails(db_session, router, monkeypatch):
    bindings = MikrotikBindings(CONFIG)
    bindings.authorize(db_session, "aa:bb:cc:dd:ee:ff", duration_minutes=10)
    binding = db_session.scalars(select(MacBinding)).one()
    binding.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db_session.commit()

    error = routeros_api.exceptions.RouterOsApiConnectionError("connection refused")
    monkeypatch.setattr(
        routeros_api, "RouterOsApiPool", FakeRouterOsApiPool.factory({IP_BINDING_PATH: router}, error)
    )
    assert bindings.expire_due_bindings(db_session) == 0
    db_session.refresh(binding)
    assert binding.status == MacBindingStatus.active
    assert "connection refused" in binding.error_message

    monkeypatch.setattr(routeros_api, "RouterOsApiPool", FakeRouterOsApiPool.factory({IP_BINDING_PATH: router}))
    assert bindings.expire_due_bindings(db_session) == 1
    db_session.refresh(binding)
    assert binding.status == MacBindingStatus.expired
    assert router.entries == []


def test_successful_authorize_supersedes_pending_rows(db_session, router, monkeypatch):
    bindings = MikrotikBindings(CONFIG)
    error = routeros_api.exceptions.RouterOsApiConnectionError("connection refused")
    monkeypatch.setattr(
        routeros_api, "RouterOsApiPool", FakeRouterOsApiPool.factory({IP_BINDING_PATH: router}, error)
    )
    bindings.authorize(db_session, "aa:bb:cc:dd:ee:ff", duration_minutes=10)

    monkeypatch.setattr(routeros_api, "RouterOsApiPool", FakeRouterOsApiPool.factory({IP_BINDING_PATH: router}))
    bindings.authorize(db_session, "aa:bb:cc:dd:ee:ff", duration_minutes=10)

    statuses = [row.status for row in db_session.scalars(select(MacBinding).order_by(MacBinding.id))]
    assert statuses == [MacBindingStatus.removed, MacBindingStatus.active]
