import os

# Settings are read at import time; point them at throwaway values first.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["MIKROTIK_ENABLED"] = "false"
os.environ.pop("REDIS_URL", None)
os.environ.pop("RADIUS_DATABASE_URL", None)

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.db import Base, RadiusBase
from app.models.catalog import Plan
from app.models.orders import Order, OrderStatus
from app.models.payment_provider import PaymentProviderConfig, ProviderEnvironment
from app.services import payment_providers
from app.services.rate_counters import InMemoryCounterStore, set_counter_store
from tests.mocks import FakeProviderAdapter


def _sqlite_engine(path):
    return create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})


@pytest.fixture()
def engine(tmp_path):
    engine = _sqlite_engine(tmp_path / "hotspot.db")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def radius_engine(tmp_path):
    engine = _sqlite_engine(tmp_path / "radius.db")
    RadiusBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def radius_session(radius_engine):
    session = sessionmaker(bind=radius_engine, autoflush=False, autocommit=False)()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def counter_store():
    store = InMemoryCounterStore()
    set_counter_store(store)
    yield store
    set_counter_store(None)


@pytest.fixture()
def plan(db_session):
    plan = Plan(
        name="1 Hour",
        duration_minutes=60,
        speed_down_kbps=3000,
        speed_up_kbps=1500,
        data_limit_mb=500,
        price=Decimal("1000.00"),
        currency="UGX",
        is_active=True,
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture()
def fake_provider(monkeypatch):
    adapter = FakeProviderAdapter()
    monkeypatch.setitem(payment_providers._ADAPTERS, adapter.code, adapter)
    return adapter


@pytest.fixture()
def order(db_session, plan, fake_provider):
    order = Order(
        reference="ORD_TESTREF0000001",
        plan_id=plan.id,
        voucher_code="48213307",
        amount=Decimal("1000.00"),
        currency="UGX",
        provider=fake_provider.code,
        status=OrderStatus.pending,
        customer_mac="AA:BB:CC:DD:EE:FF",
        customer_ip="10.5.50.23",
    )
    db_session.add(order)
    db_session.commit()
    db_session.refresh(order)
    return order


@pytest.fixture()
def flutterwave_config(db_session):
    row = PaymentProviderConfig(
        provider_code="flutterwave",
        display_name="Flutterwave",
        is_enabled=True,
        environment=ProviderEnvironment.live,
        credentials={"secret_key": "FLWSECK_TEST-abc", "secret_hash": "hash-123"},
    )
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture()
def yo_config(db_session):
    row = PaymentProviderConfig(
        provider_code="yopayments",
        display_name="Mobile Money",
        is_enabled=True,
        environment=ProviderEnvironment.test,
        credentials={
            "api_username": "yo-user",
            "api_password": "yo-pass",
            "webhook_token": "yo-token",
        },
    )
    db_session.add(row)
    db_session.commit()
    return row
