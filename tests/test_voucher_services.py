import pytest
from sqlalchemy import select

from app.models.radius import RadCheck
from app.models.vouchers import Voucher, VoucherStatus
from app.services import vouchers as vouchers_service
from app.services.exceptions import HotspotError, InvalidInput, PlanNotFound


def test_generate_batch_issues_unique_codes(db_session, radius_session, plan):
    created = vouchers_service.vouchers.generate_batch(
        db_session, radius_session, plan.id, 5, expires_days=7
    )
    codes = {voucher.code for voucher in created}
    assert len(codes) == 5
    assert all(len(code) == 8 and code.isdigit() for code in codes)
    assert all(voucher.status == VoucherStatus.unused for voucher in created)
    assert all(voucher.expires_at is not None for voucher in created)
    # Batch vouchers are provisioned in RADIUS at redemption, not at issue.
    assert radius_session.scalars(select(RadCheck)).all() == []


def test_generate_batch_can_preload_radius(db_session, radius_session, plan):
    created = vouchers_service.vouchers.generate_batch(
        db_session, radius_session, plan.id, 2, activate_radius=True
    )
    usernames = {row.username for row in radius_session.scalars(select(RadCheck)).all()}
    assert usernames == {voucher.code for voucher in created}


@pytest.mark.parametrize("count", [0, 101])
def test_generate_batch_bounds(db_session, radius_session, plan, count):
    with pytest.raises(InvalidInput):
        vouchers_service.vouchers.generate_batch(db_session, radius_session, plan.id, count)


def test_generate_batch_unknown_plan(db_session, radius_session):
    with pytest.raises(PlanNotFound):
        vouchers_service.vouchers.generate_batch(db_session, radius_session, 42, 1)


def test_code_space_is_shared_with_orders(db_session, order, monkeypatch):
    drawn = iter([order.voucher_code, "90000001"])
    monkeypatch.setattr(vouchers_service, "generate_code", lambda length=None: next(drawn))
    voucher = vouchers_service.insert_with_unique_code(
        db_session, lambda code: Voucher(code=code, plan_id=order.plan_id)
    )
    assert voucher.code == "90000001"


def test_code_exhaustion(db_session, order, monkeypatch):
    monkeypatch.setattr(vouchers_service, "generate_code", lambda length=None: order.voucher_code)
    with pytest.raises(vouchers_service.VoucherCodeExhausted) as excinfo:
        vouchers_service.insert_with_unique_code(
            db_session, lambda code: Voucher(code=code, plan_id=order.plan_id), attempts=3
        )
    assert isinstance(excinfo.value, HotspotError)
    assert excinfo.value.status_code == 503
    assert excinfo.value.code == "voucher_code_exhausted"


def test_disable_voucher(db_session, radius_session, plan):
    voucher = vouchers_service.vouchers.generate_batch(
        db_session, radius_session, plan.id, 1, activate_radius=True
    )[0]
    vouchers_service.vouchers.disable(db_session, radius_session, voucher.code)
    assert voucher.status == VoucherStatus.disabled
    with pytest.raises(InvalidInput):
        vouchers_service.vouchers.disable(db_session, radius_session, "00000000")
