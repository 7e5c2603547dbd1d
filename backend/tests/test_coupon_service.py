"""Coupon validation order, discount math and guarded usage."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fulfillment.models import Coupon
from fulfillment.services import coupon_service
from fulfillment.services.errors import CouponInvalidError, NotFoundError
from fulfillment.time_utils import utcnow


def _coupon(db_session, code, **kwargs):
    coupon = Coupon(code=code, used_count=kwargs.pop("used_count", 0), is_active=kwargs.pop("is_active", True), **kwargs)
    db_session.add(coupon)
    db_session.commit()
    return coupon


def test_validate_accepts_good_coupon(db_session, save10):
    result = coupon_service.validate("SAVE10", 200000)
    assert result.valid
    assert result.reason is None
    assert result.coupon.id == save10.id


def test_validate_reports_missing_coupon(db_session):
    result = coupon_service.validate("NOPE", 100)
    assert not result.valid
    assert result.reason == "coupon not found"


def test_validate_reasons_in_order(db_session):
    now = utcnow()
    _coupon(db_session, "OFF", is_active=False, start_date=now + timedelta(days=1))
    _coupon(db_session, "SOON", start_date=now + timedelta(days=1), end_date=now - timedelta(days=1))
    _coupon(db_session, "OLD", end_date=now - timedelta(days=1), usage_limit=1, used_count=1)
    _coupon(db_session, "USED", usage_limit=2, used_count=2, min_cart_value=10**9)
    _coupon(db_session, "BIG", min_cart_value=500000)

    assert coupon_service.validate("OFF", 1).reason == "coupon is inactive"
    assert coupon_service.validate("SOON", 1).reason == "coupon is not yet valid"
    assert coupon_service.validate("OLD", 1).reason == "coupon has expired"
    assert coupon_service.validate("USED", 1).reason == "usage limit reached"
    assert coupon_service.validate("BIG", 1).reason == "minimum cart value is 500000"


def test_validate_accepts_aware_now(db_session):
    _coupon(db_session, "WINDOW", start_date=datetime(2030, 1, 1), end_date=datetime(2030, 1, 31))
    inside = datetime(2030, 1, 15, 12, tzinfo=timezone(timedelta(hours=7)))
    outside = datetime(2030, 2, 1, tzinfo=timezone.utc)

    assert coupon_service.validate("WINDOW", 1, now=inside).valid
    assert coupon_service.validate("WINDOW", 1, now=outside).reason == "coupon has expired"


def test_compute_discount_percent_rounds_half_up(db_session):
    coupon = Coupon(code="P", discount_percent=Decimal("12.5"))
    assert coupon_service.compute_discount(coupon, 100004) == 12501
    assert coupon_service.compute_discount(coupon, 4) == 1


def test_compute_discount_fixed_capped_at_subtotal(db_session):
    coupon = Coupon(code="F", discount_amount=30000)
    assert coupon_service.compute_discount(coupon, 100000) == 30000
    assert coupon_service.compute_discount(coupon, 20000) == 20000


def test_consume_stops_at_usage_limit(db_session, save10):
    coupon_service.consume(save10.id)
    assert db_session.get(Coupon, save10.id).used_count == 1

    with pytest.raises(CouponInvalidError) as exc_info:
        coupon_service.consume(save10.id)
    assert exc_info.value.reason == "usage limit reached"
    assert db_session.get(Coupon, save10.id).used_count == 1


def test_consume_unlimited_coupon(db_session, flat_coupon):
    for _ in range(3):
        coupon_service.consume(flat_coupon.id)
    assert db_session.get(Coupon, flat_coupon.id).used_count == 3


def test_consume_unknown_coupon(db_session):
    with pytest.raises(NotFoundError):
        coupon_service.consume(12345)


def test_list_active_coupons_excludes_expired_and_inactive(db_session, save10):
    now = utcnow()
    _coupon(db_session, "GONE", end_date=now - timedelta(hours=1))
    _coupon(db_session, "OFF", is_active=False)

    codes = [c.code for c in coupon_service.list_active_coupons()]
    assert codes == ["SAVE10"]
