# Overview: Service-layer operations for coupons; validation and usage accounting.

"""
Coupon Accounting

Validation is a pure read; the staged checks run in a fixed order so the
caller always gets one deterministic reason.

Usage accounting is a single conditional UPDATE:

    UPDATE coupons SET used_count = used_count + 1
    WHERE id = ? AND (usage_limit IS NULL OR used_count < usage_limit)

Two checkouts racing for the last slot both pass validate(); only one of
them gets a row back from the UPDATE. There is no "unredeem": used_count is
never decremented.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import or_, update

from ..extensions import db
from ..models import Coupon
from fulfillment.time_utils import utcnow, to_utc_naive
from .concurrency import run_with_retry
from .errors import CouponInvalidError, NotFoundError


REASON_NOT_FOUND = "coupon not found"
REASON_INACTIVE = "coupon is inactive"
REASON_NOT_STARTED = "coupon is not yet valid"
REASON_EXPIRED = "coupon has expired"
REASON_USAGE_LIMIT = "usage limit reached"


@dataclass
class CouponValidation:
    valid: bool
    reason: str | None = None
    coupon: Coupon | None = None


def get_by_code(code: str) -> Coupon | None:
    if not code:
        return None
    return db.session.query(Coupon).filter_by(code=code.strip()).first()


def validate(code: str, cart_value: int, now: datetime | None = None) -> CouponValidation:
    """
    Check a coupon against time window, usage and cart value.

    Order of checks (first failure wins):
    1. existence  2. is_active  3. start_date <= now  4. end_date >= now
    5. used_count < usage_limit (when set)  6. cart_value >= min_cart_value
    """
    now = to_utc_naive(now) or utcnow()

    coupon = get_by_code(code)
    if coupon is None:
        return CouponValidation(False, REASON_NOT_FOUND)
    if not coupon.is_active:
        return CouponValidation(False, REASON_INACTIVE, coupon)
    if coupon.start_date is not None and to_utc_naive(coupon.start_date) > now:
        return CouponValidation(False, REASON_NOT_STARTED, coupon)
    if coupon.end_date is not None and to_utc_naive(coupon.end_date) < now:
        return CouponValidation(False, REASON_EXPIRED, coupon)
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        return CouponValidation(False, REASON_USAGE_LIMIT, coupon)
    if coupon.min_cart_value and cart_value < coupon.min_cart_value:
        return CouponValidation(False, f"minimum cart value is {coupon.min_cart_value}", coupon)

    return CouponValidation(True, None, coupon)


def compute_discount(coupon: Coupon, subtotal: int) -> int:
    """
    Discount for a subtotal.

    Percent discounts round half-up to the minor unit; both kinds are capped
    at the subtotal so an order total is never negative.
    """
    if coupon.discount_percent is not None and Decimal(coupon.discount_percent) > 0:
        raw = Decimal(subtotal) * Decimal(coupon.discount_percent) / Decimal(100)
        discount = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    else:
        discount = int(coupon.discount_amount or 0)
    return max(0, min(discount, subtotal))


def _consume_inner(coupon_id: int) -> None:
    """Guarded increment without commit; runs in the caller's transaction."""
    stmt = (
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        )
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        if db.session.query(Coupon.id).filter_by(id=coupon_id).first() is None:
            raise NotFoundError(f"Coupon {coupon_id} not found")
        raise CouponInvalidError(REASON_USAGE_LIMIT)

    # Loaded Coupon objects still hold the pre-increment count
    db.session.expire(db.session.get(Coupon, coupon_id), ["used_count"])


def consume(coupon_id: int) -> None:
    """
    Record one redemption.

    Order creation calls the inner form inside its own transaction; this
    standalone form commits immediately.
    """
    def _op():
        _consume_inner(coupon_id)
        db.session.commit()

    run_with_retry(_op)


def list_active_coupons(now: datetime | None = None) -> list[Coupon]:
    """Active coupons whose time window contains now, newest first."""
    now = to_utc_naive(now) or utcnow()
    q = db.session.query(Coupon).filter(
        Coupon.is_active.is_(True),
        or_(Coupon.start_date.is_(None), Coupon.start_date <= now),
        or_(Coupon.end_date.is_(None), Coupon.end_date >= now),
    )
    return q.order_by(Coupon.created_at.desc(), Coupon.id.desc()).all()
