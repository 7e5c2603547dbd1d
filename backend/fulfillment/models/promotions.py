from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


class Coupon(db.Model):
    """
    Discount coupon redeemable at checkout.

    Either discount_percent or discount_amount applies (percent wins when > 0).
    used_count only ever grows, and never beyond usage_limit when a limit is
    set; see coupon_service.consume for the guarded increment.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        db.CheckConstraint("used_count >= 0", name="ck_coupons_used_count_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True)
    description = db.Column(db.String(255), nullable=True)

    discount_amount = db.Column(db.Integer, nullable=True)  # minor units
    discount_percent = db.Column(db.Numeric(5, 2), nullable=True)

    min_cart_value = db.Column(db.Integer, nullable=True)

    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)

    usage_limit = db.Column(db.Integer, nullable=True)
    used_count = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "discount_amount": self.discount_amount,
            "discount_percent": float(self.discount_percent) if self.discount_percent is not None else None,
            "min_cart_value": self.min_cart_value,
            "start_date": to_utc_z(self.start_date),
            "end_date": to_utc_z(self.end_date),
            "usage_limit": self.usage_limit,
            "used_count": self.used_count,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
