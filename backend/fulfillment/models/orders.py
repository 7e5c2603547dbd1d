from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


class OrderStatus(db.Model):
    """Ordered order-status vocabulary (PENDING, CONFIRMED, SHIPPING, ...)."""
    __tablename__ = "order_statuses"

    id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(64), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "sort_order": self.sort_order,
        }


class Order(db.Model):
    """
    Customer order created from a cart.

    MONEY:
    total_amount = sum(item.total_price_snapshot) - discount_amount, computed
    once at creation. It is never recomputed from live catalog prices.

    STATUS:
    status_id is the current status; OrderStatusHistory holds every
    transition (append-only). version_id guards concurrent status writes.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False, unique=True)

    user_id = db.Column(db.Integer, nullable=False, index=True)
    shipping_address_id = db.Column(db.Integer, nullable=True)
    payment_method_id = db.Column(db.Integer, nullable=True)

    status_id = db.Column(db.Integer, db.ForeignKey("order_statuses.id"), nullable=False, index=True)

    total_amount = db.Column(db.Integer, nullable=False)
    discount_amount = db.Column(db.Integer, nullable=False, default=0)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=True, index=True)
    currency = db.Column(db.String(8), nullable=False, default="VND")

    # Caller-supplied idempotency key for checkout retries
    checkout_token = db.Column(db.String(64), nullable=True, unique=True)

    processed_by = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    status = db.relationship("OrderStatus")
    coupon = db.relationship("Coupon")
    items = db.relationship("OrderItem", backref="order", lazy=True, order_by="OrderItem.id")
    status_history = db.relationship(
        "OrderStatusHistory",
        backref="order",
        lazy=True,
        order_by="OrderStatusHistory.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status_id={self.status_id}>"

    def subtotal(self) -> int:
        return sum(item.total_price_snapshot for item in self.items)

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "shipping_address_id": self.shipping_address_id,
            "payment_method_id": self.payment_method_id,
            "status_id": self.status_id,
            "status": self.status.code if self.status else None,
            "total_amount": self.total_amount,
            "discount_amount": self.discount_amount,
            "coupon_id": self.coupon_id,
            "currency": self.currency,
            "processed_by": self.processed_by,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
            "status_history": [entry.to_dict() for entry in self.status_history],
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    Order line with an immutable snapshot of the product at order time.

    product_snapshot holds name/sku/price/images as they were when the order
    was placed; unit_price_snapshot and total_price_snapshot freeze the money.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_snapshot = db.Column(db.Integer, nullable=False)
    total_price_snapshot = db.Column(db.Integer, nullable=False)
    product_snapshot = db.Column(db.JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_snapshot": self.unit_price_snapshot,
            "total_price_snapshot": self.total_price_snapshot,
            "product_snapshot": self.product_snapshot,
        }


class OrderStatusHistory(db.Model):
    """
    One row per order status transition.

    IMMUTABLE: Rows are never updated or deleted.
    """
    __tablename__ = "order_status_history"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    status_id = db.Column(db.Integer, db.ForeignKey("order_statuses.id"), nullable=False)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    changed_by = db.Column(db.Integer, nullable=True)
    note = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "status_id": self.status_id,
            "changed_at": to_utc_z(self.changed_at),
            "changed_by": self.changed_by,
            "note": self.note,
        }
