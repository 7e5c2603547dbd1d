from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


class PaymentStatus(db.Model):
    """Payment-status vocabulary (Pending, Paid, Failed, Refunded)."""
    __tablename__ = "payment_statuses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    status_name = db.Column(db.String(32), nullable=False, unique=True)

    def to_dict(self) -> dict:
        return {"id": self.id, "status_name": self.status_name}


class Payment(db.Model):
    """
    One payment attempt against an order.

    An order may accumulate several attempts (retries after failure) but at
    most one of them reaches Paid. version_id makes concurrent webhook
    deliveries collide instead of both applying.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    payment_method_id = db.Column(db.Integer, nullable=True)

    gateway = db.Column(db.String(32), nullable=False)
    gateway_transaction_id = db.Column(db.String(128), nullable=True, unique=True)
    gateway_status = db.Column(db.String(64), nullable=True)
    gateway_response = db.Column(db.Text, nullable=True)

    payment_status_id = db.Column(db.Integer, db.ForeignKey("payment_statuses.id"), nullable=False, index=True)

    amount = db.Column(db.Integer, nullable=False)
    refunded_amount = db.Column(db.Integer, nullable=False, default=0)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    attempt_count = db.Column(db.Integer, nullable=False, default=1)
    last_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    # "metadata" is reserved on declarative models
    payment_metadata = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("payments", lazy=True, order_by="Payment.id"))
    status = db.relationship("PaymentStatus")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Payment id={self.id} order_id={self.order_id} status_id={self.payment_status_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "payment_method_id": self.payment_method_id,
            "gateway": self.gateway,
            "gateway_transaction_id": self.gateway_transaction_id,
            "gateway_status": self.gateway_status,
            "payment_status_id": self.payment_status_id,
            "status": self.status.status_name if self.status else None,
            "amount": self.amount,
            "refunded_amount": self.refunded_amount,
            "paid_at": to_utc_z(self.paid_at),
            "attempt_count": self.attempt_count,
            "last_attempt_at": to_utc_z(self.last_attempt_at),
            "failure_reason": self.failure_reason,
            "metadata": self.payment_metadata,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
