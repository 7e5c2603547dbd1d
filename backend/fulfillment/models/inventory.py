from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


class InventoryTransaction(db.Model):
    """
    Append-only ledger of stock-quantity changes.

    quantity_change is the REQUESTED delta. When a decrement is clamped at
    zero the row still records the full request, so SUM(quantity_change) can
    drift below the live stock_quantity. That drift is expected.

    IMMUTABLE: Rows are never updated or deleted.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.Index("ix_inventory_txns_product_changed", "product_id", "changed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity_change = db.Column(db.Integer, nullable=False)

    # sale, return, receipt, adjustment, correction
    change_type = db.Column(db.String(16), nullable=False, index=True)

    note = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.Integer, nullable=True)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product", backref=db.backref("inventory_transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity_change": self.quantity_change,
            "change_type": self.change_type,
            "note": self.note,
            "created_by": self.created_by,
            "changed_at": to_utc_z(self.changed_at),
        }


class StockReceipt(db.Model):
    """
    Incoming stock document.

    LIFECYCLE:
    1. pending: submitted, waiting for a decision
    2. approved: items posted to the inventory ledger (terminal)
    3. rejected: closed without touching inventory (terminal)

    Transitions are guarded by a conditional UPDATE on status='pending',
    so a decision can only ever be taken once.
    """
    __tablename__ = "stock_receipts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    receipt_number = db.Column(db.String(64), nullable=False, unique=True)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    items = db.relationship(
        "StockReceiptItem",
        backref="receipt",
        lazy=True,
        order_by="StockReceiptItem.id",
    )

    def total_value(self) -> int:
        return sum(item.quantity * item.unit_price for item in self.items)

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "receipt_number": self.receipt_number,
            "status": self.status,
            "notes": self.notes,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "rejection_reason": self.rejection_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "total_value": self.total_value(),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class StockReceiptItem(db.Model):
    __tablename__ = "stock_receipt_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_receipt_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    receipt_id = db.Column(db.Integer, db.ForeignKey("stock_receipts.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receipt_id": self.receipt_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
        }
