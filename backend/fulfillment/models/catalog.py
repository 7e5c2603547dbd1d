from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


class Product(db.Model):
    """
    Catalog product (the subset the fulfillment core reads and mutates).

    STOCK OWNERSHIP:
    stock_quantity is mutated only through inventory_service. Every change is
    mirrored by an InventoryTransaction row. The column is guarded by a CHECK
    constraint so no write path can commit a negative value.

    Soft delete: deleted_at marks products removed from the catalog. Order
    items keep their own snapshot, so deleting a product never rewrites history.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)

    # Minor currency units
    price = db.Column(db.Integer, nullable=False, default=0)

    images = db.Column(db.JSON, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock_quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "price": self.price,
            "images": self.images or [],
            "is_active": self.is_active,
            "stock_quantity": self.stock_quantity,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "deleted_at": to_utc_z(self.deleted_at),
        }
