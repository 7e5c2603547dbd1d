# Overview: Read-only catalog lookup consumed by order creation.

from __future__ import annotations

from ..extensions import db
from ..models import Product
from .errors import NotFoundError


def get_product(product_id: int) -> dict:
    """
    Resolve the current catalog view of a product.

    Returns {id, sku, name, price, images, stock_quantity, is_active}.
    Soft-deleted products are treated as missing.
    """
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None or product.deleted_at is not None:
        raise NotFoundError(f"Product {product_id} not found")
    return {
        "id": product.id,
        "sku": product.sku,
        "name": product.name,
        "price": product.price,
        "images": list(product.images or []),
        "stock_quantity": product.stock_quantity,
        "is_active": product.is_active,
    }


def build_snapshot(product: dict) -> dict:
    """Denormalized copy of the product stored on an order item."""
    return {
        "product_id": product["id"],
        "sku": product["sku"],
        "name": product["name"],
        "price": product["price"],
        "images": product["images"],
    }
