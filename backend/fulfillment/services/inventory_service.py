# Overview: Service-layer operations for inventory; encapsulates business logic and database work.

# backend/fulfillment/services/inventory_service.py

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import case, update

from ..extensions import db
from ..models import Product, InventoryTransaction
from .concurrency import lock_for_update, run_with_retry
from .errors import InsufficientStockError, NotFoundError, ValidationError
"""
Inventory Ledger Invariants (authoritative)

Stock model:
- Product.stock_quantity is the live on-hand value; it is only written here.
- Every mutation appends one InventoryTransaction per requested change.
- quantity_change records the REQUESTED delta, even when the effective
  change was clamped.

Business invariants:
- stock_quantity >= 0 at all times.
- Default mode clamps: new = max(0, current + delta). The deficit is
  discarded, so SUM(quantity_change) may be lower than stock_quantity.
- Strict mode (order fulfillment) refuses a decrement that cannot be fully
  satisfied and raises InsufficientStockError.

Concurrency:
- Product rows are locked in ascending id order before any write, so two
  batches with overlapping products cannot deadlock each other.
- The arithmetic itself is a single UPDATE expression evaluated by the
  database, so a stale read can never be written back.
- A batch is all-or-nothing: a missing product or a strict-mode shortfall
  rolls back every entry.
"""


CHANGE_SALE = "sale"
CHANGE_RETURN = "return"
CHANGE_RECEIPT = "receipt"
CHANGE_ADJUSTMENT = "adjustment"
CHANGE_CORRECTION = "correction"

VALID_CHANGE_TYPES = [
    CHANGE_SALE,
    CHANGE_RETURN,
    CHANGE_RECEIPT,
    CHANGE_ADJUSTMENT,
    CHANGE_CORRECTION,
]


@dataclass
class StockEntry:
    product_id: int
    delta: int
    change_type: str = CHANGE_ADJUSTMENT
    note: str | None = None

    @classmethod
    def coerce(cls, value) -> "StockEntry":
        if isinstance(value, cls):
            entry = value
        elif isinstance(value, dict):
            delta = value.get("delta", value.get("quantity_change"))
            entry = cls(
                product_id=value.get("product_id"),
                delta=delta,
                change_type=value.get("change_type") or CHANGE_ADJUSTMENT,
                note=value.get("note"),
            )
        else:
            raise ValidationError("stock entry must be a mapping")

        if not isinstance(entry.product_id, int) or isinstance(entry.product_id, bool):
            raise ValidationError("stock entry requires an integer product_id")
        if not isinstance(entry.delta, int) or isinstance(entry.delta, bool):
            raise ValidationError("stock entry requires an integer delta")
        _validate_change_type(entry.change_type)
        return entry


def _validate_change_type(change_type: str) -> None:
    if change_type not in VALID_CHANGE_TYPES:
        raise ValidationError(
            f"Invalid change_type: {change_type}. Must be one of {VALID_CHANGE_TYPES}"
        )


def _lock_products(product_ids) -> dict[int, Product]:
    """Load and lock every product in one read, ascending id order."""
    unique_ids = sorted(set(product_ids))
    query = db.session.query(Product).filter(Product.id.in_(unique_ids)).order_by(Product.id)
    products = {p.id: p for p in lock_for_update(query).all()}

    missing = [pid for pid in unique_ids if pid not in products]
    if missing:
        raise NotFoundError(f"Product {missing[0]} not found")
    return products


def _read_quantity(product_id: int) -> int:
    return int(
        db.session.query(Product.stock_quantity).filter(Product.id == product_id).scalar() or 0
    )


def _apply_delta(product_id: int, delta: int, *, strict: bool) -> int:
    """
    Apply one delta to a locked product row and return the new quantity.

    Must run inside a transaction that already holds the product lock.
    """
    if strict and delta < 0:
        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.stock_quantity >= -delta)
            .values(stock_quantity=Product.stock_quantity + delta)
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise InsufficientStockError(product_id, -delta, _read_quantity(product_id))
        return _read_quantity(product_id)

    before = _read_quantity(product_id)
    clamped = case(
        (Product.stock_quantity + delta < 0, 0),
        else_=Product.stock_quantity + delta,
    )
    stmt = (
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=clamped)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(stmt)

    if before + delta < 0:
        current_app.logger.info(
            "Stock for product %s clamped at zero (current %s, requested delta %s)",
            product_id, before, delta,
        )
    return _read_quantity(product_id)


def _record_transaction_inner(
    *,
    product_id: int,
    quantity_change: int,
    change_type: str,
    note: str | None = None,
    actor: int | None = None,
) -> InventoryTransaction:
    """Core ledger append without validation, retry, or commit."""
    tx = InventoryTransaction(
        product_id=product_id,
        quantity_change=quantity_change,
        change_type=change_type,
        note=note,
        created_by=actor,
    )
    db.session.add(tx)
    return tx


def _batch_adjust_stock_inner(entries, *, actor: int | None = None, strict: bool = False) -> dict[int, int]:
    """Core batch logic without retry or commit.

    Called by the public batch_adjust_stock() and by order creation / receipt
    approval, which fold the batch into their own transaction.
    """
    normalized = [StockEntry.coerce(e) for e in entries]
    if not normalized:
        return {}

    products = _lock_products(e.product_id for e in normalized)

    new_quantities: dict[int, int] = {}
    for entry in normalized:
        new_quantities[entry.product_id] = _apply_delta(entry.product_id, entry.delta, strict=strict)
        _record_transaction_inner(
            product_id=entry.product_id,
            quantity_change=entry.delta,
            change_type=entry.change_type,
            note=entry.note,
            actor=actor,
        )

    # In-session Product objects still carry the pre-update value
    for product in products.values():
        db.session.expire(product, ["stock_quantity"])

    db.session.flush()
    return new_quantities


def adjust_stock(
    product_id: int,
    delta: int,
    *,
    change_type: str = CHANGE_ADJUSTMENT,
    note: str | None = None,
    actor: int | None = None,
) -> int:
    """
    Apply a single signed delta with the zero floor and log it.

    Returns the new stock_quantity.

    Raises:
        NotFoundError: product does not exist
        ValidationError: bad delta or change_type
    """
    def _op():
        result = _batch_adjust_stock_inner(
            [StockEntry(product_id=product_id, delta=delta, change_type=change_type, note=note)],
            actor=actor,
        )
        db.session.commit()
        return result[product_id]

    return run_with_retry(_op)


def batch_adjust_stock(entries, *, actor: int | None = None, strict: bool = False) -> dict[int, int]:
    """
    Apply several ledger entries atomically.

    entries: iterable of StockEntry or {product_id, delta, change_type, note}.
    Returns {product_id: new_quantity} after all entries are applied.

    WHY one batch: a receipt with 10 lines must never half-apply, and the
    products are locked once, in a deterministic order.
    """
    entries = list(entries)

    def _op():
        result = _batch_adjust_stock_inner(entries, actor=actor, strict=strict)
        db.session.commit()
        return result

    return run_with_retry(_op)


def record_transaction(
    product_id: int,
    delta: int,
    change_type: str,
    note: str | None = None,
    actor: int | None = None,
) -> InventoryTransaction:
    """
    Append a ledger row WITHOUT touching stock_quantity.

    For corrections whose quantity effect was already applied elsewhere.
    """
    StockEntry.coerce(
        StockEntry(product_id=product_id, delta=delta, change_type=change_type, note=note)
    )

    def _op():
        if db.session.query(Product.id).filter_by(id=product_id).first() is None:
            raise NotFoundError(f"Product {product_id} not found")
        tx = _record_transaction_inner(
            product_id=product_id,
            quantity_change=delta,
            change_type=change_type,
            note=note,
            actor=actor,
        )
        db.session.commit()
        return tx

    return run_with_retry(_op)


def get_stock(product_id: int) -> int:
    quantity = db.session.query(Product.stock_quantity).filter_by(id=product_id).scalar()
    if quantity is None:
        raise NotFoundError(f"Product {product_id} not found")
    return int(quantity)


def list_transactions(
    *,
    product_id: int | None = None,
    change_type: str | None = None,
    limit: int = 200,
) -> list[InventoryTransaction]:
    """Ledger rows, newest first."""
    q = db.session.query(InventoryTransaction)
    if product_id is not None:
        q = q.filter(InventoryTransaction.product_id == product_id)
    if change_type is not None:
        _validate_change_type(change_type)
        q = q.filter(InventoryTransaction.change_type == change_type)

    return q.order_by(
        InventoryTransaction.changed_at.desc(),
        InventoryTransaction.id.desc(),
    ).limit(limit).all()
