# Overview: Service-layer operations for stock receipts; submission and one-way approval.

"""
Stock Receipt Service

WHY: Incoming stock is documented first and only reaches the inventory
ledger once someone approves it.

LIFECYCLE:
1. pending: created with its items
2. approved: every item posted as a positive ledger entry (change_type receipt)
3. rejected: closed with a reason; inventory untouched

Both decisions are one-way. The status flip is a conditional UPDATE
(WHERE status = 'pending'), so two approvers racing on the same receipt
cannot both post it.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import StockReceipt, StockReceiptItem
from fulfillment.time_utils import utcnow
from . import catalog_service, inventory_service
from .concurrency import run_with_retry
from .document_service import DOCUMENT_TYPE_STOCK_RECEIPT, next_document_number
from .errors import ConflictError, NotFoundError, ValidationError


STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

VALID_STATUSES = {STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED}


def _normalize_items(items) -> list[dict]:
    lines = []
    for item in items or []:
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        unit_price = item.get("unit_price", 0)

        if not isinstance(product_id, int) or isinstance(product_id, bool):
            raise ValidationError("receipt item requires an integer product_id")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError(f"Quantity for product {product_id} must be a positive integer")
        if not isinstance(unit_price, int) or isinstance(unit_price, bool) or unit_price < 0:
            raise ValidationError(f"Unit price for product {product_id} cannot be negative")

        lines.append({"product_id": product_id, "quantity": quantity, "unit_price": unit_price})

    if not lines:
        raise ValidationError("Stock receipt requires at least one item")
    return lines


def create_receipt(
    items,
    created_by: int | None = None,
    notes: str | None = None,
    receipt_number: str | None = None,
) -> StockReceipt:
    """
    Submit a pending stock receipt.

    items: [{product_id, quantity, unit_price}, ...]. A receipt number is
    allocated (SR-000001, ...) when none is given.
    """
    lines = _normalize_items(items)
    receipt_number = receipt_number.strip() if receipt_number else None

    def _op():
        for line in lines:
            catalog_service.get_product(line["product_id"])

        number = receipt_number
        if number:
            if db.session.query(StockReceipt.id).filter_by(receipt_number=number).first() is not None:
                raise ValidationError(f"Receipt number {number} already exists")
        else:
            number = next_document_number(
                document_type=DOCUMENT_TYPE_STOCK_RECEIPT,
                prefix=current_app.config.get("RECEIPT_NUMBER_PREFIX", "SR"),
            )

        receipt = StockReceipt(
            receipt_number=number,
            status=STATUS_PENDING,
            notes=notes,
            created_by=created_by,
        )
        db.session.add(receipt)
        for line in lines:
            db.session.add(StockReceiptItem(receipt=receipt, **line))

        db.session.commit()
        return receipt

    return run_with_retry(_op)


def _transition_inner(receipt_id: int, new_status: str, **values) -> StockReceipt:
    """Conditional pending -> new_status flip; raises when the receipt already moved on."""
    stmt = (
        update(StockReceipt)
        .where(StockReceipt.id == receipt_id, StockReceipt.status == STATUS_PENDING)
        .values(status=new_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)

    receipt = db.session.get(StockReceipt, receipt_id)
    if receipt is None:
        raise NotFoundError(f"Stock receipt {receipt_id} not found")
    if not result.rowcount:
        db.session.refresh(receipt)
        raise ConflictError(f"Stock receipt {receipt.receipt_number} is already {receipt.status}")

    db.session.refresh(receipt)
    return receipt


def approve(receipt_id: int, approver_id: int) -> StockReceipt:
    """
    Approve a pending receipt and post its items to inventory.

    The status flip and the ledger batch share one transaction: if posting
    fails, the receipt is still pending afterwards.

    Raises:
        NotFoundError: receipt (or one of its products) does not exist
        ConflictError: receipt is not pending
    """
    def _op():
        receipt = _transition_inner(
            receipt_id,
            STATUS_APPROVED,
            approved_by=approver_id,
            approved_at=utcnow(),
        )

        note = f"Stock receipt {receipt.receipt_number}"
        inventory_service._batch_adjust_stock_inner(
            [
                inventory_service.StockEntry(
                    product_id=item.product_id,
                    delta=item.quantity,
                    change_type=inventory_service.CHANGE_RECEIPT,
                    note=note,
                )
                for item in receipt.items
            ],
            actor=approver_id,
        )

        db.session.commit()
        current_app.logger.info(
            "Stock receipt %s approved by %s (%s items)",
            receipt.receipt_number, approver_id, len(receipt.items),
        )
        return receipt

    return run_with_retry(_op)


def reject(receipt_id: int, approver_id: int, reason: str) -> StockReceipt:
    """Close a pending receipt without touching inventory."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required")

    def _op():
        receipt = _transition_inner(
            receipt_id,
            STATUS_REJECTED,
            approved_by=approver_id,
            approved_at=utcnow(),
            rejection_reason=reason[:255],
        )
        db.session.commit()
        current_app.logger.info(
            "Stock receipt %s rejected by %s: %s", receipt.receipt_number, approver_id, reason
        )
        return receipt

    return run_with_retry(_op)


def get_receipt(receipt_id: int) -> StockReceipt:
    receipt = db.session.get(StockReceipt, receipt_id)
    if receipt is None:
        raise NotFoundError(f"Stock receipt {receipt_id} not found")
    return receipt


def get_by_receipt_number(receipt_number: str) -> StockReceipt | None:
    return db.session.query(StockReceipt).filter_by(receipt_number=receipt_number).first()


def list_by_status(status: str, limit: int = 100) -> list[StockReceipt]:
    if status not in VALID_STATUSES:
        raise ValidationError(f"Invalid receipt status: {status}. Must be one of {sorted(VALID_STATUSES)}")
    return (
        db.session.query(StockReceipt)
        .filter_by(status=status)
        .order_by(StockReceipt.created_at.desc(), StockReceipt.id.desc())
        .limit(limit)
        .all()
    )
