# Overview: Service-layer operations for orders; checkout, status timeline and cancellation.

"""
Order Aggregate

WHY: Turn a cart into an order exactly once, with everything the order
depends on (stock, coupon usage, optional first payment attempt) committed
in the same transaction.

DESIGN PRINCIPLES:
- Snapshots: each line freezes the product's name/sku/price/images at order
  time. Later catalog edits or deletes never change an existing order.
- total_amount = subtotal(snapshots) - discount_amount, computed once.
- Strict stock: an order that cannot be fully served is rejected as a whole
  (InsufficientStockError); the ledger's clamp-at-zero is never used here.
- Status history is append-only (OrderStatusHistory rows).
- Workflow policy (which transitions are legal) is available through
  is_valid_transition() but is only enforced when the caller asks for it.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, OrderItem, OrderStatus, OrderStatusHistory, Payment
from . import catalog_service, coupon_service, inventory_service
from .concurrency import lock_for_update, run_with_retry
from .document_service import DOCUMENT_TYPE_ORDER, next_document_number
from .errors import (
    ConflictError,
    CouponInvalidError,
    EmptyCartError,
    NotFoundError,
    ValidationError,
)


# =============================================================================
# ORDER STATUS VOCABULARY
# =============================================================================

STATUS_PENDING = 1
STATUS_CONFIRMED = 2
STATUS_SHIPPING = 3
STATUS_DELIVERED = 4
STATUS_CANCELLED = 5
STATUS_RETURNED = 6
STATUS_COMPLETED = 8

ORDER_STATUSES = [
    {"id": STATUS_PENDING, "code": "PENDING", "name": "Pending", "sort_order": 1},
    {"id": STATUS_CONFIRMED, "code": "CONFIRMED", "name": "Confirmed", "sort_order": 2},
    {"id": STATUS_SHIPPING, "code": "SHIPPING", "name": "Shipping", "sort_order": 3},
    {"id": STATUS_DELIVERED, "code": "DELIVERED", "name": "Delivered", "sort_order": 4},
    {"id": STATUS_CANCELLED, "code": "CANCELLED", "name": "Cancelled", "sort_order": 5},
    {"id": STATUS_RETURNED, "code": "RETURNED", "name": "Returned", "sort_order": 6},
    {"id": STATUS_COMPLETED, "code": "COMPLETED", "name": "Completed", "sort_order": 7},
]

# Sequential workflow: no skipping steps, nothing returns to PENDING
ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_CONFIRMED, STATUS_CANCELLED},
    STATUS_CONFIRMED: {STATUS_SHIPPING, STATUS_CANCELLED},
    STATUS_SHIPPING: {STATUS_DELIVERED, STATUS_RETURNED},
    STATUS_DELIVERED: {STATUS_RETURNED, STATUS_COMPLETED},
    STATUS_COMPLETED: {STATUS_RETURNED},
}

CANCELLABLE_STATUSES = {STATUS_PENDING, STATUS_CONFIRMED}


def is_valid_transition(from_status_id: int, to_status_id: int) -> bool:
    return to_status_id in ALLOWED_TRANSITIONS.get(from_status_id, set())


def ensure_order_statuses() -> None:
    """Insert or repair the status vocabulary. Safe to call repeatedly (idempotent)."""
    for row in ORDER_STATUSES:
        status = db.session.get(OrderStatus, row["id"])
        if status is None:
            db.session.add(OrderStatus(**row))
        else:
            status.code = row["code"]
            status.name = row["name"]
            status.sort_order = row["sort_order"]
    db.session.flush()


# =============================================================================
# ORDER CREATION
# =============================================================================

def _normalize_cart(cart_items) -> list[dict]:
    lines = []
    for item in cart_items or []:
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        if not isinstance(product_id, int) or isinstance(product_id, bool):
            raise ValidationError("cart item requires an integer product_id")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError(f"Quantity for product {product_id} must be a positive integer")
        lines.append({"product_id": product_id, "quantity": quantity})
    if not lines:
        raise EmptyCartError()
    return lines


def _append_status_inner(
    order: Order,
    status_id: int,
    changed_by: int | None = None,
    note: str | None = None,
    *,
    record_processor: bool = True,
) -> OrderStatusHistory:
    """
    Set the current status and append the matching history row (no commit).

    changed_by always goes on the history row. It becomes the order's
    processed_by only when record_processor is set, so the customer placing
    the order is never recorded as its processor.
    """
    order.status_id = status_id
    if record_processor and changed_by is not None:
        order.processed_by = changed_by

    entry = OrderStatusHistory(order=order, status_id=status_id, changed_by=changed_by, note=note)
    db.session.add(entry)
    return entry


def create_from_cart(
    user_id: int,
    cart_items,
    shipping_address_id: int | None,
    payment_method_id: int | None = None,
    *,
    coupon_code: str | None = None,
    gateway: str | None = None,
    checkout_token: str | None = None,
    notes: str | None = None,
) -> Order:
    """
    Place an order from cart lines [{product_id, quantity}, ...].

    Steps (one transaction):
    1. Snapshot every product through the catalog lookup
    2. Subtotal from snapshot prices
    3. Coupon: validate, compute discount, consume one usage
    4. Insert order + items + initial PENDING history entry
    5. Strict stock decrement for every line (one ledger batch)
    6. Optional first payment attempt when a gateway is given

    checkout_token makes retries safe: a second call with the same token
    returns the order created by the first call and consumes nothing.

    Raises:
        EmptyCartError, ValidationError, NotFoundError, CouponInvalidError,
        InsufficientStockError
    """
    lines = _normalize_cart(cart_items)

    def _op():
        if checkout_token:
            existing = db.session.query(Order).filter_by(checkout_token=checkout_token).first()
            if existing is not None:
                current_app.logger.info(
                    "Checkout token %s already placed order %s", checkout_token, existing.order_number
                )
                return existing

        snapshots = []
        for line in lines:
            product = catalog_service.get_product(line["product_id"])
            if not product["is_active"]:
                raise ValidationError(f"Product {product['name']} is unavailable")
            snapshots.append((line, product))

        subtotal = sum(product["price"] * line["quantity"] for line, product in snapshots)

        discount_amount = 0
        coupon_id = None
        if coupon_code:
            validation = coupon_service.validate(coupon_code, subtotal)
            if not validation.valid:
                raise CouponInvalidError(validation.reason)
            coupon_id = validation.coupon.id
            discount_amount = coupon_service.compute_discount(validation.coupon, subtotal)
            coupon_service._consume_inner(coupon_id)

        order_number = next_document_number(
            document_type=DOCUMENT_TYPE_ORDER,
            prefix=current_app.config.get("ORDER_NUMBER_PREFIX", "ORD"),
        )

        order = Order(
            order_number=order_number,
            user_id=user_id,
            shipping_address_id=shipping_address_id,
            payment_method_id=payment_method_id,
            status_id=STATUS_PENDING,
            total_amount=subtotal - discount_amount,
            discount_amount=discount_amount,
            coupon_id=coupon_id,
            currency=current_app.config.get("DEFAULT_CURRENCY", "VND"),
            checkout_token=checkout_token,
            notes=notes,
        )
        db.session.add(order)

        for line, product in snapshots:
            db.session.add(OrderItem(
                order=order,
                product_id=product["id"],
                quantity=line["quantity"],
                unit_price_snapshot=product["price"],
                total_price_snapshot=product["price"] * line["quantity"],
                product_snapshot=catalog_service.build_snapshot(product),
            ))

        _append_status_inner(
            order, STATUS_PENDING, changed_by=user_id, note="Order placed", record_processor=False
        )
        db.session.flush()

        inventory_service._batch_adjust_stock_inner(
            [
                inventory_service.StockEntry(
                    product_id=line["product_id"],
                    delta=-line["quantity"],
                    change_type=inventory_service.CHANGE_SALE,
                    note=f"Order {order_number}",
                )
                for line in lines
            ],
            actor=user_id,
            strict=True,
        )

        if gateway:
            from .payment_service import _create_attempt_inner
            _create_attempt_inner(
                order=order,
                gateway=gateway,
                amount=order.total_amount,
                metadata={"order_number": order_number},
                payment_method_id=payment_method_id,
            )

        db.session.commit()
        current_app.logger.info(
            "Order %s placed for user %s: total=%s discount=%s lines=%s",
            order_number, user_id, order.total_amount, discount_amount, len(lines),
        )
        return order

    try:
        return run_with_retry(_op)
    except IntegrityError:
        # Lost a race on checkout_token: the other request's order stands
        if not checkout_token:
            raise
        existing = db.session.query(Order).filter_by(checkout_token=checkout_token).first()
        if existing is None:
            raise
        return existing


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

def update_status(
    order_id: int,
    new_status_id: int,
    changed_by: int | None = None,
    *,
    note: str | None = None,
    enforce_workflow: bool = False,
) -> Order:
    """
    Move an order to a new status and append the transition to its history.

    Concurrent writers collide on the order's version_id; the loser is
    retried against the fresh row, so no transition is lost or duplicated.

    Raises:
        NotFoundError: order does not exist
        ValidationError: status id not in the vocabulary
        ConflictError: illegal transition (only when enforce_workflow=True)
    """
    def _op():
        if db.session.get(OrderStatus, new_status_id) is None:
            raise ValidationError(f"Unknown order status {new_status_id}")

        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")

        if enforce_workflow and not is_valid_transition(order.status_id, new_status_id):
            raise ConflictError(
                f"Order {order.order_number} cannot move from status {order.status_id} to {new_status_id}"
            )

        _append_status_inner(order, new_status_id, changed_by=changed_by, note=note)
        db.session.commit()
        return order

    return run_with_retry(_op)


def cancel_order(order_id: int, changed_by: int | None = None, reason: str | None = None) -> Order:
    """
    Cancel a PENDING or CONFIRMED order and put its stock back.

    Every line is restocked in one ledger batch (change_type return). Coupon
    usage is NOT returned: redemptions are never undone.
    """
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.status_id not in CANCELLABLE_STATUSES:
            raise ConflictError(f"Order {order.order_number} can no longer be cancelled")

        _append_status_inner(order, STATUS_CANCELLED, changed_by=changed_by, note=reason)

        note = f"Order {order.order_number} cancelled"
        inventory_service._batch_adjust_stock_inner(
            [
                inventory_service.StockEntry(
                    product_id=item.product_id,
                    delta=item.quantity,
                    change_type=inventory_service.CHANGE_RETURN,
                    note=note,
                )
                for item in order.items
            ],
            actor=changed_by,
        )

        paid = [p for p in order.payments if p.paid_at is not None and p.refunded_amount < p.amount]
        if paid:
            current_app.logger.warning(
                "Order %s cancelled with %s captured payment(s); refund required",
                order.order_number, len(paid),
            )

        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def get_by_order_number(order_number: str) -> Order | None:
    return db.session.query(Order).filter_by(order_number=order_number).first()


def list_orders_for_user(user_id: int, limit: int = 50, offset: int = 0) -> list[Order]:
    return (
        db.session.query(Order)
        .filter_by(user_id=user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )


def get_status_history(order_id: int) -> list[OrderStatusHistory]:
    get_order(order_id)
    return (
        db.session.query(OrderStatusHistory)
        .filter_by(order_id=order_id)
        .order_by(OrderStatusHistory.id)
        .all()
    )


def get_payment_summary(order_id: int) -> dict:
    """Totals across every payment attempt of an order."""
    order = get_order(order_id)
    payments = db.session.query(Payment).filter_by(order_id=order_id).order_by(Payment.id).all()
    paid = sum(p.amount - p.refunded_amount for p in payments if p.paid_at is not None)
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "total_amount": order.total_amount,
        "total_paid": paid,
        "remaining_balance": order.total_amount - paid,
        "attempts": len(payments),
    }
