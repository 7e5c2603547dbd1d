# Overview: Service-layer operations for payment; attempts, gateway callbacks and refunds.

"""
Payment Ledger

WHY: Track every gateway attempt against an order and make the transition to
Paid happen exactly once, no matter how many times (or how concurrently) the
gateway reports success.

DESIGN PRINCIPLES:
- Payments are separate from orders (many-to-one): a failed attempt is kept
  and a new attempt row is created for the retry.
- At most one attempt per order reaches Paid.
- mark_paid is idempotent; duplicate webhook deliveries return the same row.
- Concurrent deliveries collide on Payment.version_id; the loser is retried
  and observes Paid. Captures of different attempts for one order collide
  on Order.version_id, which every capture bumps; the loser is retried and
  sees the sibling attempt already Paid.
- Raw gateway payloads are stored verbatim for audit.

STATE MACHINE:
    Pending -> Paid -> Refunded
    Pending -> Failed -> Paid   (late success callback)
"""

from __future__ import annotations

import json
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import Order, Payment, PaymentStatus
from fulfillment.time_utils import utcnow, to_utc_naive
from . import order_service
from .concurrency import lock_for_update, run_with_retry
from .errors import ConflictError, NotFoundError, ValidationError


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

STATUS_PENDING = "Pending"
STATUS_PAID = "Paid"
STATUS_FAILED = "Failed"
STATUS_REFUNDED = "Refunded"

PAYMENT_STATUSES = [
    STATUS_PENDING,
    STATUS_PAID,
    STATUS_FAILED,
    STATUS_REFUNDED,
]

# Gateway result codes, compared upper-cased
GATEWAY_SUCCESS_STATUSES = {"SUCCESS", "SUCCEEDED", "PAID", "COMPLETED", "00", "0"}
GATEWAY_FAILURE_STATUSES = {"FAILED", "FAILURE", "DECLINED", "CANCELLED", "CANCELED", "ERROR", "EXPIRED"}


def ensure_payment_statuses() -> None:
    """Insert any missing payment status rows. Idempotent."""
    existing = {s.status_name for s in db.session.query(PaymentStatus).all()}
    for name in PAYMENT_STATUSES:
        if name not in existing:
            db.session.add(PaymentStatus(status_name=name))
    db.session.flush()


def _get_or_create_status(name: str) -> PaymentStatus:
    """Resolve a status row, creating it when the vocabulary was never seeded."""
    status = db.session.query(PaymentStatus).filter_by(status_name=name).first()
    if status is None:
        current_app.logger.warning("Payment status %r missing; creating it", name)
        status = PaymentStatus(status_name=name)
        db.session.add(status)
        db.session.flush()
    return status


def _status_name(payment: Payment) -> str | None:
    status = db.session.get(PaymentStatus, payment.payment_status_id)
    return status.status_name if status else None


def _lock_payment(payment_id: int) -> Payment:
    payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def _paid_payment_for_order(order_id: int, exclude_payment_id: int | None = None) -> Payment | None:
    paid = _get_or_create_status(STATUS_PAID)
    q = db.session.query(Payment).filter(
        Payment.order_id == order_id,
        Payment.payment_status_id == paid.id,
    )
    if exclude_payment_id is not None:
        q = q.filter(Payment.id != exclude_payment_id)
    return q.first()


# =============================================================================
# PAYMENT ATTEMPTS
# =============================================================================

def _create_attempt_inner(
    *,
    order: Order,
    gateway: str,
    amount: int,
    metadata: dict | None = None,
    payment_method_id: int | None = None,
    gateway_transaction_id: str | None = None,
) -> Payment:
    """Insert a Pending attempt without commit. Order creation calls this directly."""
    if not gateway:
        raise ValidationError("gateway is required")
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError("Payment amount must be a positive integer")

    if order.id is not None and _paid_payment_for_order(order.id) is not None:
        raise ConflictError(f"Order {order.order_number} is already paid")

    if gateway_transaction_id:
        taken = db.session.query(Payment.id).filter_by(gateway_transaction_id=gateway_transaction_id).first()
        if taken is not None:
            raise ConflictError(f"Gateway transaction {gateway_transaction_id} is already attached")

    prior_attempts = 0
    if order.id is not None:
        prior_attempts = db.session.query(Payment).filter_by(order_id=order.id).count()

    now = utcnow()
    payment = Payment(
        order=order,
        payment_method_id=payment_method_id,
        gateway=gateway,
        gateway_transaction_id=gateway_transaction_id,
        payment_status_id=_get_or_create_status(STATUS_PENDING).id,
        amount=amount,
        refunded_amount=0,
        attempt_count=prior_attempts + 1,
        last_attempt_at=now,
        payment_metadata=metadata,
    )
    db.session.add(payment)
    db.session.flush()
    return payment


def create_attempt(
    order_id: int,
    gateway: str,
    amount: int,
    metadata: dict | None = None,
    payment_method_id: int | None = None,
    gateway_transaction_id: str | None = None,
) -> Payment:
    """
    Start a new Pending payment attempt for an order.

    attempt_count is 1 for the first attempt and increases by one with each
    retry for the same order.

    Raises:
        NotFoundError: order does not exist
        ValidationError: missing gateway or non-positive amount
        ConflictError: order already paid, or gateway transaction id in use
    """
    def _op():
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")

        payment = _create_attempt_inner(
            order=order,
            gateway=gateway,
            amount=amount,
            metadata=metadata,
            payment_method_id=payment_method_id,
            gateway_transaction_id=gateway_transaction_id,
        )
        db.session.commit()
        return payment

    return run_with_retry(_op)


# =============================================================================
# STATE TRANSITIONS
# =============================================================================

def _mark_paid_inner(payment: Payment, paid_at: datetime | None = None) -> bool:
    """
    Flip a locked payment to Paid without commit.

    Returns True when this call made the transition, False when the payment
    was already Paid.
    """
    current = _status_name(payment)
    if current == STATUS_PAID:
        current_app.logger.info("Duplicate paid notification for payment %s ignored", payment.id)
        return False
    if current == STATUS_REFUNDED:
        raise ConflictError(f"Payment {payment.id} has been refunded")

    # Captures for sibling attempts serialize on the order row
    order = lock_for_update(db.session.query(Order).filter_by(id=payment.order_id)).first()
    if order is None:
        raise NotFoundError(f"Order {payment.order_id} not found")

    other = _paid_payment_for_order(payment.order_id, exclude_payment_id=payment.id)
    if other is not None:
        raise ConflictError(f"Order {payment.order_id} is already paid by payment {other.id}")

    if current == STATUS_FAILED:
        current_app.logger.info("Late success callback for failed payment %s", payment.id)

    payment.payment_status_id = _get_or_create_status(STATUS_PAID).id
    payment.paid_at = to_utc_naive(paid_at) or utcnow()
    payment.failure_reason = None

    if order.status_id == order_service.STATUS_PENDING:
        order_service._append_status_inner(order, order_service.STATUS_CONFIRMED, note="Payment received")
    else:
        current_app.logger.warning(
            "Payment %s captured for order %s in status %s; order left unchanged",
            payment.id, order.order_number, order.status_id,
        )
    # Always write the order so its version_id moves even when the status does not
    order.updated_at = utcnow()

    current_app.logger.info("Payment %s marked paid (amount=%s)", payment.id, payment.amount)
    return True


def mark_paid(payment_id: int, paid_at: datetime | None = None) -> Payment:
    """
    Mark a payment as Paid. Idempotent.

    An already Paid payment is returned unchanged (same paid_at). On the
    effective transition a PENDING order advances to CONFIRMED.

    Raises:
        NotFoundError: payment does not exist
        ConflictError: payment refunded, or another attempt already paid the order
    """
    def _op():
        payment = _lock_payment(payment_id)
        if _mark_paid_inner(payment, paid_at):
            db.session.commit()
        return payment

    return run_with_retry(_op)


def _mark_failed_inner(payment: Payment, reason: str | None = None) -> bool:
    current = _status_name(payment)
    if current == STATUS_FAILED:
        return False
    if current in (STATUS_PAID, STATUS_REFUNDED):
        raise ConflictError(f"Payment {payment.id} is {current} and cannot fail")

    payment.payment_status_id = _get_or_create_status(STATUS_FAILED).id
    payment.failure_reason = (reason or "")[:255] or None
    payment.last_attempt_at = utcnow()
    current_app.logger.info("Payment %s failed: %s", payment.id, reason)
    return True


def mark_failed(payment_id: int, reason: str | None = None) -> Payment:
    """Pending -> Failed. A Failed payment is returned unchanged."""
    def _op():
        payment = _lock_payment(payment_id)
        if _mark_failed_inner(payment, reason):
            db.session.commit()
        return payment

    return run_with_retry(_op)


def refund(payment_id: int, amount: int | None = None, reason: str | None = None) -> Payment:
    """
    Refund all or part of a Paid payment.

    amount defaults to the remaining refundable balance. The payment moves
    to Refunded once the whole amount has been returned; a partial refund
    leaves it Paid.

    Raises:
        NotFoundError, ConflictError (not Paid), ValidationError (bad amount)
    """
    def _op():
        payment = _lock_payment(payment_id)
        current = _status_name(payment)
        if current != STATUS_PAID:
            raise ConflictError(f"Payment {payment.id} is {current}; only Paid payments can be refunded")

        remaining = payment.amount - payment.refunded_amount
        refund_amount = remaining if amount is None else amount
        if not isinstance(refund_amount, int) or isinstance(refund_amount, bool) or refund_amount <= 0:
            raise ValidationError("Refund amount must be a positive integer")
        if refund_amount > remaining:
            raise ValidationError(f"Refund amount {refund_amount} exceeds refundable balance {remaining}")

        payment.refunded_amount = payment.refunded_amount + refund_amount
        if payment.refunded_amount == payment.amount:
            payment.payment_status_id = _get_or_create_status(STATUS_REFUNDED).id

        # Reassign so the JSON column is flagged dirty
        metadata = dict(payment.payment_metadata or {})
        metadata["refunds"] = list(metadata.get("refunds", [])) + [{
            "amount": refund_amount,
            "reason": reason,
            "refunded_at": utcnow().isoformat(),
        }]
        payment.payment_metadata = metadata

        db.session.commit()
        current_app.logger.info("Payment %s refunded %s (%s)", payment.id, refund_amount, reason)
        return payment

    return run_with_retry(_op)


# =============================================================================
# GATEWAY DATA
# =============================================================================

def _record_gateway_response_inner(payment: Payment, raw_response, gateway_status: str | None = None) -> None:
    if raw_response is not None and not isinstance(raw_response, str):
        raw_response = json.dumps(raw_response, default=str)
    payment.gateway_response = raw_response
    if gateway_status is not None:
        payment.gateway_status = str(gateway_status)[:64]


def record_gateway_response(payment_id: int, raw_response, gateway_status: str | None = None) -> Payment:
    """Store the raw gateway payload. Never changes the payment status."""
    def _op():
        payment = _lock_payment(payment_id)
        _record_gateway_response_inner(payment, raw_response, gateway_status)
        db.session.commit()
        return payment

    return run_with_retry(_op)


def attach_gateway_transaction(payment_id: int, gateway_transaction_id: str) -> Payment:
    """Bind the gateway's transaction id to an attempt (once)."""
    if not gateway_transaction_id:
        raise ValidationError("gateway_transaction_id is required")

    def _op():
        payment = _lock_payment(payment_id)
        if payment.gateway_transaction_id == gateway_transaction_id:
            return payment
        if payment.gateway_transaction_id:
            raise ConflictError(
                f"Payment {payment.id} already has gateway transaction {payment.gateway_transaction_id}"
            )

        taken = db.session.query(Payment.id).filter_by(gateway_transaction_id=gateway_transaction_id).first()
        if taken is not None:
            raise ConflictError(f"Gateway transaction {gateway_transaction_id} is already attached")

        payment.gateway_transaction_id = gateway_transaction_id
        db.session.commit()
        return payment

    return run_with_retry(_op)


def handle_gateway_callback(gateway_transaction_id: str, order_id: int, status, raw_payload=None) -> Payment:
    """
    Apply a gateway callback event to the matching attempt.

    The raw payload is always stored. Success codes mark the payment Paid,
    failure codes mark it Failed, anything else only records the response.

    Gateways often echo the order id back as text, so "5" and 5 are the same order.

    Raises:
        ValidationError: order_id is not numeric
        NotFoundError: no attempt carries this gateway transaction id
        ConflictError: the attempt belongs to a different order
    """
    try:
        order_id = int(order_id)
    except (TypeError, ValueError):
        raise ValidationError(f"Gateway callback order id {order_id!r} is not numeric")
    status_code = str(status).strip().upper() if status is not None else ""

    def _op():
        payment = lock_for_update(
            db.session.query(Payment).filter_by(gateway_transaction_id=gateway_transaction_id)
        ).first()
        if payment is None:
            current_app.logger.warning(
                "Gateway callback for unknown transaction %s (order %s)", gateway_transaction_id, order_id
            )
            raise NotFoundError(f"No payment for gateway transaction {gateway_transaction_id}")
        if payment.order_id != order_id:
            current_app.logger.warning(
                "Gateway callback order mismatch for %s: expected order %s, got %s",
                gateway_transaction_id, payment.order_id, order_id,
            )
            raise ConflictError(f"Gateway transaction {gateway_transaction_id} does not belong to order {order_id}")

        _record_gateway_response_inner(payment, raw_payload, status_code or None)

        if status_code in GATEWAY_SUCCESS_STATUSES:
            _mark_paid_inner(payment)
        elif status_code in GATEWAY_FAILURE_STATUSES:
            if _status_name(payment) == STATUS_PENDING:
                _mark_failed_inner(payment, f"gateway status {status_code}")

        db.session.commit()
        return payment

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def find_by_gateway_transaction_id(gateway_transaction_id: str) -> Payment | None:
    if not gateway_transaction_id:
        return None
    return db.session.query(Payment).filter_by(gateway_transaction_id=gateway_transaction_id).first()


def list_for_order(order_id: int) -> list[Payment]:
    """All attempts for an order, oldest first."""
    return db.session.query(Payment).filter_by(order_id=order_id).order_by(Payment.id).all()


def is_order_paid(order_id: int) -> bool:
    return _paid_payment_for_order(order_id) is not None


def get_status_name(payment: Payment) -> str | None:
    return _status_name(payment)
