# Overview: Service-layer operations for bank reconciliation; statement import and matching.

"""
Bank Reconciliation Service

WHY: Tie money that actually arrived on the bank account to the order and
payment it settles, with who matched it and how confident they were.

DESIGN PRINCIPLES:
- Reconciliation rows are append-only. Re-matching a bank transaction adds
  a new row; the latest row is the current answer, older rows are history.
- Matching is bookkeeping only: it never changes payment or order state.
- Statement import is idempotent by external_txn_id, so the same bank file
  can be imported twice safely.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation

from flask import current_app

from ..extensions import db
from ..models import BankReconciliation, BankTransaction, Order, Payment
from fulfillment.time_utils import to_utc_naive
from .concurrency import run_with_retry
from .errors import NotFoundError, ValidationError


TXN_TYPES = {"credit", "debit"}


def _parse_score(score) -> Decimal:
    try:
        value = Decimal(str(score))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid match score: {score!r}")
    if not value.is_finite() or value < 0 or value > 1:
        raise ValidationError("Match score must be between 0 and 1")
    return value


def match(
    bank_txn_id: int,
    order_id: int | None = None,
    payment_id: int | None = None,
    *,
    matched_by: str,
    score,
    notes: str | None = None,
) -> BankReconciliation:
    """
    Record that a bank transaction settles an order and/or payment.

    When only payment_id is given the order is taken from the payment. When
    both are given they must agree.

    Raises:
        NotFoundError: bank transaction, order or payment does not exist
        ValidationError: no target, mismatched target, missing matcher or score out of range
    """
    if order_id is None and payment_id is None:
        raise ValidationError("A reconciliation needs an order or a payment")
    if not matched_by or not str(matched_by).strip():
        raise ValidationError("matched_by is required")
    match_score = _parse_score(score)

    def _op():
        if db.session.get(BankTransaction, bank_txn_id) is None:
            raise NotFoundError(f"Bank transaction {bank_txn_id} not found")

        resolved_order_id = order_id
        if payment_id is not None:
            payment = db.session.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")
            if resolved_order_id is None:
                resolved_order_id = payment.order_id
            elif payment.order_id != resolved_order_id:
                raise ValidationError(f"Payment {payment_id} does not belong to order {resolved_order_id}")

        if order_id is not None and db.session.get(Order, order_id) is None:
            raise NotFoundError(f"Order {order_id} not found")

        rec = BankReconciliation(
            bank_txn_id=bank_txn_id,
            order_id=resolved_order_id,
            payment_id=payment_id,
            matched_by=str(matched_by).strip()[:64],
            match_score=match_score,
            notes=notes,
        )
        db.session.add(rec)
        db.session.commit()
        current_app.logger.info(
            "Bank transaction %s matched to order %s / payment %s by %s (score %s)",
            bank_txn_id, resolved_order_id, payment_id, rec.matched_by, match_score,
        )
        return rec

    return run_with_retry(_op)


def find_by_order(order_id: int) -> list[BankReconciliation]:
    return (
        db.session.query(BankReconciliation)
        .filter_by(order_id=order_id)
        .order_by(BankReconciliation.id)
        .all()
    )


def find_by_bank_txn(bank_txn_id: int) -> list[BankReconciliation]:
    """Full matching history for one bank transaction, oldest first."""
    return (
        db.session.query(BankReconciliation)
        .filter_by(bank_txn_id=bank_txn_id)
        .order_by(BankReconciliation.id)
        .all()
    )


def find_by_payment(payment_id: int) -> list[BankReconciliation]:
    return (
        db.session.query(BankReconciliation)
        .filter_by(payment_id=payment_id)
        .order_by(BankReconciliation.id)
        .all()
    )


def latest_for_bank_txn(bank_txn_id: int) -> BankReconciliation | None:
    return (
        db.session.query(BankReconciliation)
        .filter_by(bank_txn_id=bank_txn_id)
        .order_by(BankReconciliation.id.desc())
        .first()
    )


# =============================================================================
# STATEMENT IMPORT
# =============================================================================

def _parse_amount(value, external_txn_id: str) -> int:
    """Whole minor units only; fractional amounts are rejected, never truncated."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ValidationError(f"Bank row {external_txn_id}: amount must be an integer")
    if isinstance(value, int):
        return value
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"Bank row {external_txn_id}: amount must be an integer")
    if not amount.is_finite() or amount != amount.to_integral_value():
        raise ValidationError(f"Bank row {external_txn_id}: amount must be an integer")
    return int(amount)


def _normalize_row(row: dict) -> dict:
    external_txn_id = str(row.get("external_txn_id") or "").strip()
    if not external_txn_id:
        raise ValidationError("Bank row requires external_txn_id")

    amount = _parse_amount(row.get("amount"), external_txn_id)

    raw_posted_at = row.get("posted_at")
    if raw_posted_at is not None and not isinstance(raw_posted_at, (str, datetime)):
        raise ValidationError(f"Bank row {external_txn_id}: posted_at is not an ISO datetime")
    try:
        posted_at = to_utc_naive(raw_posted_at)
    except ValueError:
        raise ValidationError(f"Bank row {external_txn_id}: posted_at is not an ISO datetime")
    if posted_at is None:
        raise ValidationError(f"Bank row {external_txn_id}: posted_at is required")

    txn_type = str(row.get("txn_type") or "credit").strip().lower()
    if txn_type not in TXN_TYPES:
        raise ValidationError(f"Bank row {external_txn_id}: txn_type must be credit or debit")

    currency = str(row.get("currency") or current_app.config.get("DEFAULT_CURRENCY", "VND")).strip()

    return {
        "external_txn_id": external_txn_id,
        "amount": amount,
        "posted_at": posted_at,
        "txn_type": txn_type,
        "currency": currency,
        "description": (row.get("description") or None),
    }


def import_bank_transactions(account_id: int, rows) -> list[BankTransaction]:
    """
    Import statement rows for one account.

    rows: [{external_txn_id, amount, posted_at, txn_type?, currency?, description?}, ...]
    Rows whose external_txn_id is already known are skipped. Returns the
    newly created transactions. A single invalid row rejects the whole file.
    """
    normalized = [_normalize_row(dict(row)) for row in rows]

    def _op():
        ids = [r["external_txn_id"] for r in normalized]
        known = {
            ext_id
            for (ext_id,) in db.session.query(BankTransaction.external_txn_id)
            .filter(BankTransaction.external_txn_id.in_(ids))
            .all()
        } if ids else set()

        created = []
        for r in normalized:
            if r["external_txn_id"] in known:
                continue
            known.add(r["external_txn_id"])
            txn = BankTransaction(account_id=account_id, **r)
            db.session.add(txn)
            created.append(txn)

        db.session.commit()
        current_app.logger.info(
            "Imported %s bank transactions for account %s (%s skipped)",
            len(created), account_id, len(normalized) - len(created),
        )
        return created

    return run_with_retry(_op)


def list_unmatched(account_id: int | None = None) -> list[BankTransaction]:
    """Bank transactions that have never been reconciled, oldest first."""
    matched = db.select(BankReconciliation.bank_txn_id)
    q = db.session.query(BankTransaction).filter(~BankTransaction.id.in_(matched))
    if account_id is not None:
        q = q.filter(BankTransaction.account_id == account_id)
    return q.order_by(BankTransaction.posted_at, BankTransaction.id).all()
