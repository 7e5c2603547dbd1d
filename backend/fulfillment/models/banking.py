from __future__ import annotations

from ..extensions import db
from fulfillment.time_utils import to_utc_z


class BankTransaction(db.Model):
    """Bank statement line imported from an external account feed."""
    __tablename__ = "bank_transactions"
    __table_args__ = (
        db.Index("ix_bank_txns_account_posted", "account_id", "posted_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, nullable=False, index=True)
    external_txn_id = db.Column(db.String(128), nullable=False, unique=True)

    txn_type = db.Column(db.String(16), nullable=False, default="credit")  # credit, debit
    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="VND")
    description = db.Column(db.String(255), nullable=True)

    posted_at = db.Column(db.DateTime(timezone=True), nullable=False)
    imported_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "external_txn_id": self.external_txn_id,
            "txn_type": self.txn_type,
            "amount": self.amount,
            "currency": self.currency,
            "description": self.description,
            "posted_at": to_utc_z(self.posted_at),
            "imported_at": to_utc_z(self.imported_at),
        }


class BankReconciliation(db.Model):
    """
    Link between a bank transaction and an order/payment.

    Append-only: a corrected match is a new row, so every bank transaction
    keeps its full matching history. Creating a row never changes payment
    state.
    """
    __tablename__ = "bank_reconciliations"
    __table_args__ = (
        db.CheckConstraint(
            "match_score >= 0 AND match_score <= 1",
            name="ck_bank_reconciliations_score_range",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    bank_txn_id = db.Column(db.Integer, db.ForeignKey("bank_transactions.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)

    matched_by = db.Column(db.String(64), nullable=False)
    matched_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    match_score = db.Column(db.Numeric(5, 4), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    bank_transaction = db.relationship(
        "BankTransaction",
        backref=db.backref("reconciliations", lazy=True, order_by="BankReconciliation.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bank_txn_id": self.bank_txn_id,
            "order_id": self.order_id,
            "payment_id": self.payment_id,
            "matched_by": self.matched_by,
            "matched_at": to_utc_z(self.matched_at),
            "match_score": float(self.match_score),
            "notes": self.notes,
        }
