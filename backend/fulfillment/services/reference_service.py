# Overview: Seeding of reference vocabularies every deployment needs.

from ..extensions import db
from .document_service import ensure_document_sequences
from .order_service import ensure_order_statuses
from .payment_service import ensure_payment_statuses


def ensure_reference_data() -> None:
    """
    Seed order statuses, payment statuses and document sequences, then commit.

    Idempotent: existing rows are kept (order statuses are repaired in place).
    """
    ensure_order_statuses()
    ensure_payment_statuses()
    ensure_document_sequences()
    db.session.commit()
