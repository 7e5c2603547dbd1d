# Overview: Service-layer operations for document numbering.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from .errors import ConcurrencyError, ValidationError


DOCUMENT_TYPE_ORDER = "ORDER"
DOCUMENT_TYPE_STOCK_RECEIPT = "STOCK_RECEIPT"

DOCUMENT_TYPES = (DOCUMENT_TYPE_ORDER, DOCUMENT_TYPE_STOCK_RECEIPT)


def next_document_number(*, document_type: str, prefix: str, pad: int = 6) -> str:
    """
    Allocate the next document number for a type.

    Runs inside the caller's transaction (no commit): if the caller rolls
    back, the number is released with everything else. The increment is a
    single UPDATE, so concurrent callers serialize on the sequence row.
    """
    if not document_type:
        raise ValidationError("document_type is required")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(document_type=document_type)
            .scalar()
        )
        next_num = current - 1
    else:
        seq = DocumentSequence(document_type=document_type, next_number=2)
        db.session.add(seq)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConcurrencyError(
                f"document sequence {document_type} was initialized concurrently"
            ) from exc
        next_num = 1

    return f"{prefix}-{next_num:0{pad}d}"


def ensure_document_sequences() -> None:
    """Create missing sequence rows. Safe to call repeatedly (idempotent)."""
    existing = {
        row.document_type
        for row in db.session.query(DocumentSequence.document_type).all()
    }
    for document_type in DOCUMENT_TYPES:
        if document_type not in existing:
            db.session.add(DocumentSequence(document_type=document_type, next_number=1))
    db.session.flush()
