# Overview: Reference number allocation for orders, vouchers and stock movements.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import today


# document_type -> prefix
SALES_ORDER = "sales_order"
PURCHASE_ORDER = "purchase_order"
QUOTE = "quote"
PAYMENT_VOUCHER = "payment_voucher"
RECEIPT_VOUCHER = "receipt_voucher"

PREFIXES = {
    SALES_ORDER: "SO",
    PURCHASE_ORDER: "PO",
    QUOTE: "QT",
    PAYMENT_VOUCHER: "PV",
    RECEIPT_VOUCHER: "RV",
}


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _current_value(document_type: str, year: int) -> int:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type, year=year)
        .scalar()
    )


def next_document_number(
    *,
    document_type: str,
    prefix: str | None = None,
    year: int | None = None,
    pad: int = 5,
) -> str:
    """
    Allocate the next reference number for a document type and year.

    Must run inside the caller's write unit: the sequence row is incremented
    with a single UPDATE, so the number is only consumed if the unit commits.
    Numbers are monotonic per (type, year), e.g. "SO-2025-00042".
    """
    if not document_type:
        raise DocumentSequenceError("document_type is required")
    prefix = prefix or PREFIXES.get(document_type)
    if not prefix:
        raise DocumentSequenceError(f"no prefix for document_type {document_type!r}")
    year = year or today().year

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.year == year,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _current_value(document_type, year) - 1
    else:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=document_type, year=year, next_number=2))
            next_num = 1
        except IntegrityError:
            # Another unit created the row first; fall back to the increment.
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            next_num = _current_value(document_type, year) - 1

    return f"{prefix}-{year}-{next_num:0{pad}d}"


def movement_reference(movement_type: str, *, year: int | None = None) -> str:
    """Reference for a stock movement, e.g. "SM-SALE_SHIPMENT-2025-00012"."""
    return next_document_number(
        document_type=f"stock_movement.{movement_type}",
        prefix=f"SM-{movement_type.upper()}",
        year=year,
    )
