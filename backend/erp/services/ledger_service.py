# Overview: Append-only stock movement ledger; source of truth for derived stock.

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func

from ..errors import ConstraintViolation, NotFound, ValidationError
from ..extensions import db
from ..models import Product, StockMovement
from ..money import ZERO, decimal_str, quantize_money, quantize_quantity
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_atomic
from .document_service import movement_reference

"""
Stock Ledger Invariants (authoritative)

- stock_movements is append-only: rows are inserted, never updated or deleted.
- Derived stock for a product is SUM(quantity) over all of its movements.
- Products.quantity_on_hand is a cache of that sum, written in the same unit
  as each append and repairable from the ledger at any time.
- Inbound movement types carry positive quantities, outbound types negative.
- movement_date is business time; created_at is system time (DB default).
"""

logger = logging.getLogger(__name__)

INBOUND_TYPES = ("purchase_receipt", "adjustment_in", "return_in", "opening_balance")
OUTBOUND_TYPES = ("sale_shipment", "adjustment_out", "return_out")
MOVEMENT_TYPES = INBOUND_TYPES + OUTBOUND_TYPES

MAX_PAGE_SIZE = 500


def validate_movement_sign(movement_type: str, quantity: Decimal) -> None:
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(
            f"movement_type must be one of {', '.join(MOVEMENT_TYPES)}",
            {"movement_type": movement_type},
        )
    if quantity == ZERO:
        raise ValidationError("quantity must be non-zero")
    if movement_type in INBOUND_TYPES and quantity < ZERO:
        raise ValidationError(f"{movement_type} requires a positive quantity")
    if movement_type in OUTBOUND_TYPES and quantity > ZERO:
        raise ValidationError(f"{movement_type} requires a negative quantity")


def current_stock(product_id: int) -> Decimal:
    """Derived stock: signed sum of every committed movement for the product."""
    total = (
        db.session.query(func.coalesce(func.sum(StockMovement.quantity), 0))
        .filter(StockMovement.product_id == product_id)
        .scalar()
    )
    return quantize_quantity(Decimal(str(total or 0)))


def append_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity: Decimal,
    quantity_before: Decimal,
    quantity_after: Decimal,
    created_by: int,
    unit_price: Decimal | None = None,
    related_document_type: str | None = None,
    related_document_id: int | None = None,
    order_line_id: int | None = None,
    warehouse: str | None = None,
    reason: str | None = None,
    notes: str | None = None,
    movement_date: datetime | None = None,
) -> StockMovement:
    """
    Persist one immutable movement row inside the caller's unit.

    No stock arithmetic happens here; the adjustor computes before/after under
    the product lock and passes them in.
    """
    if db.session.get(Product, product_id) is None:
        raise ConstraintViolation(details={"product_id": product_id})
    validate_movement_sign(movement_type, quantity)

    total_value = None
    if unit_price is not None:
        total_value = quantize_money(abs(quantity) * unit_price)

    order_id = related_document_id if related_document_type in ("sales_order", "purchase_order") else None

    movement = StockMovement(
        reference_number=movement_reference(movement_type),
        product_id=product_id,
        movement_type=movement_type,
        quantity=quantity,
        quantity_before=quantity_before,
        quantity_after=quantity_after,
        unit_price=unit_price,
        total_value=total_value,
        related_document_type=related_document_type,
        related_document_id=related_document_id,
        order_id=order_id,
        order_line_id=order_line_id,
        warehouse=warehouse,
        reason=reason,
        notes=notes,
        movement_date=movement_date or utcnow(),
        created_by=created_by,
        is_approved=True,
        approved_by=created_by,
        approved_at=utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def _filtered_movements(
    *,
    product_id: int | None = None,
    movement_type: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    related_document_type: str | None = None,
    related_document_id: int | None = None,
):
    q = db.session.query(StockMovement)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if movement_type:
        if movement_type not in MOVEMENT_TYPES:
            raise ValidationError("invalid movement_type", {"movement_type": movement_type})
        q = q.filter(StockMovement.movement_type == movement_type)
    if date_from is not None:
        q = q.filter(StockMovement.movement_date >= date_from)
    if date_to is not None:
        q = q.filter(StockMovement.movement_date <= date_to)
    if related_document_type:
        q = q.filter(StockMovement.related_document_type == related_document_type)
    if related_document_id is not None:
        q = q.filter(StockMovement.related_document_id == related_document_id)
    return q


def _page(q, limit: int, offset: int) -> tuple[list[StockMovement], int]:
    total = q.count()
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    offset = max(0, offset)
    rows = (
        q.order_by(StockMovement.movement_date.desc(), StockMovement.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return rows, total


def history(
    product_id: int,
    *,
    movement_type: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    related_document_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[StockMovement], int]:
    """Movements for one product, most recent first, with total count."""
    if db.session.get(Product, product_id) is None:
        raise NotFound(f"Product {product_id} not found")
    q = _filtered_movements(
        product_id=product_id,
        movement_type=movement_type,
        date_from=date_from,
        date_to=date_to,
        related_document_type=related_document_type,
    )
    return _page(q, limit, offset)


def journal(
    *,
    product_id: int | None = None,
    movement_type: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    related_document_type: str | None = None,
    related_document_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[StockMovement], int]:
    """Stock movement journal across all products, most recent first."""
    q = _filtered_movements(
        product_id=product_id,
        movement_type=movement_type,
        date_from=date_from,
        date_to=date_to,
        related_document_type=related_document_type,
        related_document_id=related_document_id,
    )
    return _page(q, limit, offset)


def _repair_cached_stock(product: Product) -> dict:
    derived = current_stock(product.id)
    cached = quantize_quantity(product.quantity_on_hand or ZERO)
    drift = derived - cached
    if drift != ZERO:
        logger.warning(
            "Cached stock drift for product %s: cached=%s derived=%s; repairing",
            product.id, cached, derived,
        )
        product.quantity_on_hand = derived
    return {
        "product_id": product.id,
        "cached": decimal_str(cached),
        "derived": decimal_str(derived),
        "drift": decimal_str(drift),
        "repaired": drift != ZERO,
    }


def verify_cached_stock(product_id: int) -> dict:
    """Compare the cached counter with the ledger and repair it if they differ."""
    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        return _repair_cached_stock(product)

    return run_atomic(_op)


def rebuild_cached_stock() -> list[dict]:
    """Recompute every product's cached counter from the ledger in one unit."""
    def _op():
        products = lock_for_update(db.session.query(Product).order_by(Product.id.asc())).all()
        return [_repair_cached_stock(p) for p in products]

    return run_atomic(_op)
