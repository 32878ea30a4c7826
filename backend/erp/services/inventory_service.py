# Overview: Inventory adjustor; the only writer of product stock.

# backend/erp/services/inventory_service.py

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from ..errors import InsufficientStock, NotFound, ValidationError
from ..extensions import db
from ..models import Product, StockMovement
from ..money import ZERO, decimal_str, quantize_quantity, to_decimal
from ..time_utils import parse_iso_datetime, utcnow
from .concurrency import lock_for_update, run_atomic, run_with_retry
from .ledger_service import OUTBOUND_TYPES, append_movement, current_stock, validate_movement_sign

"""
Inventory Adjustor Invariants (authoritative)

Locking:
- Every adjustment locks the product row first. When several products are
  touched in one unit they are locked in ascending id order.

Stock model:
- Derived stock (ledger sum) is authoritative; quantity_on_hand is a cache
  updated in the same unit as the ledger append.
- If the cache disagrees with the ledger under the lock, the ledger wins and
  the cache is repaired before the adjustment is applied.

Business invariants:
- Derived stock may never go negative. A rejected adjustment writes nothing.
- Each adjustment appends exactly one movement with quantity_before/after.
"""

logger = logging.getLogger(__name__)


def parse_movement_date(value, field: str = "movement_date") -> datetime:
    """
    Normalize a movement date to canonical UTC-naive datetime.

    None -> now; datetime -> as given; date -> midnight; str -> ISO-8601.
    Movements may not be dated in the future.
    """
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            dt = parse_iso_datetime(value)
        except ValueError:
            raise ValidationError(f"invalid {field}")
        if dt is None:
            raise ValidationError(f"invalid {field}")
    else:
        raise ValidationError(f"invalid {field}")

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    if dt > utcnow() + timedelta(minutes=2):
        raise ValidationError(f"{field} cannot be in the future")
    return dt


def lock_products(product_ids) -> dict[int, Product]:
    """
    Lock several product rows in ascending id order and return them by id.

    Missing ids raise NotFound.
    """
    ids = sorted({int(pid) for pid in product_ids})
    locked: dict[int, Product] = {}
    for pid in ids:
        product = lock_for_update(db.session.query(Product).filter_by(id=pid)).first()
        if product is None:
            raise NotFound(f"Product {pid} not found", {"product_id": pid})
        locked[pid] = product
    return locked


def _stock_under_lock(product: Product) -> Decimal:
    derived = current_stock(product.id)
    cached = quantize_quantity(product.quantity_on_hand or ZERO)
    if cached != derived:
        logger.warning(
            "Cached stock for product %s was %s but ledger says %s; using ledger",
            product.id, cached, derived,
        )
        product.quantity_on_hand = derived
    return derived


def apply_adjustment(
    *,
    product: Product,
    quantity: Decimal,
    movement_type: str,
    actor_id: int,
    unit_price: Decimal | None = None,
    related_document_type: str | None = None,
    related_document_id: int | None = None,
    order_line_id: int | None = None,
    warehouse: str | None = None,
    reason: str | None = None,
    notes: str | None = None,
    movement_date: datetime | None = None,
) -> StockMovement:
    """Core adjustment without locking or commit.

    The caller must already hold the lock on `product` (lock_products) and
    owns the unit. Raises InsufficientStock before any write when the result
    would be negative.
    """
    quantity = quantize_quantity(quantity)
    validate_movement_sign(movement_type, quantity)

    before = _stock_under_lock(product)
    after = before + quantity
    if after < ZERO:
        raise InsufficientStock(
            f"Insufficient stock for product {product.code}",
            {
                "shortages": [
                    {
                        "product_id": product.id,
                        "product_code": product.code,
                        "available": decimal_str(before),
                        "requested": decimal_str(-quantity),
                    }
                ]
            },
        )

    movement = append_movement(
        product_id=product.id,
        movement_type=movement_type,
        quantity=quantity,
        quantity_before=before,
        quantity_after=after,
        created_by=actor_id,
        unit_price=unit_price,
        related_document_type=related_document_type,
        related_document_id=related_document_id,
        order_line_id=order_line_id,
        warehouse=warehouse,
        reason=reason,
        notes=notes,
        movement_date=movement_date,
    )
    product.quantity_on_hand = after
    db.session.flush()
    return movement


def _signed_quantity(movement_type: str, quantity) -> Decimal:
    """Accept an unsigned quantity and apply the direction of the type."""
    qty = to_decimal(quantity, "quantity")
    if qty > ZERO and movement_type in OUTBOUND_TYPES:
        return -qty
    return qty


def _require_adjustable(product: Product) -> None:
    if not product.is_active:
        raise ValidationError(f"Product {product.code} is inactive", {"product_id": product.id})
    if not product.track_stock:
        raise ValidationError(f"Product {product.code} does not track stock", {"product_id": product.id})


def adjust_inventory(
    *,
    product_id: int,
    quantity,
    movement_type: str,
    actor_id: int,
    unit_price=None,
    warehouse: str | None = None,
    reason: str | None = None,
    notes: str | None = None,
    movement_date=None,
) -> dict:
    """
    Apply one stock adjustment as its own atomic unit.

    `quantity` may be signed or unsigned; outbound types always subtract.
    Returns {"new_stock", "movement_id", "movement"}.
    """
    try:
        signed = _signed_quantity(movement_type, quantity)
        price = to_decimal(unit_price, "unit_price") if unit_price is not None else None
    except ValueError as exc:
        raise ValidationError(str(exc))
    movement_dt = parse_movement_date(movement_date)

    def _op():
        product = lock_products([product_id])[int(product_id)]
        _require_adjustable(product)
        movement = apply_adjustment(
            product=product,
            quantity=signed,
            movement_type=movement_type,
            actor_id=actor_id,
            unit_price=price if price is not None else product.unit_price,
            warehouse=warehouse,
            reason=reason,
            notes=notes,
            movement_date=movement_dt,
        )
        return {
            "new_stock": decimal_str(movement.quantity_after),
            "movement_id": movement.id,
            "movement": movement.to_dict(),
        }

    result = run_atomic(_op)
    logger.info(
        "Stock adjusted: product=%s type=%s qty=%s new_stock=%s",
        product_id, movement_type, signed, result["new_stock"],
    )
    return result


def bulk_adjust(movements: list[dict], actor_id: int) -> list[dict]:
    """
    Apply a list of adjustments as ONE unit.

    Each item: {product_id, quantity, movement_type, unit_price?, warehouse?,
    reason?, notes?}. Items are applied in the given order after locking all
    products in ascending id order; any failure leaves stock untouched.
    """
    if not movements:
        raise ValidationError("movements must be a non-empty list")

    prepared = []
    for index, item in enumerate(movements):
        if not isinstance(item, dict):
            raise ValidationError("each movement must be an object", {"index": index})
        movement_type = item.get("movement_type")
        try:
            product_id = int(item.get("product_id"))
            signed = _signed_quantity(movement_type, item.get("quantity"))
            price = to_decimal(item["unit_price"], "unit_price") if item.get("unit_price") is not None else None
        except (TypeError, ValueError) as exc:
            raise ValidationError(str(exc), {"index": index})
        prepared.append((product_id, signed, movement_type, price, item))

    def _op():
        products = lock_products(p[0] for p in prepared)
        results = []
        for product_id, signed, movement_type, price, item in prepared:
            product = products[product_id]
            _require_adjustable(product)
            movement = apply_adjustment(
                product=product,
                quantity=signed,
                movement_type=movement_type,
                actor_id=actor_id,
                unit_price=price if price is not None else product.unit_price,
                warehouse=item.get("warehouse"),
                reason=item.get("reason"),
                notes=item.get("notes"),
            )
            results.append({
                "product_id": product_id,
                "new_stock": decimal_str(movement.quantity_after),
                "movement_id": movement.id,
            })
        return results

    results = run_atomic(_op)
    logger.info("Bulk stock adjustment applied: %d movements", len(results))
    return results


def stock_summary(product_id: int) -> dict:
    def _op():
        product = db.session.get(Product, product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        derived = current_stock(product.id)
        minimum = quantize_quantity(product.minimum_stock or ZERO)
        return {
            "product_id": product.id,
            "product_code": product.code,
            "product_name": product.name,
            "unit": product.unit,
            "current_stock": decimal_str(derived),
            "cached_stock": decimal_str(quantize_quantity(product.quantity_on_hand or ZERO)),
            "minimum_stock": decimal_str(minimum),
            "reorder_point": decimal_str(product.reorder_point),
            "below_minimum": product.track_stock and derived < minimum,
            "track_stock": product.track_stock,
        }

    return run_with_retry(_op)
