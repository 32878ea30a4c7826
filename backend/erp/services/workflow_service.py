# Overview: Order workflow engine: status transitions with their stock effects, and quote conversion.

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal

from ..errors import InsufficientStock, InvalidTransition, ValidationError
from ..extensions import db
from ..models import Order
from ..money import ZERO, decimal_str
from ..time_utils import parse_iso_date, utcnow
from . import lifecycle_service as lifecycle
from .concurrency import run_atomic
from .inventory_service import apply_adjustment, lock_products, parse_movement_date
from .ledger_service import current_stock
from .order_service import load_order, create_order_inner

"""
Workflow Invariants (authoritative)

- A transition and every stock movement it causes are one unit. If any line
  fails (e.g. insufficient stock on shipment) nothing is written and the
  order keeps its status.
- Stock moves once per order, on the first fulfilment status:
  sales_order -> shipped (outbound), purchase_order -> received (inbound).
  One movement per order line; lines whose product does not track stock are
  skipped. Movements are dated by the payload fulfilment date
  (shipping_date / received_date), defaulting to now; future dates are
  rejected.
- Products are locked in ascending id order before any line is applied.
- Confirming a sales order checks availability for every line and reports
  all shortages at once. No reservation is written.
"""

logger = logging.getLogger(__name__)

DIRECTION = {
    lifecycle.SALES_ORDER: ("sale_shipment", Decimal("-1")),
    lifecycle.PURCHASE_ORDER: ("purchase_receipt", Decimal("1")),
}

# Payload key carrying the physical fulfilment date, per order type
FULFILMENT_DATE_FIELDS = {
    lifecycle.SALES_ORDER: "shipping_date",
    lifecycle.PURCHASE_ORDER: "received_date",
}


def _required_by_product(order: Order) -> "OrderedDict[int, Decimal]":
    required: OrderedDict[int, Decimal] = OrderedDict()
    for line in order.lines:
        if line.product is not None and not line.product.track_stock:
            continue
        required[line.product_id] = required.get(line.product_id, ZERO) + Decimal(line.quantity)
    return required


def check_availability(order: Order) -> list[dict]:
    """Return one shortage entry per product whose derived stock cannot cover the order."""
    shortages = []
    for product_id, needed in _required_by_product(order).items():
        available = current_stock(product_id)
        if available < needed:
            line = next(l for l in order.lines if l.product_id == product_id)
            shortages.append({
                "product_id": product_id,
                "product_code": line.product.code if line.product else None,
                "available": decimal_str(available),
                "requested": decimal_str(needed),
            })
    return shortages


def _post_stock(order: Order, actor_id: int, movement_date: datetime) -> list[int]:
    movement_type, sign = DIRECTION[order.order_type]
    tracked_lines = [
        line for line in order.lines
        if line.product is None or line.product.track_stock
    ]
    products = lock_products(line.product_id for line in tracked_lines)

    movement_ids = []
    for line in tracked_lines:
        movement = apply_adjustment(
            product=products[line.product_id],
            quantity=sign * Decimal(line.quantity),
            movement_type=movement_type,
            actor_id=actor_id,
            unit_price=Decimal(line.unit_price),
            related_document_type=order.order_type,
            related_document_id=order.id,
            order_line_id=line.id,
            reason=f"{order.order_number} line {line.line_number}",
            movement_date=movement_date,
        )
        if order.order_type == lifecycle.PURCHASE_ORDER:
            line.received_quantity = line.quantity
        else:
            line.shipped_quantity = line.quantity
        movement_ids.append(movement.id)
    order.stock_posted_at = utcnow()
    return movement_ids


def transition_inner(order: Order, target_status: str, actor_id: int, payload: dict | None = None, *, via: str | None = None) -> list[int]:
    """Core transition without locking or commit. Returns ids of movements written."""
    payload = payload or {}
    lifecycle.validate_transition(order.order_type, order.status, target_status, via=via)

    if order.order_type == lifecycle.SALES_ORDER and target_status == "confirmed":
        shortages = check_availability(order)
        if shortages:
            raise InsufficientStock(
                f"Insufficient stock to confirm {order.order_number}",
                {"shortages": shortages},
            )

    movement_ids: list[int] = []
    stamped_at = utcnow()
    if lifecycle.moves_stock(order.order_type, target_status):
        date_field = FULFILMENT_DATE_FIELDS[order.order_type]
        # Physical date of the shipment or receipt; stamps the status too
        stamped_at = parse_movement_date(payload.get(date_field), date_field)
        if order.stock_posted_at is None:
            movement_ids = _post_stock(order, actor_id, stamped_at)

    stamp = lifecycle.STATUS_TIMESTAMPS.get(target_status)
    if stamp:
        setattr(order, stamp, stamped_at)
    if target_status == "cancelled":
        order.cancelled_by = actor_id
        order.cancellation_reason = payload.get("reason")
    if target_status == "approved":
        order.approved_by = actor_id
    if target_status == "shipped" and payload.get("tracking_number"):
        order.tracking_number = str(payload["tracking_number"]).strip()

    order.status = target_status
    db.session.flush()
    return movement_ids


def transition(
    order_id: int,
    target_status: str,
    actor_id: int,
    payload: dict | None = None,
    *,
    order_type: str | None = None,
) -> Order:
    """
    Move an order to target_status as one atomic unit.

    Raises InvalidTransition for illegal changes and InsufficientStock when a
    shipment (or a sales confirmation) cannot be covered; in both cases the
    order and stock are left untouched.
    """
    if not target_status or not isinstance(target_status, str):
        raise InvalidTransition("status is required")

    def _op():
        order = load_order(order_id, order_type, lock=True)
        previous = order.status
        movement_ids = transition_inner(order, target_status, actor_id, payload)
        return order, previous, movement_ids

    order, previous, movement_ids = run_atomic(_op)
    logger.info(
        "Order %s transitioned %s -> %s by actor %s (%d stock movements)",
        order.order_number, previous, target_status, actor_id, len(movement_ids),
    )
    return order


def cancel_order(order_id: int, actor_id: int, reason: str | None = None, *, order_type: str | None = None) -> Order:
    return transition(order_id, "cancelled", actor_id, {"reason": reason}, order_type=order_type)


def convert_quote(quote_id: int, actor_id: int, payload: dict | None = None) -> tuple[Order, Order]:
    """
    Convert an approved quote into a new draft sales order.

    Every line is copied; the quote becomes `converted` and points at the new
    order, which points back through quote_id. One unit.
    """
    payload = payload or {}

    def _op():
        quote = load_order(quote_id, lifecycle.QUOTE, lock=True)
        lifecycle.validate_transition(lifecycle.QUOTE, quote.status, "converted", via="convert_quote")

        header = {
            "customer_id": quote.customer_id,
            "discount_percentage": Decimal(quote.discount_percentage or 0),
            "tax_percentage": Decimal(quote.tax_percentage or 0),
            "notes": quote.notes,
            "terms": quote.terms,
            "payment_terms": quote.payment_terms,
        }
        if payload.get("delivery_date"):
            try:
                header["delivery_date"] = parse_iso_date(payload["delivery_date"])
            except ValueError:
                raise ValidationError("delivery_date must be an ISO-8601 date")
        lines = [
            {
                "product_id": line.product_id,
                "description": line.description,
                "quantity": Decimal(line.quantity),
                "unit_price": Decimal(line.unit_price),
                "discount_percentage": Decimal(line.discount_percentage or 0),
                "tax_percentage": Decimal(line.tax_percentage or 0),
            }
            for line in quote.lines
        ]
        order = create_order_inner(
            order_type=lifecycle.SALES_ORDER,
            header=header,
            lines=lines,
            actor_id=actor_id,
            quote_id=quote.id,
        )
        transition_inner(quote, "converted", actor_id, via="convert_quote")
        quote.converted_order_id = order.id
        db.session.flush()
        return quote, order

    quote, order = run_atomic(_op)
    logger.info("Quote %s converted to sales order %s", quote.order_number, order.order_number)
    return quote, order
