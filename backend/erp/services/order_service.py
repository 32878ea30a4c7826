# Overview: Order aggregate persistence: totals, create, update, read, list and delete.

from __future__ import annotations

import logging
from decimal import Decimal

from ..errors import AlreadySettled, NotFound, ValidationError
from ..extensions import db
from ..models import Customer, Order, OrderLine, Product, Supplier
from ..money import HUNDRED, ZERO, quantize_money, quantize_quantity, to_decimal, to_percentage
from ..time_utils import today
from ..validation import ModelValidationPolicy, coerce_int, validate_payload
from . import lifecycle_service as lifecycle
from .concurrency import lock_for_update, run_atomic, run_with_retry
from .document_service import next_document_number
from .reporting_service import last_receipt_prices, reorder_candidates

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500

# Aliases accepted for delivery_date, per order type
DATE_ALIASES = {
    lifecycle.SALES_ORDER: "delivery_date",
    lifecycle.PURCHASE_ORDER: "expected_date",
    lifecycle.QUOTE: "valid_until",
}

_COMMON_HEADER_FIELDS = {
    "order_date",
    "delivery_date",
    "discount_percentage",
    "tax_percentage",
    "notes",
    "terms",
    "payment_terms",
}

HEADER_POLICIES = {
    lifecycle.SALES_ORDER: ModelValidationPolicy(
        writable_fields=_COMMON_HEADER_FIELDS | {"customer_id", "tracking_number"},
        required_on_create={"customer_id"},
    ),
    lifecycle.PURCHASE_ORDER: ModelValidationPolicy(
        writable_fields=_COMMON_HEADER_FIELDS | {"supplier_id"},
        required_on_create={"supplier_id"},
    ),
    lifecycle.QUOTE: ModelValidationPolicy(
        writable_fields=_COMMON_HEADER_FIELDS | {"customer_id"},
        required_on_create={"customer_id"},
    ),
}


# =============================================================================
# Totals
# =============================================================================

def compute_line_total(quantity: Decimal, unit_price: Decimal, discount_percentage: Decimal = ZERO) -> Decimal:
    """quantity x unit_price x (1 - discount% / 100), rounded to the currency quantum."""
    return quantize_money(quantity * unit_price * (HUNDRED - discount_percentage) / HUNDRED)


def compute_totals(line_totals, discount_percentage: Decimal = ZERO, tax_percentage: Decimal = ZERO) -> dict:
    """
    Derive order totals from line totals.

    Order discount applies to the subtotal; tax applies to the discounted
    amount. Each step is rounded half-up to the currency quantum, so
    245 with 5% discount and 19% tax gives 232.75 and then 276.97.
    """
    subtotal = quantize_money(sum((Decimal(t) for t in line_totals), ZERO))
    discount_amount = quantize_money(subtotal * discount_percentage / HUNDRED)
    taxable = subtotal - discount_amount
    tax_amount = quantize_money(taxable * tax_percentage / HUNDRED)
    return {
        "subtotal": subtotal,
        "discount_amount": discount_amount,
        "tax_amount": tax_amount,
        "total_amount": taxable + tax_amount,
    }


def apply_totals(order: Order) -> None:
    """Re-derive every stored total on `order` from its current lines."""
    for line in order.lines:
        line.line_total = compute_line_total(
            Decimal(line.quantity), Decimal(line.unit_price), Decimal(line.discount_percentage or 0)
        )
    totals = compute_totals(
        [line.line_total for line in order.lines],
        Decimal(order.discount_percentage or 0),
        Decimal(order.tax_percentage or 0),
    )
    for key, value in totals.items():
        setattr(order, key, value)


# =============================================================================
# Payload normalization
# =============================================================================

def _normalize_header(order_type: str, payload: dict | None, *, partial: bool) -> dict:
    payload = dict(payload or {})
    payload.pop("lines", None)
    # Client-supplied totals and status are ignored; they are always derived
    for key in ("subtotal", "discount_amount", "tax_amount", "total_amount", "status", "order_number", "id"):
        payload.pop(key, None)

    alias = DATE_ALIASES[order_type]
    if alias != "delivery_date" and alias in payload:
        payload["delivery_date"] = payload.pop(alias)

    patch = validate_payload(
        model=Order,
        payload=payload,
        policy=HEADER_POLICIES[order_type],
        partial=partial,
    )
    for field in ("discount_percentage", "tax_percentage"):
        if field in patch:
            try:
                patch[field] = to_percentage(patch[field], field)
            except ValueError as exc:
                raise ValidationError(str(exc))
    return patch


def _normalize_lines(raw_lines) -> list[dict]:
    if not isinstance(raw_lines, list) or not raw_lines:
        raise ValidationError("lines must be a non-empty list")

    lines: list[dict] = []
    for index, raw in enumerate(raw_lines):
        if not isinstance(raw, dict):
            raise ValidationError("each line must be an object", {"line": index + 1})
        if raw.get("product_id") is None:
            raise ValidationError("product_id is required", {"line": index + 1})
        product_id = coerce_int(raw["product_id"], "product_id")
        product = db.session.get(Product, product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found", {"line": index + 1, "product_id": product_id})
        if not product.is_active:
            raise ValidationError(f"Product {product.code} is inactive", {"line": index + 1})

        try:
            quantity = quantize_quantity(to_decimal(raw.get("quantity"), "quantity"))
            if raw.get("unit_price") is None:
                unit_price = Decimal(product.unit_price or 0)
            else:
                unit_price = quantize_money(to_decimal(raw["unit_price"], "unit_price"))
            discount = to_percentage(raw.get("discount_percentage"), "discount_percentage")
            tax = to_percentage(raw.get("tax_percentage"), "tax_percentage")
        except ValueError as exc:
            raise ValidationError(str(exc), {"line": index + 1})
        if quantity <= ZERO:
            raise ValidationError("quantity must be > 0", {"line": index + 1})
        if unit_price < ZERO:
            raise ValidationError("unit_price must be >= 0", {"line": index + 1})

        lines.append({
            "product_id": product_id,
            "description": (raw.get("description") or product.name),
            "quantity": quantity,
            "unit_price": unit_price,
            "discount_percentage": discount,
            "tax_percentage": tax,
        })
    return lines


def _counterparty_field(order_type: str) -> str:
    return "supplier_id" if order_type == lifecycle.PURCHASE_ORDER else "customer_id"


def _check_counterparty(order_type: str, header: dict) -> None:
    field = _counterparty_field(order_type)
    if field in header and header[field] is None:
        raise ValidationError(f"{field} is required", {"missing": [field]})
    if order_type == lifecycle.PURCHASE_ORDER:
        supplier_id = header.get("supplier_id")
        if supplier_id is not None and db.session.get(Supplier, supplier_id) is None:
            raise NotFound(f"Supplier {supplier_id} not found")
    else:
        customer_id = header.get("customer_id")
        if customer_id is not None and db.session.get(Customer, customer_id) is None:
            raise NotFound(f"Customer {customer_id} not found")


def _replace_lines(order: Order, lines: list[dict]) -> None:
    if order.lines:
        order.lines.clear()
        # Old rows must be gone before new ones reuse their line numbers
        db.session.flush()
    for number, data in enumerate(lines, start=1):
        order.lines.append(OrderLine(line_number=number, line_total=ZERO, **data))


# =============================================================================
# Create / update
# =============================================================================

def create_order_inner(
    *,
    order_type: str,
    header: dict,
    lines: list[dict],
    actor_id: int,
    quote_id: int | None = None,
) -> Order:
    """Core create logic without commit. header and lines are already normalized."""
    _check_counterparty(order_type, header)

    order = Order(
        order_type=order_type,
        order_number=next_document_number(document_type=order_type),
        status="draft",
        order_date=header.get("order_date") or today(),
        discount_percentage=header.get("discount_percentage", ZERO),
        tax_percentage=header.get("tax_percentage", ZERO),
        created_by=actor_id,
        quote_id=quote_id,
    )
    for key, value in header.items():
        if key not in ("order_date", "discount_percentage", "tax_percentage"):
            setattr(order, key, value)
    _replace_lines(order, lines)
    apply_totals(order)
    db.session.add(order)
    db.session.flush()
    return order


def create_order(order_type: str, payload: dict | None, actor_id: int) -> Order:
    lifecycle.validate_order_type(order_type)
    header = _normalize_header(order_type, payload, partial=False)
    raw_lines = (payload or {}).get("lines")

    def _op():
        lines = _normalize_lines(raw_lines)
        return create_order_inner(order_type=order_type, header=header, lines=lines, actor_id=actor_id)

    order = run_atomic(_op)
    logger.info("Created %s %s (total=%s)", order_type, order.order_number, order.total_amount)
    return order


def load_order(order_id: int, order_type: str | None, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None or (order_type is not None and order.order_type != order_type):
        label = (order_type or "order").replace("_", " ")
        raise NotFound(f"{label.capitalize()} {order_id} not found")
    return order


def update_order(order_id: int, payload: dict | None, actor_id: int, *, order_type: str | None = None) -> Order:
    """
    Replace header fields and, when `lines` is present, the whole line set.

    Only draft and pending orders are editable. Totals are re-derived.
    """
    payload = payload or {}

    def _op():
        order = load_order(order_id, order_type, lock=True)
        if not lifecycle.is_editable(order.status):
            raise AlreadySettled(
                f"Order {order.order_number} is {order.status} and can no longer be edited",
                {"status": order.status},
            )
        header = _normalize_header(order.order_type, payload, partial=True)
        _check_counterparty(order.order_type, header)
        for key, value in header.items():
            setattr(order, key, value)
        if "lines" in payload:
            _replace_lines(order, _normalize_lines(payload["lines"]))
        apply_totals(order)
        db.session.flush()
        return order

    order = run_atomic(_op)
    logger.info("Updated %s %s by actor %s", order.order_type, order.order_number, actor_id)
    return order


def delete_order(order_id: int, actor_id: int, *, order_type: str | None = None) -> None:
    """
    Remove a draft order that never moved stock, has no payment schedules
    and was not created from a quote.
    """
    def _op():
        order = load_order(order_id, order_type, lock=True)
        if order.status != "draft" or order.stock_posted_at is not None:
            raise AlreadySettled(
                f"Only draft orders can be deleted; {order.order_number} is {order.status}",
                {"status": order.status},
            )
        if order.payment_schedules:
            raise AlreadySettled(f"Order {order.order_number} has payment schedules")
        source_quote = db.session.query(Order).filter_by(converted_order_id=order.id).first()
        if source_quote is not None:
            raise AlreadySettled(
                f"Order {order.order_number} was converted from quote {source_quote.order_number}",
                {"quote_id": source_quote.id},
            )
        number = order.order_number
        db.session.delete(order)
        return number

    number = run_atomic(_op)
    logger.info("Deleted order %s by actor %s", number, actor_id)


# =============================================================================
# Read
# =============================================================================

def get_order(order_id: int, *, order_type: str | None = None) -> Order:
    return run_with_retry(lambda: load_order(order_id, order_type))


def list_orders(
    *,
    order_type: str,
    status: str | None = None,
    counterparty_id: int | None = None,
    date_from=None,
    date_to=None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    """List orders of one type, newest first, with typed filters and a total count."""
    lifecycle.validate_order_type(order_type)
    if status:
        lifecycle.validate_status(order_type, status)

    def _op():
        q = db.session.query(Order).filter(Order.order_type == order_type)
        if status:
            q = q.filter(Order.status == status)
        if counterparty_id is not None:
            if order_type == lifecycle.PURCHASE_ORDER:
                q = q.filter(Order.supplier_id == counterparty_id)
            else:
                q = q.filter(Order.customer_id == counterparty_id)
        if date_from is not None:
            q = q.filter(Order.order_date >= date_from)
        if date_to is not None:
            q = q.filter(Order.order_date <= date_to)

        total = q.count()
        page_limit = max(1, min(limit, MAX_PAGE_SIZE))
        rows = (
            q.order_by(Order.order_date.desc(), Order.id.desc())
            .limit(page_limit)
            .offset(max(0, offset))
            .all()
        )
        return rows, total

    return run_with_retry(_op)


# =============================================================================
# Reorder
# =============================================================================

def _last_purchase_price(product: Product) -> Decimal:
    prices = last_receipt_prices([product.id])
    if product.id in prices:
        return prices[product.id]
    return Decimal(product.unit_price or 0)


def create_reorder_purchase_order(supplier_id: int, actor_id: int, product_ids=None) -> Order:
    """
    Draft a purchase order for every product of the supplier at or below its
    reorder point, using the suggested reorder quantity and the last
    purchase price.
    """
    def _op():
        if db.session.get(Supplier, supplier_id) is None:
            raise NotFound(f"Supplier {supplier_id} not found")
        candidates = [
            c for c in reorder_candidates(supplier_id=supplier_id, product_ids=product_ids)
            if c[2] > ZERO
        ]
        if not candidates:
            raise ValidationError("No products need reordering for this supplier")
        lines = [
            {
                "product_id": product.id,
                "description": f"Reorder: {product.name} ({product.code})",
                "quantity": quantity,
                "unit_price": _last_purchase_price(product),
                "discount_percentage": ZERO,
                "tax_percentage": ZERO,
            }
            for product, _stock, quantity in candidates
        ]
        return create_order_inner(
            order_type=lifecycle.PURCHASE_ORDER,
            header={"supplier_id": supplier_id, "notes": "Auto-generated based on reorder points"},
            lines=lines,
            actor_id=actor_id,
        )

    order = run_atomic(_op)
    logger.info("Created reorder purchase order %s for supplier %s", order.order_number, supplier_id)
    return order
