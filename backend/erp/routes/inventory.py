# backend/erp/routes/inventory.py
"""
Inventory Routes

SECURITY: All routes require an actor.
- Read operations require viewer or higher
- Adjustments require warehouse or higher

Stock figures are derived from the stock movement ledger. Every adjustment
appends one movement per product; the ledger is never edited.
"""

from flask import Blueprint, g, jsonify, request

from ..decorators import require_actor, require_role
from ..errors import ValidationError
from ..services import inventory_service, ledger_service
from .params import datetime_arg, json_body, page_args, paged

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/products/<int:product_id>/stock")
@require_actor
@require_role("viewer")
def stock_summary_route(product_id: int):
    """Derived stock, cached stock and minimum for one product."""
    return jsonify(inventory_service.stock_summary(product_id))


@inventory_bp.get("/products/<int:product_id>/movements")
@require_actor
@require_role("viewer")
def product_history_route(product_id: int):
    """
    Movement history for one product, newest first.

    Query parameters:
    - movement_type: Filter by movement type
    - date_from / date_to: movement_date range (ISO-8601)
    - related_document_type: e.g. sales_order, purchase_order
    - limit / offset: pagination (limit clamped to 1..500)
    """
    limit, offset = page_args()
    rows, total = ledger_service.history(
        product_id,
        movement_type=request.args.get("movement_type"),
        date_from=datetime_arg("date_from"),
        date_to=datetime_arg("date_to"),
        related_document_type=request.args.get("related_document_type"),
        limit=limit,
        offset=offset,
    )
    return jsonify(paged(rows, total, limit, offset))


@inventory_bp.get("/movements")
@require_actor
@require_role("viewer")
def journal_route():
    """
    Stock journal across all products, newest first.

    Query parameters:
    - product_id, movement_type, related_document_type, related_document_id
    - date_from / date_to (ISO-8601)
    - limit / offset
    """
    limit, offset = page_args()
    rows, total = ledger_service.journal(
        product_id=request.args.get("product_id", type=int),
        movement_type=request.args.get("movement_type"),
        date_from=datetime_arg("date_from"),
        date_to=datetime_arg("date_to"),
        related_document_type=request.args.get("related_document_type"),
        related_document_id=request.args.get("related_document_id", type=int),
        limit=limit,
        offset=offset,
    )
    return jsonify(paged(rows, total, limit, offset))


@inventory_bp.post("/movements")
@require_actor
@require_role("warehouse")
def adjust_route():
    """
    Apply one stock adjustment.

    Request body:
    {
        "product_id": 1,                 // required
        "quantity": "5",                 // required, non-zero
        "movement_type": "adjustment_in", // required
        "unit_price": "10.00",           // optional, defaults to product price
        "warehouse": "...", "reason": "...", "notes": "...",
        "movement_date": "..."           // optional, ISO-8601, not in the future
    }

    Returns:
        {new_stock, movement_id, movement}
    """
    data = json_body()

    missing = [f for f in ("product_id", "quantity", "movement_type") if data.get(f) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", {"missing": missing})

    product_id = data.get("product_id")
    if not isinstance(product_id, int) or isinstance(product_id, bool):
        raise ValidationError("product_id must be an integer")

    result = inventory_service.adjust_inventory(
        product_id=product_id,
        quantity=data.get("quantity"),
        movement_type=data.get("movement_type"),
        actor_id=g.actor_id,
        unit_price=data.get("unit_price"),
        warehouse=data.get("warehouse"),
        reason=data.get("reason"),
        notes=data.get("notes"),
        movement_date=data.get("movement_date"),
    )
    return jsonify(result), 201


@inventory_bp.post("/movements/bulk")
@require_actor
@require_role("warehouse")
def bulk_adjust_route():
    """
    Apply several adjustments as one unit; any failure applies none.

    Request body:
    {
        "movements": [{product_id, quantity, movement_type, ...}, ...]
    }
    """
    data = json_body()
    results = inventory_service.bulk_adjust(data.get("movements") or [], g.actor_id)
    return jsonify({"items": results, "count": len(results)}), 201


@inventory_bp.post("/products/<int:product_id>/verify")
@require_actor
@require_role("manager")
def verify_stock_route(product_id: int):
    """Compare the cached counter with the ledger and repair drift."""
    return jsonify(ledger_service.verify_cached_stock(product_id))
