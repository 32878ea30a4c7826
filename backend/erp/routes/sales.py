# backend/erp/routes/sales.py
"""
Sales Routes

SECURITY: All routes require an actor.
- Reads require viewer or higher
- Creating and editing orders and quotes requires sales or higher
- Submitting, confirming and cancelling require sales; shipping and delivering
  require warehouse
- Department roles do not stand in for each other; manager and above may
  act for any department
- Quote conversion requires sales or higher

Confirming or shipping a sales order checks derived stock; shipping writes
one sale_shipment movement per line inside the same unit.
"""

from flask import Blueprint, g, jsonify

from ..services import lifecycle_service as lifecycle
from ..services import workflow_service
from ..decorators import require_actor, require_role
from .orders import register_order_routes
from .params import json_body

sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")

register_order_routes(
    sales_bp,
    order_type=lifecycle.SALES_ORDER,
    path="/orders",
    endpoint="sales_order",
    view_role="viewer",
    edit_role="sales",
    approve_role="sales",
    transition_roles={"shipped": "warehouse", "delivered": "warehouse"},
)

register_order_routes(
    sales_bp,
    order_type=lifecycle.QUOTE,
    path="/quotes",
    endpoint="quote",
    view_role="viewer",
    edit_role="sales",
    approve_role="sales",
)


@sales_bp.post("/quotes/<int:quote_id>/convert")
@require_actor
@require_role("sales")
def convert_quote_route(quote_id: int):
    """
    Convert an approved quote into a new draft sales order.

    Request body (optional):
    {
        "delivery_date": "2025-02-01"
    }

    Returns:
        {quote, order}
    """
    quote, order = workflow_service.convert_quote(quote_id, g.actor_id, json_body())
    return jsonify({"quote": quote.to_dict(), "order": order.to_dict()}), 201
