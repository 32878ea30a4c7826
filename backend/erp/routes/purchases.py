# backend/erp/routes/purchases.py
"""
Purchase Routes

SECURITY: All routes require an actor.
- Reads require viewer or higher
- Creating and editing purchase orders requires purchasing or higher
- Submitting requires purchasing; receiving and completing require warehouse
- Cancelling requires manager or higher
- Department roles do not stand in for each other; manager and above may
  act for any department

Receiving a purchase order writes one purchase_receipt movement per line.
"""

from flask import Blueprint, g, jsonify

from ..decorators import require_actor, require_role
from ..errors import ValidationError
from ..services import lifecycle_service as lifecycle
from ..services import order_service
from ..validation import coerce_int
from .orders import register_order_routes
from .params import json_body

purchases_bp = Blueprint("purchases", __name__, url_prefix="/api/purchases")

register_order_routes(
    purchases_bp,
    order_type=lifecycle.PURCHASE_ORDER,
    path="/orders",
    endpoint="purchase_order",
    view_role="viewer",
    edit_role="purchasing",
    approve_role="purchasing",
    transition_roles={"received": "warehouse", "completed": "warehouse", "cancelled": "manager"},
    cancel_role="manager",
)


@purchases_bp.post("/orders/reorder")
@require_actor
@require_role("purchasing")
def reorder_route():
    """
    Draft a purchase order for a supplier's products at or below reorder point.

    Request body:
    {
        "supplier_id": 1,        // required
        "product_ids": [1, 2]    // optional, restricts the candidates
    }
    """
    data = json_body()
    if data.get("supplier_id") is None:
        raise ValidationError("supplier_id is required")
    supplier_id = coerce_int(data["supplier_id"], "supplier_id")

    product_ids = data.get("product_ids")
    if product_ids is not None:
        if not isinstance(product_ids, list):
            raise ValidationError("product_ids must be a list")
        product_ids = [coerce_int(p, "product_ids") for p in product_ids]

    order = order_service.create_reorder_purchase_order(supplier_id, g.actor_id, product_ids)
    return jsonify(order.to_dict()), 201
