# backend/erp/routes/orders.py
"""
Order route registration shared by sales orders, purchase orders and quotes.

Each order type gets the same CRUD and transition surface under its own URL
prefix; only the order type and the roles differ.
"""

from flask import g, jsonify, request

from ..decorators import ROLE_RANKS, has_role, permission_denied, require_actor, require_role
from ..services import order_service, workflow_service
from .params import date_arg, json_body, page_args


def register_order_routes(
    bp,
    *,
    order_type: str,
    path: str,
    endpoint: str,
    view_role: str,
    edit_role: str,
    approve_role: str,
    transition_roles: dict[str, str] | None = None,
    cancel_role: str | None = None,
):
    """
    Attach list/create/get/update/delete/transition/cancel routes to `bp`.

    Routes:
    - GET    {path}                    list (status, counterparty_id, date_from, date_to, limit, offset)
    - POST   {path}                    create with lines
    - GET    {path}/<id>               get with lines
    - PUT    {path}/<id>               update header and, when given, lines
    - DELETE {path}/<id>               delete a draft
    - POST   {path}/<id>/transition    {status, ...}
    - POST   {path}/<id>/cancel        {reason}

    transition_roles maps a target status to the role it needs (e.g. shipped
    -> warehouse); other targets need approve_role. cancel_role defaults to
    approve_role.
    """
    transition_roles = dict(transition_roles or {})
    cancel_role = cancel_role or approve_role
    for role in (view_role, edit_role, approve_role, cancel_role, *transition_roles.values()):
        if role not in ROLE_RANKS:
            raise ValueError(f"unknown role {role!r}")

    def list_route():
        limit, offset = page_args()
        rows, total = order_service.list_orders(
            order_type=order_type,
            status=request.args.get("status"),
            counterparty_id=request.args.get("counterparty_id", type=int),
            date_from=date_arg("date_from"),
            date_to=date_arg("date_to"),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "items": [o.to_dict(include_lines=False) for o in rows],
            "count": total,
            "limit": limit,
            "offset": offset,
        })

    def create_route():
        order = order_service.create_order(order_type, json_body(), g.actor_id)
        return jsonify(order.to_dict()), 201

    def get_route(order_id: int):
        order = order_service.get_order(order_id, order_type=order_type)
        return jsonify(order.to_dict())

    def update_route(order_id: int):
        order = order_service.update_order(order_id, json_body(), g.actor_id, order_type=order_type)
        return jsonify(order.to_dict())

    def delete_route(order_id: int):
        order_service.delete_order(order_id, g.actor_id, order_type=order_type)
        return "", 204

    def transition_route(order_id: int):
        data = json_body()
        target = data.get("status")
        needed = transition_roles.get(target, approve_role) if isinstance(target, str) else approve_role
        if not has_role(g.actor_role, needed):
            return permission_denied(needed)
        order = workflow_service.transition(
            order_id, data.get("status"), g.actor_id, data, order_type=order_type
        )
        return jsonify(order.to_dict())

    def cancel_route(order_id: int):
        data = json_body()
        order = workflow_service.cancel_order(
            order_id, g.actor_id, data.get("reason"), order_type=order_type
        )
        return jsonify(order.to_dict())

    def guarded(view, role):
        return require_actor(require_role(role)(view))

    bp.add_url_rule(path, f"list_{endpoint}", guarded(list_route, view_role), methods=["GET"])
    bp.add_url_rule(path, f"create_{endpoint}", guarded(create_route, edit_role), methods=["POST"])
    bp.add_url_rule(f"{path}/<int:order_id>", f"get_{endpoint}", guarded(get_route, view_role), methods=["GET"])
    bp.add_url_rule(f"{path}/<int:order_id>", f"update_{endpoint}", guarded(update_route, edit_role), methods=["PUT"])
    bp.add_url_rule(f"{path}/<int:order_id>", f"delete_{endpoint}", guarded(delete_route, edit_role), methods=["DELETE"])
    bp.add_url_rule(
        f"{path}/<int:order_id>/transition",
        f"transition_{endpoint}",
        require_actor(transition_route),
        methods=["POST"],
    )
    bp.add_url_rule(
        f"{path}/<int:order_id>/cancel",
        f"cancel_{endpoint}",
        guarded(cancel_route, cancel_role),
        methods=["POST"],
    )
