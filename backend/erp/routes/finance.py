# backend/erp/routes/finance.py
"""
Finance Routes

SECURITY: All routes require an actor.
- Reads require viewer or higher
- Recording transactions, vouchers and payments requires finance or higher
- Reversals and schedule models require manager or higher

Financial transactions are append-only; corrections are recorded as
reversals, never as edits.
"""

from flask import Blueprint, g, jsonify, request

from ..decorators import require_actor, require_role
from ..errors import ValidationError
from ..services import finance_service, schedule_service
from ..validation import coerce_int
from .params import date_arg, json_body, page_args, paged

finance_bp = Blueprint("finance", __name__, url_prefix="/api/finance")


# =============================================================================
# TRANSACTIONS
# =============================================================================

@finance_bp.get("/transactions")
@require_actor
@require_role("viewer")
def list_transactions_route():
    """
    List financial transactions, newest first.

    Query parameters:
    - transaction_type: income | expense
    - category: exact category
    - date_from / date_to: transaction_date range (ISO-8601)
    - limit / offset
    """
    limit, offset = page_args()
    rows, total = finance_service.list_transactions(
        transaction_type=request.args.get("transaction_type"),
        category=request.args.get("category"),
        date_from=date_arg("date_from"),
        date_to=date_arg("date_to"),
        limit=limit,
        offset=offset,
    )
    return jsonify(paged(rows, total, limit, offset))


@finance_bp.post("/transactions")
@require_actor
@require_role("finance")
def record_transaction_route():
    """
    Append one financial transaction.

    Request body:
    {
        "transaction_type": "income",   // required: income | expense
        "category": "sales",            // required
        "amount": "100.00",             // required, > 0
        "transaction_date": "...",      // optional, defaults to today
        "customer_id" / "supplier_id" / "voucher_id" / "order_id": optional
        "payment_method", "reference_number", "description", "tags": optional
    }
    """
    tx = finance_service.record_transaction(json_body(), g.actor_id)
    return jsonify(tx.to_dict()), 201


@finance_bp.post("/transactions/<int:transaction_id>/reverse")
@require_actor
@require_role("manager")
def reverse_transaction_route(transaction_id: int):
    """Append the offsetting transaction. Body: {"reason": "..."} (optional)."""
    data = json_body()
    reversal = finance_service.reverse_transaction(transaction_id, g.actor_id, data.get("reason"))
    return jsonify(reversal.to_dict()), 201


# =============================================================================
# VOUCHERS
# =============================================================================

@finance_bp.get("/vouchers")
@require_actor
@require_role("viewer")
def list_vouchers_route():
    limit, offset = page_args()
    rows, total = finance_service.list_vouchers(
        voucher_type=request.args.get("voucher_type"),
        status=request.args.get("status"),
        limit=limit,
        offset=offset,
    )
    return jsonify(paged(rows, total, limit, offset))


@finance_bp.post("/vouchers")
@require_actor
@require_role("finance")
def create_voucher_route():
    """
    Create a pending payment or receipt voucher.

    Request body:
    {
        "voucher_type": "receipt",      // required: payment | receipt
        "amount": "250.00",             // required, > 0
        "customer_id": 1,               // customer_id or supplier_id required
        "order_id": 1,                  // optional
        "voucher_date", "due_date", "category", "description": optional
    }
    """
    voucher = finance_service.create_voucher(json_body(), g.actor_id)
    return jsonify(voucher.to_dict()), 201


@finance_bp.get("/vouchers/<int:voucher_id>")
@require_actor
@require_role("viewer")
def get_voucher_route(voucher_id: int):
    return jsonify(finance_service.get_voucher(voucher_id).to_dict())


@finance_bp.post("/vouchers/<int:voucher_id>/settle")
@require_actor
@require_role("finance")
def settle_voucher_route(voucher_id: int):
    """
    Settle a pending voucher and record its transaction in one unit.

    Request body (all optional):
    {
        "settlement_amount": "250.00",
        "settlement_date": "2025-01-15",
        "settlement_method": "bank_transfer"
    }

    Returns:
        {voucher, transaction}
    """
    data = json_body()
    voucher, tx = finance_service.settle_voucher(
        voucher_id,
        g.actor_id,
        settlement_amount=data.get("settlement_amount"),
        settlement_date=data.get("settlement_date"),
        settlement_method=data.get("settlement_method"),
    )
    return jsonify({"voucher": voucher.to_dict(), "transaction": tx.to_dict()})


# =============================================================================
# PAYMENT SCHEDULES
# =============================================================================

@finance_bp.get("/schedule-models")
@require_actor
@require_role("viewer")
def list_schedule_models_route():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    models = schedule_service.list_schedule_models(include_inactive=include_inactive)
    return jsonify({"items": [m.to_dict() for m in models], "count": len(models)})


@finance_bp.post("/schedule-models")
@require_actor
@require_role("manager")
def create_schedule_model_route():
    """
    Create a payment schedule model.

    Request body:
    {
        "name": "30/70",                              // required
        "terms": [{"day_offset": 0, "percentage": 30},
                  {"day_offset": 30, "percentage": 70}],  // required
        "description": "...", "is_default": false     // optional
    }
    """
    data = json_body()
    model = schedule_service.create_schedule_model(
        name=data.get("name"),
        terms=data.get("terms"),
        actor_id=g.actor_id,
        description=data.get("description"),
        is_default=bool(data.get("is_default", False)),
    )
    return jsonify(model.to_dict()), 201


@finance_bp.get("/schedules")
@require_actor
@require_role("viewer")
def list_schedules_route():
    """Query parameters: order_id, status (pending | paid | overdue)."""
    rows = schedule_service.list_schedules(
        order_id=request.args.get("order_id", type=int),
        status=request.args.get("status"),
    )
    return jsonify({"items": [r.to_dict() for r in rows], "count": len(rows)})


@finance_bp.post("/schedules/apply")
@require_actor
@require_role("finance")
def apply_schedule_route():
    """
    Generate installments for an order from a schedule model.

    Request body:
    {
        "order_id": 1,            // required
        "model_id": 1,            // required
        "start_date": "...",      // optional, defaults to order date
        "total_amount": "1000"    // optional, defaults to order total
    }
    """
    data = json_body()
    missing = [f for f in ("order_id", "model_id") if data.get(f) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", {"missing": missing})

    rows = schedule_service.apply_schedule(
        order_id=coerce_int(data["order_id"], "order_id"),
        model_id=coerce_int(data["model_id"], "model_id"),
        actor_id=g.actor_id,
        start_date=data.get("start_date"),
        total_amount=data.get("total_amount"),
    )
    return jsonify({"items": [r.to_dict() for r in rows], "count": len(rows)}), 201


@finance_bp.post("/schedules/<int:schedule_id>/pay")
@require_actor
@require_role("finance")
def pay_schedule_route(schedule_id: int):
    """
    Mark an installment paid and record its transaction.

    Request body (optional): {"payment_method": "...", "paid_date": "..."}
    """
    data = json_body()
    schedule, tx = schedule_service.mark_schedule_paid(
        schedule_id,
        g.actor_id,
        payment_method=data.get("payment_method"),
        paid_date=data.get("paid_date"),
    )
    return jsonify({"schedule": schedule.to_dict(), "transaction": tx.to_dict()})


@finance_bp.post("/schedules/flag-overdue")
@require_actor
@require_role("finance")
def flag_overdue_route():
    data = json_body()
    count = schedule_service.flag_overdue_schedules(data.get("as_of"))
    return jsonify({"flagged": count})
