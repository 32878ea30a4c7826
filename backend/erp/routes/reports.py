# backend/erp/routes/reports.py
"""
Report Routes

Read-only aggregations. All require an actor with viewer or higher; money
reports (cash flow, balances, inventory valuation, statements) require the
finance role or manager and above.
"""

from flask import Blueprint, jsonify, request

from ..decorators import require_actor, require_role
from ..services import reporting_service

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


@reports_bp.get("/sales")
@require_actor
@require_role("viewer")
def sales_report_route():
    """Query parameters: date_from, date_to (ISO-8601 dates)."""
    return jsonify(reporting_service.sales_statistics(
        request.args.get("date_from"), request.args.get("date_to")
    ))


@reports_bp.get("/purchases")
@require_actor
@require_role("viewer")
def purchases_report_route():
    """Query parameters: date_from, date_to (ISO-8601 dates)."""
    return jsonify(reporting_service.purchase_statistics(
        request.args.get("date_from"), request.args.get("date_to")
    ))


@reports_bp.get("/low-stock")
@require_actor
@require_role("viewer")
def low_stock_route():
    alerts = reporting_service.low_stock_alerts()
    return jsonify({"items": alerts, "count": len(alerts)})


@reports_bp.get("/reorder")
@require_actor
@require_role("viewer")
def reorder_route():
    suggestions = reporting_service.reorder_suggestions()
    return jsonify({"items": suggestions, "count": len(suggestions)})


@reports_bp.get("/cash-flow")
@require_actor
@require_role("finance")
def cash_flow_route():
    """
    Income, expense and running balance per period.

    Query parameters:
    - start / end: ISO-8601 dates
    - group_by: day (default) | month
    """
    return jsonify(reporting_service.cash_flow(
        request.args.get("start"),
        request.args.get("end"),
        request.args.get("group_by", "day"),
    ))


@reports_bp.get("/balances")
@require_actor
@require_role("finance")
def balances_route():
    return jsonify(reporting_service.balances())


@reports_bp.get("/inventory-valuation")
@require_actor
@require_role("finance")
def inventory_valuation_route():
    return jsonify(reporting_service.inventory_valuation())


@reports_bp.get("/statement")
@require_actor
@require_role("finance")
def statement_route():
    """
    Customer or supplier account statement with a running balance.

    Query parameters:
    - customer_id or supplier_id: exactly one
    - date_from / date_to: ISO-8601 dates
    """
    return jsonify(reporting_service.counterparty_statement(
        customer_id=request.args.get("customer_id", type=int),
        supplier_id=request.args.get("supplier_id", type=int),
        date_from=request.args.get("date_from"),
        date_to=request.args.get("date_to"),
    ))
