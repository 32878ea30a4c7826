# Overview: Read-only reporting over orders, stock ledger and money ledger.

from __future__ import annotations

from collections import OrderedDict
from datetime import date
from decimal import Decimal

from sqlalchemy import func

from ..errors import NotFound, ValidationError
from ..extensions import db
from ..models import Customer, FinancialTransaction, Order, OrderLine, PaymentSchedule, Product, StockMovement, Supplier, Voucher
from ..money import ZERO, decimal_str, quantize_money, quantize_quantity
from ..time_utils import parse_iso_date, to_iso_date
from . import lifecycle_service as lifecycle
from .concurrency import run_with_retry

"""
Every reader here is read-only and goes through run_with_retry, so a reader
that trips over a concurrent writer's lock is retried transparently. Stock
figures are always derived from the ledger, never read from the cache.
"""

GROUP_BY_OPTIONS = ("day", "month")
TOP_N = 5


def _dec(value) -> Decimal:
    return Decimal(str(value or 0))


def _parse_range(date_from, date_to) -> tuple[date | None, date | None]:
    try:
        start = parse_iso_date(date_from) if date_from else None
        end = parse_iso_date(date_to) if date_to else None
    except ValueError:
        raise ValidationError("date_from/date_to must be ISO-8601 dates")
    if start and end and start > end:
        raise ValidationError("date_from must be on or before date_to")
    return start, end


def _derived_stock_rows(*filters):
    """(Product, derived_stock) for products matching filters."""
    stock_sq = (
        db.session.query(
            StockMovement.product_id.label("product_id"),
            func.sum(StockMovement.quantity).label("qty"),
        )
        .group_by(StockMovement.product_id)
        .subquery()
    )
    rows = (
        db.session.query(Product, stock_sq.c.qty)
        .outerjoin(stock_sq, stock_sq.c.product_id == Product.id)
        .filter(*filters)
        .order_by(Product.id.asc())
        .all()
    )
    return [(product, quantize_quantity(_dec(qty))) for product, qty in rows]


# =============================================================================
# Order statistics
# =============================================================================

def _order_statistics(order_type: str, date_from, date_to) -> dict:
    start, end = _parse_range(date_from, date_to)

    def _op():
        filters = [Order.order_type == order_type]
        if start:
            filters.append(Order.order_date >= start)
        if end:
            filters.append(Order.order_date <= end)

        by_status = {status: {"count": 0, "value": ZERO} for status in sorted(lifecycle.statuses_for(order_type))}
        rows = (
            db.session.query(Order.status, func.count(Order.id), func.sum(Order.total_amount))
            .filter(*filters)
            .group_by(Order.status)
            .all()
        )
        for status, count, value in rows:
            by_status.setdefault(status, {"count": 0, "value": ZERO})
            by_status[status] = {"count": int(count), "value": quantize_money(_dec(value))}

        counted = {s: v for s, v in by_status.items() if s != "cancelled"}
        order_count = sum(v["count"] for v in counted.values())
        total_value = sum((v["value"] for v in counted.values()), ZERO)
        average = quantize_money(total_value / order_count) if order_count else ZERO

        top_products = (
            db.session.query(
                OrderLine.product_id,
                Product.code,
                Product.name,
                func.sum(OrderLine.quantity).label("quantity"),
                func.sum(OrderLine.line_total).label("value"),
            )
            .join(Order, Order.id == OrderLine.order_id)
            .join(Product, Product.id == OrderLine.product_id)
            .filter(*filters, Order.status != "cancelled")
            .group_by(OrderLine.product_id, Product.code, Product.name)
            .order_by(func.sum(OrderLine.line_total).desc())
            .limit(TOP_N)
            .all()
        )

        return {
            "order_type": order_type,
            "date_from": to_iso_date(start),
            "date_to": to_iso_date(end),
            "total_orders": order_count,
            "cancelled_orders": by_status.get("cancelled", {}).get("count", 0),
            "total_value": decimal_str(total_value),
            "average_value": decimal_str(average),
            "by_status": {
                s: {"count": v["count"], "value": decimal_str(v["value"])} for s, v in by_status.items()
            },
            "top_products": [
                {
                    "product_id": pid,
                    "product_code": code,
                    "product_name": name,
                    "quantity": decimal_str(quantize_quantity(_dec(qty))),
                    "value": decimal_str(quantize_money(_dec(value))),
                }
                for pid, code, name, qty, value in top_products
            ],
        }

    return run_with_retry(_op)


def sales_statistics(date_from=None, date_to=None) -> dict:
    return _order_statistics(lifecycle.SALES_ORDER, date_from, date_to)


def purchase_statistics(date_from=None, date_to=None) -> dict:
    return _order_statistics(lifecycle.PURCHASE_ORDER, date_from, date_to)


# =============================================================================
# Stock readers
# =============================================================================

def low_stock_alerts() -> list[dict]:
    """Active, stock-tracked products at or below their minimum stock."""
    def _op():
        alerts = []
        for product, stock in _derived_stock_rows(Product.is_active.is_(True), Product.track_stock.is_(True)):
            minimum = quantize_quantity(_dec(product.minimum_stock))
            if stock <= minimum:
                alerts.append({
                    "product_id": product.id,
                    "product_code": product.code,
                    "product_name": product.name,
                    "unit": product.unit,
                    "current_stock": decimal_str(stock),
                    "minimum_stock": decimal_str(minimum),
                    "shortage": decimal_str(minimum - stock),
                })
        alerts.sort(key=lambda a: Decimal(a["shortage"]), reverse=True)
        return alerts

    return run_with_retry(_op)


def suggested_quantity(product: Product, stock: Decimal) -> Decimal:
    """reorder_quantity when configured, otherwise the gap to the reorder point."""
    reorder_quantity = _dec(product.reorder_quantity)
    if reorder_quantity > ZERO:
        return quantize_quantity(reorder_quantity)
    return quantize_quantity(_dec(product.reorder_point) - stock)


def reorder_candidates(supplier_id: int | None = None, product_ids=None) -> list[tuple[Product, Decimal, Decimal]]:
    """(product, derived stock, suggested quantity) for products at or below their reorder point."""
    filters = [Product.is_active.is_(True), Product.track_stock.is_(True)]
    if supplier_id is not None:
        filters.append(Product.default_supplier_id == supplier_id)
    if product_ids is not None:
        filters.append(Product.id.in_(list(product_ids)))

    candidates = []
    for product, stock in _derived_stock_rows(*filters):
        if stock <= quantize_quantity(_dec(product.reorder_point)):
            candidates.append((product, stock, suggested_quantity(product, stock)))
    candidates.sort(key=lambda c: _dec(c[0].reorder_point) - c[1], reverse=True)
    return candidates


def reorder_suggestions() -> list[dict]:
    def _op():
        suggestions = []
        for product, stock, quantity in reorder_candidates():
            supplier = db.session.get(Supplier, product.default_supplier_id) if product.default_supplier_id else None
            suggestions.append({
                "product_id": product.id,
                "product_code": product.code,
                "product_name": product.name,
                "unit": product.unit,
                "current_stock": decimal_str(stock),
                "reorder_point": decimal_str(product.reorder_point),
                "reorder_quantity": decimal_str(product.reorder_quantity),
                "quantity_needed": decimal_str(quantize_quantity(_dec(product.reorder_point) - stock)),
                "suggested_order_quantity": decimal_str(quantity),
                "supplier_id": supplier.id if supplier else None,
                "supplier_name": supplier.name if supplier else None,
            })
        return suggestions

    return run_with_retry(_op)


def last_receipt_prices(product_ids=None) -> dict[int, Decimal]:
    """product_id -> unit price of its most recent priced purchase receipt."""
    latest_sq = (
        db.session.query(func.max(StockMovement.id).label("movement_id"))
        .filter(
            StockMovement.movement_type == "purchase_receipt",
            StockMovement.unit_price.isnot(None),
        )
        .group_by(StockMovement.product_id)
    )
    if product_ids is not None:
        latest_sq = latest_sq.filter(StockMovement.product_id.in_(list(product_ids)))
    latest_sq = latest_sq.subquery()

    rows = (
        db.session.query(StockMovement.product_id, StockMovement.unit_price)
        .join(latest_sq, latest_sq.c.movement_id == StockMovement.id)
        .all()
    )
    return {product_id: quantize_money(_dec(price)) for product_id, price in rows}


def inventory_valuation() -> dict:
    """
    Value of stock on hand per product, plus the total.

    Quantity is the ledger-derived stock. Cost is the price of the last
    purchase receipt, falling back to the product's unit_price when the
    product was never received. Products with no positive stock are left out.
    """
    def _op():
        receipt_prices = last_receipt_prices()
        items = []
        total = ZERO
        for product, stock in _derived_stock_rows(Product.track_stock.is_(True)):
            if stock <= ZERO:
                continue
            if product.id in receipt_prices:
                unit_cost, cost_source = receipt_prices[product.id], "last_receipt"
            else:
                unit_cost, cost_source = quantize_money(_dec(product.unit_price)), "unit_price"
            value = quantize_money(stock * unit_cost)
            total += value
            items.append({
                "product_id": product.id,
                "product_code": product.code,
                "product_name": product.name,
                "unit": product.unit,
                "quantity": decimal_str(stock),
                "unit_cost": decimal_str(unit_cost),
                "cost_source": cost_source,
                "total_value": decimal_str(value),
            })
        items.sort(key=lambda i: Decimal(i["total_value"]), reverse=True)
        return {"items": items, "count": len(items), "total_value": decimal_str(total)}

    return run_with_retry(_op)


# =============================================================================
# Money readers
# =============================================================================

def _period_key(d: date, group_by: str) -> str:
    if group_by == "month":
        return f"{d.year:04d}-{d.month:02d}"
    return d.isoformat()


def cash_flow(start=None, end=None, group_by: str = "day") -> dict:
    """
    Income, expense, net and cumulative balance per day or month.

    The cumulative balance starts from the net of everything before `start`.
    """
    if group_by not in GROUP_BY_OPTIONS:
        raise ValidationError(f"group_by must be one of {', '.join(GROUP_BY_OPTIONS)}")
    start_d, end_d = _parse_range(start, end)

    def _op():
        opening = ZERO
        if start_d:
            before = (
                db.session.query(FinancialTransaction.transaction_type, func.sum(FinancialTransaction.amount))
                .filter(FinancialTransaction.transaction_date < start_d)
                .group_by(FinancialTransaction.transaction_type)
                .all()
            )
            for tx_type, amount in before:
                opening += _dec(amount) if tx_type == "income" else -_dec(amount)

        q = db.session.query(
            FinancialTransaction.transaction_date,
            FinancialTransaction.transaction_type,
            func.sum(FinancialTransaction.amount),
        )
        if start_d:
            q = q.filter(FinancialTransaction.transaction_date >= start_d)
        if end_d:
            q = q.filter(FinancialTransaction.transaction_date <= end_d)
        rows = (
            q.group_by(FinancialTransaction.transaction_date, FinancialTransaction.transaction_type)
            .order_by(FinancialTransaction.transaction_date.asc())
            .all()
        )

        buckets: OrderedDict[str, dict] = OrderedDict()
        for tx_date, tx_type, amount in rows:
            key = _period_key(tx_date, group_by)
            bucket = buckets.setdefault(key, {"income": ZERO, "expense": ZERO})
            bucket[tx_type] = bucket.get(tx_type, ZERO) + _dec(amount)

        balance = quantize_money(opening)
        periods = []
        for key, bucket in buckets.items():
            income = quantize_money(bucket["income"])
            expense = quantize_money(bucket["expense"])
            net = income - expense
            balance += net
            periods.append({
                "period": key,
                "income": decimal_str(income),
                "expense": decimal_str(expense),
                "net": decimal_str(net),
                "cumulative_balance": decimal_str(balance),
            })

        return {
            "group_by": group_by,
            "start": to_iso_date(start_d),
            "end": to_iso_date(end_d),
            "opening_balance": decimal_str(quantize_money(opening)),
            "closing_balance": decimal_str(balance),
            "periods": periods,
        }

    return run_with_retry(_op)


def balances() -> dict:
    """Receivable, payable and cash position, all derived by aggregation."""
    def _op():
        pending = dict(
            db.session.query(Voucher.voucher_type, func.sum(Voucher.amount))
            .filter(Voucher.status == "pending")
            .group_by(Voucher.voucher_type)
            .all()
        )
        totals = dict(
            db.session.query(FinancialTransaction.transaction_type, func.sum(FinancialTransaction.amount))
            .group_by(FinancialTransaction.transaction_type)
            .all()
        )
        scheduled = dict(
            db.session.query(Order.order_type, func.sum(PaymentSchedule.amount))
            .join(Order, Order.id == PaymentSchedule.order_id)
            .filter(PaymentSchedule.status.in_(("pending", "overdue")))
            .group_by(Order.order_type)
            .all()
        )

        income = quantize_money(_dec(totals.get("income")))
        expense = quantize_money(_dec(totals.get("expense")))
        return {
            "receivable": decimal_str(quantize_money(_dec(pending.get("receipt")))),
            "payable": decimal_str(quantize_money(_dec(pending.get("payment")))),
            "scheduled_receivable": decimal_str(quantize_money(_dec(scheduled.get(lifecycle.SALES_ORDER)))),
            "scheduled_payable": decimal_str(quantize_money(_dec(scheduled.get(lifecycle.PURCHASE_ORDER)))),
            "total_income": decimal_str(income),
            "total_expense": decimal_str(expense),
            "cash": decimal_str(income - expense),
        }

    return run_with_retry(_op)


def counterparty_statement(customer_id: int | None = None, supplier_id: int | None = None,
                           date_from=None, date_to=None) -> dict:
    """
    Account statement for one customer or supplier with a running balance.

    Charges are the counterparty's non-draft, non-cancelled orders (sales
    orders for a customer, purchase orders for a supplier), dated by
    order_date. Payments are money-ledger rows carrying the counterparty:
    income settles a customer and expense settles a supplier. Rows in the
    other direction (reversals, refunds) raise the balance again.

    The balance is what the counterparty owes us (customer) or what we owe
    them (supplier). Activity before date_from forms the opening balance.
    Within a day, orders come before payments.
    """
    if (customer_id is None) == (supplier_id is None):
        raise ValidationError("exactly one of customer_id or supplier_id is required")
    start, end = _parse_range(date_from, date_to)

    if customer_id is not None:
        party_model, party_id, order_type = Customer, customer_id, lifecycle.SALES_ORDER
        order_party, tx_party, settling_type = Order.customer_id, FinancialTransaction.customer_id, "income"
    else:
        party_model, party_id, order_type = Supplier, supplier_id, lifecycle.PURCHASE_ORDER
        order_party, tx_party, settling_type = Order.supplier_id, FinancialTransaction.supplier_id, "expense"

    def _op():
        party = db.session.get(party_model, party_id)
        if party is None:
            raise NotFound(f"{party_model.__name__} {party_id} not found")

        entries = []
        orders = (
            db.session.query(Order)
            .filter(
                Order.order_type == order_type,
                order_party == party_id,
                Order.status.notin_(("draft", "cancelled")),
            )
            .all()
        )
        for order in orders:
            entries.append((order.order_date, 0, order.id, {
                "entry_type": "order",
                "document_id": order.id,
                "reference": order.order_number,
                "status": order.status,
                "charge": quantize_money(_dec(order.total_amount)),
                "payment": ZERO,
            }))

        transactions = db.session.query(FinancialTransaction).filter(tx_party == party_id).all()
        for tx in transactions:
            amount = quantize_money(_dec(tx.amount))
            settles = tx.transaction_type == settling_type
            entries.append((tx.transaction_date, 1, tx.id, {
                "entry_type": "transaction",
                "document_id": tx.id,
                "reference": tx.reference_number,
                "status": tx.transaction_type,
                "charge": ZERO if settles else amount,
                "payment": amount if settles else ZERO,
            }))

        entries.sort(key=lambda e: e[:3])

        opening = ZERO
        balance = None
        lines = []
        for entry_date, _kind, _id, entry in entries:
            if end and entry_date > end:
                continue
            delta = entry["charge"] - entry["payment"]
            if start and entry_date < start:
                opening += delta
                continue
            if balance is None:
                balance = opening
            balance += delta
            lines.append({
                **entry,
                "date": to_iso_date(entry_date),
                "charge": decimal_str(entry["charge"]),
                "payment": decimal_str(entry["payment"]),
                "running_balance": decimal_str(balance),
            })

        return {
            "counterparty_type": "customer" if customer_id is not None else "supplier",
            "counterparty_id": party_id,
            "counterparty_name": party.name,
            "date_from": to_iso_date(start),
            "date_to": to_iso_date(end),
            "opening_balance": decimal_str(opening),
            "closing_balance": decimal_str(opening if balance is None else balance),
            "entries": lines,
        }

    return run_with_retry(_op)
