# Overview: Payment schedule models and installment generation.

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal

from flask import current_app

from ..errors import AlreadySettled, NotFound, ValidationError
from ..extensions import db
from ..models import FinancialTransaction, Order, PaymentSchedule, PaymentScheduleModel, PaymentScheduleTerm
from ..money import HUNDRED, ZERO, quantize_money, to_decimal
from ..time_utils import parse_iso_date, today
from ..validation import coerce_int
from . import lifecycle_service as lifecycle
from .concurrency import lock_for_update, run_atomic, run_with_retry
from .finance_service import TX_EXPENSE, TX_INCOME, record_transaction_inner

logger = logging.getLogger(__name__)

SCHEDULE_PENDING = "pending"
SCHEDULE_PAID = "paid"
SCHEDULE_OVERDUE = "overdue"

SCHEDULABLE_ORDER_TYPES = (lifecycle.SALES_ORDER, lifecycle.PURCHASE_ORDER)
UNSCHEDULABLE_STATUSES = frozenset({"cancelled"})


def _parse_date(value, field: str):
    try:
        return parse_iso_date(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date")


def normalize_terms(raw_terms) -> list[dict]:
    """
    Validate a list of {day_offset, percentage, description} records.

    day_offset >= 0, 0 < percentage <= 100. Order is preserved.
    """
    if not isinstance(raw_terms, list) or not raw_terms:
        raise ValidationError("terms must be a non-empty list")

    terms = []
    for index, raw in enumerate(raw_terms):
        if not isinstance(raw, dict):
            raise ValidationError("each term must be an object", {"term": index + 1})
        raw_offset = raw.get("day_offset", raw.get("days"))
        if raw_offset is None:
            raise ValidationError("day_offset is required", {"term": index + 1})
        day_offset = coerce_int(raw_offset, "day_offset")
        if day_offset < 0:
            raise ValidationError("day_offset must be an integer >= 0", {"term": index + 1})
        try:
            percentage = to_decimal(raw.get("percentage"), "percentage")
        except ValueError as exc:
            raise ValidationError(str(exc), {"term": index + 1})
        if percentage <= ZERO or percentage > HUNDRED:
            raise ValidationError("percentage must be > 0 and <= 100", {"term": index + 1})
        terms.append({
            "day_offset": day_offset,
            "percentage": percentage,
            "description": raw.get("description"),
        })
    return terms


def split_amount(total_amount: Decimal, percentages: list[Decimal]) -> list[Decimal]:
    """
    total x pct / 100 per term, rounded to the currency quantum.

    When the percentages total exactly 100 the last installment absorbs the
    rounding remainder, so installments always add up to the total.
    """
    amounts = [quantize_money(total_amount * pct / HUNDRED) for pct in percentages]
    if amounts and sum(percentages, ZERO) == HUNDRED:
        amounts[-1] = total_amount - sum(amounts[:-1], ZERO)
    return amounts


# =============================================================================
# Models
# =============================================================================

def create_schedule_model(
    *,
    name: str,
    terms,
    actor_id: int,
    description: str | None = None,
    is_default: bool = False,
) -> PaymentScheduleModel:
    if not name or not str(name).strip():
        raise ValidationError("name is required")
    normalized = normalize_terms(terms)

    allocated = sum((t["percentage"] for t in normalized), ZERO)
    if current_app.config.get("PAYMENT_TERMS_REQUIRE_FULL_ALLOCATION", True) and allocated != HUNDRED:
        raise ValidationError(
            "term percentages must total 100",
            {"total_percentage": format(allocated, "f")},
        )

    def _op():
        if is_default:
            for other in db.session.query(PaymentScheduleModel).filter_by(is_default=True).all():
                other.is_default = False
        model = PaymentScheduleModel(
            name=str(name).strip(),
            description=description,
            is_default=bool(is_default),
            created_by=actor_id,
        )
        for sequence, term in enumerate(normalized, start=1):
            model.terms.append(PaymentScheduleTerm(sequence=sequence, **term))
        db.session.add(model)
        db.session.flush()
        return model

    model = run_atomic(_op)
    logger.info("Created payment schedule model %r with %d terms", model.name, len(normalized))
    return model


def list_schedule_models(include_inactive: bool = False) -> list[PaymentScheduleModel]:
    def _op():
        q = db.session.query(PaymentScheduleModel)
        if not include_inactive:
            q = q.filter(PaymentScheduleModel.is_active.is_(True))
        return q.order_by(PaymentScheduleModel.is_default.desc(), PaymentScheduleModel.name.asc()).all()

    return run_with_retry(_op)


# =============================================================================
# Schedules
# =============================================================================

def apply_schedule(
    *,
    order_id: int,
    model_id: int,
    actor_id: int,
    start_date=None,
    total_amount=None,
) -> list[PaymentSchedule]:
    """
    Generate one pending installment per model term for an order, atomically.

    dueDate = start_date + term.day_offset, amount = total x pct / 100.
    start_date defaults to the order date and total_amount to the order's
    grand total. An order can be scheduled only once.
    """
    start = _parse_date(start_date, "start_date") if start_date is not None else None
    total = None
    if total_amount is not None:
        try:
            total = quantize_money(to_decimal(total_amount, "total_amount"))
        except ValueError as exc:
            raise ValidationError(str(exc))
        if total <= ZERO:
            raise ValidationError("total_amount must be > 0")

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        if order.order_type not in SCHEDULABLE_ORDER_TYPES:
            raise ValidationError(f"{order.order_type} orders cannot carry payment schedules")
        if order.status in UNSCHEDULABLE_STATUSES:
            raise AlreadySettled(f"Order {order.order_number} is {order.status}")
        if order.payment_schedules:
            raise AlreadySettled(f"Order {order.order_number} already has a payment schedule")

        model = db.session.get(PaymentScheduleModel, model_id)
        if model is None:
            raise NotFound(f"Payment schedule model {model_id} not found")
        if not model.terms:
            raise ValidationError(f"Payment schedule model {model.name!r} has no terms")

        base_date = start or order.order_date or today()
        amount_total = total if total is not None else Decimal(order.total_amount)
        amounts = split_amount(amount_total, [Decimal(t.percentage) for t in model.terms])

        rows = []
        for number, (term, amount) in enumerate(zip(model.terms, amounts), start=1):
            row = PaymentSchedule(
                order_id=order.id,
                model_id=model.id,
                installment_number=number,
                due_date=base_date + timedelta(days=term.day_offset),
                amount=amount,
                percentage=term.percentage,
                description=term.description,
                status=SCHEDULE_PENDING,
                created_by=actor_id,
            )
            db.session.add(row)
            rows.append(row)
        db.session.flush()
        return rows

    rows = run_atomic(_op)
    logger.info("Applied payment schedule model %s to order %s (%d installments)", model_id, order_id, len(rows))
    return rows


def mark_schedule_paid(
    schedule_id: int,
    actor_id: int,
    *,
    payment_method: str | None = None,
    paid_date=None,
) -> tuple[PaymentSchedule, FinancialTransaction]:
    """
    pending/overdue -> paid, appending the matching financial transaction.

    Sales orders produce income, purchase orders expense.
    """
    paid_on = (_parse_date(paid_date, "paid_date") if paid_date is not None else None) or today()

    def _op():
        schedule = lock_for_update(db.session.query(PaymentSchedule).filter_by(id=schedule_id)).first()
        if schedule is None:
            raise NotFound(f"Payment schedule {schedule_id} not found")
        if schedule.status == SCHEDULE_PAID:
            raise AlreadySettled(f"Payment schedule {schedule_id} is already paid")

        order = schedule.order
        is_sale = order.order_type == lifecycle.SALES_ORDER
        tx = record_transaction_inner(
            transaction_type=TX_INCOME if is_sale else TX_EXPENSE,
            category="sales" if is_sale else "purchases",
            subcategory="installment",
            amount=Decimal(schedule.amount),
            transaction_date=paid_on,
            customer_id=order.customer_id if is_sale else None,
            supplier_id=None if is_sale else order.supplier_id,
            order_id=order.id,
            payment_schedule_id=schedule.id,
            payment_method=payment_method,
            reference_number=order.order_number,
            description=schedule.description or f"Installment {schedule.installment_number} of {order.order_number}",
            actor_id=actor_id,
        )
        schedule.status = SCHEDULE_PAID
        schedule.paid_date = paid_on
        schedule.paid_by = actor_id
        schedule.payment_method = tx.payment_method
        db.session.flush()
        return schedule, tx

    schedule, tx = run_atomic(_op)
    logger.info("Payment schedule %s paid with transaction %s", schedule_id, tx.id)
    return schedule, tx


def flag_overdue_schedules(as_of=None) -> int:
    """Move pending installments due before `as_of` (default today) to overdue."""
    cutoff = (_parse_date(as_of, "as_of") if as_of is not None else None) or today()

    def _op():
        rows = lock_for_update(
            db.session.query(PaymentSchedule).filter(
                PaymentSchedule.status == SCHEDULE_PENDING,
                PaymentSchedule.due_date < cutoff,
            )
        ).all()
        for row in rows:
            row.status = SCHEDULE_OVERDUE
        return len(rows)

    count = run_atomic(_op)
    if count:
        logger.info("Flagged %d payment schedules overdue as of %s", count, cutoff)
    return count


def list_schedules(*, order_id: int | None = None, status: str | None = None) -> list[PaymentSchedule]:
    def _op():
        q = db.session.query(PaymentSchedule)
        if order_id is not None:
            q = q.filter(PaymentSchedule.order_id == order_id)
        if status:
            q = q.filter(PaymentSchedule.status == status)
        return q.order_by(PaymentSchedule.due_date.asc(), PaymentSchedule.id.asc()).all()

    return run_with_retry(_op)
