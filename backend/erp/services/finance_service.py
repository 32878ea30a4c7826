# Overview: Financial transaction recorder, vouchers and reversals.

"""
Finance Service

DESIGN PRINCIPLES:
- financial_transactions is an append-only ledger of money movement
- Vouchers are pending obligations, settled exactly once
- Settlement and its transaction are written in one unit
- Corrections are reversing transactions, never edits
- Balances are always derived by aggregation (see reporting_service)
"""

from __future__ import annotations

import logging
from decimal import Decimal

from ..errors import AlreadySettled, NotFound, ValidationError
from ..extensions import db
from ..models import Customer, FinancialTransaction, Order, Supplier, Voucher
from ..money import ZERO, quantize_money, to_decimal
from ..time_utils import parse_iso_date, today, utcnow
from ..validation import coerce_int
from .concurrency import lock_for_update, run_atomic, run_with_retry
from .document_service import PAYMENT_VOUCHER, RECEIPT_VOUCHER, next_document_number

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

TX_INCOME = "income"
TX_EXPENSE = "expense"
VALID_TRANSACTION_TYPES = [TX_INCOME, TX_EXPENSE]

VOUCHER_PAYMENT = "payment"
VOUCHER_RECEIPT = "receipt"
VALID_VOUCHER_TYPES = [VOUCHER_PAYMENT, VOUCHER_RECEIPT]

VOUCHER_PENDING = "pending"
VOUCHER_SETTLED = "settled"

VALID_PAYMENT_METHODS = ["cash", "bank_transfer", "card", "check", "other"]

MAX_PAGE_SIZE = 500


def transaction_type_for_voucher(voucher_type: str) -> str:
    """payment vouchers are money out; receipts (and anything else) money in."""
    return TX_EXPENSE if voucher_type == VOUCHER_PAYMENT else TX_INCOME


def _positive_amount(value, field: str = "amount") -> Decimal:
    try:
        amount = quantize_money(to_decimal(value, field))
    except ValueError as exc:
        raise ValidationError(str(exc))
    if amount <= ZERO:
        raise ValidationError(f"{field} must be > 0")
    return amount


def _parse_date(value, field: str):
    if value is None:
        return today()
    try:
        parsed = parse_iso_date(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date")
    return parsed or today()


def _check_payment_method(method: str | None) -> str | None:
    if method is None:
        return None
    method = str(method).strip().lower()
    if method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(VALID_PAYMENT_METHODS)}")
    return method


def _optional_id(payload: dict, field: str) -> int | None:
    value = payload.get(field)
    return None if value is None else coerce_int(value, field)


def _check_references(*, customer_id=None, supplier_id=None, voucher_id=None, order_id=None) -> None:
    for model, value, label in (
        (Customer, customer_id, "Customer"),
        (Supplier, supplier_id, "Supplier"),
        (Voucher, voucher_id, "Voucher"),
        (Order, order_id, "Order"),
    ):
        if value is not None and db.session.get(model, value) is None:
            raise NotFound(f"{label} {value} not found")


# =============================================================================
# TRANSACTIONS
# =============================================================================

def record_transaction_inner(
    *,
    transaction_type: str,
    category: str,
    amount: Decimal,
    actor_id: int,
    transaction_date=None,
    subcategory: str | None = None,
    customer_id: int | None = None,
    supplier_id: int | None = None,
    voucher_id: int | None = None,
    order_id: int | None = None,
    payment_schedule_id: int | None = None,
    reverses_transaction_id: int | None = None,
    payment_method: str | None = None,
    reference_number: str | None = None,
    description: str | None = None,
    tags: list[str] | None = None,
) -> FinancialTransaction:
    """Core append without commit. Validates required fields and references."""
    if transaction_type not in VALID_TRANSACTION_TYPES:
        raise ValidationError(f"transaction_type must be one of {', '.join(VALID_TRANSACTION_TYPES)}")
    if not category or not str(category).strip():
        raise ValidationError("category is required")
    if tags is not None and (not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)):
        raise ValidationError("tags must be a list of strings")
    _check_references(customer_id=customer_id, supplier_id=supplier_id, voucher_id=voucher_id, order_id=order_id)

    tx = FinancialTransaction(
        transaction_type=transaction_type,
        category=str(category).strip(),
        subcategory=subcategory,
        amount=_positive_amount(amount),
        transaction_date=_parse_date(transaction_date, "transaction_date"),
        customer_id=customer_id,
        supplier_id=supplier_id,
        voucher_id=voucher_id,
        order_id=order_id,
        payment_schedule_id=payment_schedule_id,
        reverses_transaction_id=reverses_transaction_id,
        payment_method=_check_payment_method(payment_method),
        reference_number=reference_number,
        description=description,
        tags=tags,
        created_by=actor_id,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def record_transaction(payload: dict, actor_id: int) -> FinancialTransaction:
    """
    Append one financial transaction.

    Pure append: no validation beyond required fields and the existence of
    referenced customer/supplier/voucher/order.
    """
    payload = payload or {}
    missing = [f for f in ("transaction_type", "category", "amount") if payload.get(f) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", {"missing": missing})

    def _op():
        return record_transaction_inner(
            transaction_type=payload.get("transaction_type"),
            category=payload.get("category"),
            subcategory=payload.get("subcategory"),
            amount=payload.get("amount"),
            transaction_date=payload.get("transaction_date"),
            customer_id=_optional_id(payload, "customer_id"),
            supplier_id=_optional_id(payload, "supplier_id"),
            voucher_id=_optional_id(payload, "voucher_id"),
            order_id=_optional_id(payload, "order_id"),
            payment_method=payload.get("payment_method"),
            reference_number=payload.get("reference_number"),
            description=payload.get("description"),
            tags=payload.get("tags"),
            actor_id=actor_id,
        )

    tx = run_atomic(_op)
    logger.info("Recorded %s transaction %s amount=%s", tx.transaction_type, tx.id, tx.amount)
    return tx


def reverse_transaction(transaction_id: int, actor_id: int, reason: str | None = None) -> FinancialTransaction:
    """
    Append an offsetting transaction (opposite type, same amount).

    A transaction can be reversed at most once, and a reversal cannot itself
    be reversed.
    """
    def _op():
        original = lock_for_update(
            db.session.query(FinancialTransaction).filter_by(id=transaction_id)
        ).first()
        if original is None:
            raise NotFound(f"Transaction {transaction_id} not found")
        if original.reverses_transaction_id is not None:
            raise AlreadySettled(f"Transaction {transaction_id} is itself a reversal")
        existing = db.session.query(FinancialTransaction).filter_by(reverses_transaction_id=original.id).first()
        if existing is not None:
            raise AlreadySettled(
                f"Transaction {transaction_id} was already reversed",
                {"reversal_id": existing.id},
            )

        return record_transaction_inner(
            transaction_type=TX_EXPENSE if original.transaction_type == TX_INCOME else TX_INCOME,
            category=original.category,
            subcategory=original.subcategory,
            amount=Decimal(original.amount),
            transaction_date=today(),
            customer_id=original.customer_id,
            supplier_id=original.supplier_id,
            voucher_id=original.voucher_id,
            order_id=original.order_id,
            payment_method=original.payment_method,
            reverses_transaction_id=original.id,
            description=reason or f"Reversal of transaction {original.id}",
            tags=["reversal"],
            actor_id=actor_id,
        )

    reversal = run_atomic(_op)
    logger.info("Reversed transaction %s with %s", transaction_id, reversal.id)
    return reversal


def list_transactions(
    *,
    transaction_type: str | None = None,
    category: str | None = None,
    date_from=None,
    date_to=None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[FinancialTransaction], int]:
    if transaction_type and transaction_type not in VALID_TRANSACTION_TYPES:
        raise ValidationError(f"transaction_type must be one of {', '.join(VALID_TRANSACTION_TYPES)}")

    def _op():
        q = db.session.query(FinancialTransaction)
        if transaction_type:
            q = q.filter(FinancialTransaction.transaction_type == transaction_type)
        if category:
            q = q.filter(FinancialTransaction.category == category)
        if date_from is not None:
            q = q.filter(FinancialTransaction.transaction_date >= date_from)
        if date_to is not None:
            q = q.filter(FinancialTransaction.transaction_date <= date_to)
        total = q.count()
        rows = (
            q.order_by(FinancialTransaction.transaction_date.desc(), FinancialTransaction.id.desc())
            .limit(max(1, min(limit, MAX_PAGE_SIZE)))
            .offset(max(0, offset))
            .all()
        )
        return rows, total

    return run_with_retry(_op)


# =============================================================================
# VOUCHERS
# =============================================================================

def create_voucher(payload: dict, actor_id: int) -> Voucher:
    payload = payload or {}
    voucher_type = payload.get("voucher_type")
    if voucher_type not in VALID_VOUCHER_TYPES:
        raise ValidationError(f"voucher_type must be one of {', '.join(VALID_VOUCHER_TYPES)}")
    amount = _positive_amount(payload.get("amount"))
    voucher_date = _parse_date(payload.get("voucher_date"), "voucher_date")
    due_date = _parse_date(payload["due_date"], "due_date") if payload.get("due_date") else None
    if _optional_id(payload, "customer_id") is None and _optional_id(payload, "supplier_id") is None:
        raise ValidationError("customer_id or supplier_id is required")

    def _op():
        _check_references(
            customer_id=_optional_id(payload, "customer_id"),
            supplier_id=_optional_id(payload, "supplier_id"),
            order_id=_optional_id(payload, "order_id"),
        )
        document_type = PAYMENT_VOUCHER if voucher_type == VOUCHER_PAYMENT else RECEIPT_VOUCHER
        voucher = Voucher(
            voucher_number=next_document_number(document_type=document_type),
            voucher_type=voucher_type,
            customer_id=_optional_id(payload, "customer_id"),
            supplier_id=_optional_id(payload, "supplier_id"),
            order_id=_optional_id(payload, "order_id"),
            amount=amount,
            voucher_date=voucher_date,
            due_date=due_date,
            category=payload.get("category"),
            description=payload.get("description"),
            status=VOUCHER_PENDING,
            created_by=actor_id,
        )
        db.session.add(voucher)
        db.session.flush()
        return voucher

    voucher = run_atomic(_op)
    logger.info("Created %s voucher %s amount=%s", voucher_type, voucher.voucher_number, amount)
    return voucher


def settle_voucher(
    voucher_id: int,
    actor_id: int,
    *,
    settlement_amount=None,
    settlement_date=None,
    settlement_method: str | None = None,
) -> tuple[Voucher, FinancialTransaction]:
    """
    Settle a pending voucher and append its financial transaction, atomically.

    Raises:
        NotFound: voucher does not exist
        AlreadySettled: voucher is not pending (no transaction is written)
    """
    method = _check_payment_method(settlement_method)
    settled_on = _parse_date(settlement_date, "settlement_date")

    def _op():
        voucher = lock_for_update(db.session.query(Voucher).filter_by(id=voucher_id)).first()
        if voucher is None:
            raise NotFound(f"Voucher {voucher_id} not found")
        if voucher.status != VOUCHER_PENDING:
            raise AlreadySettled(
                f"Voucher {voucher.voucher_number} is already {voucher.status}",
                {"status": voucher.status},
            )

        amount = Decimal(voucher.amount) if settlement_amount is None else _positive_amount(
            settlement_amount, "settlement_amount"
        )

        voucher.status = VOUCHER_SETTLED
        voucher.settlement_date = settled_on
        voucher.settlement_amount = amount
        voucher.settlement_method = method
        voucher.settled_by = actor_id
        voucher.settled_at = utcnow()

        tx = record_transaction_inner(
            transaction_type=transaction_type_for_voucher(voucher.voucher_type),
            category=voucher.category or f"voucher_{voucher.voucher_type}",
            amount=amount,
            transaction_date=settled_on,
            customer_id=voucher.customer_id,
            supplier_id=voucher.supplier_id,
            voucher_id=voucher.id,
            order_id=voucher.order_id,
            payment_method=method,
            reference_number=voucher.voucher_number,
            description=voucher.description,
            actor_id=actor_id,
        )
        return voucher, tx

    voucher, tx = run_atomic(_op)
    logger.info("Settled voucher %s with transaction %s", voucher.voucher_number, tx.id)
    return voucher, tx


def get_voucher(voucher_id: int) -> Voucher:
    voucher = db.session.get(Voucher, voucher_id)
    if voucher is None:
        raise NotFound(f"Voucher {voucher_id} not found")
    return voucher


def list_vouchers(
    *,
    voucher_type: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Voucher], int]:
    def _op():
        q = db.session.query(Voucher)
        if voucher_type:
            q = q.filter(Voucher.voucher_type == voucher_type)
        if status:
            q = q.filter(Voucher.status == status)
        total = q.count()
        rows = (
            q.order_by(Voucher.voucher_date.desc(), Voucher.id.desc())
            .limit(max(1, min(limit, MAX_PAGE_SIZE)))
            .offset(max(0, offset))
            .all()
        )
        return rows, total

    return run_with_retry(_op)
