"""Financial transactions, reversals and vouchers."""

from decimal import Decimal

import pytest

from erp.errors import AlreadySettled, NotFound, ValidationError
from erp.models import AppendOnlyViolation, FinancialTransaction, Voucher
from erp.services import finance_service
from conftest import ACTOR_ID


def test_record_transaction(db_session, customer):
    tx = finance_service.record_transaction(
        {
            "transaction_type": "income",
            "category": "sales",
            "amount": "120.50",
            "transaction_date": "2025-01-10",
            "customer_id": customer.id,
            "payment_method": "cash",
            "tags": ["walk-in"],
        },
        ACTOR_ID,
    )
    assert tx.id is not None
    assert Decimal(tx.amount) == Decimal("120.50")
    assert tx.to_dict()["transaction_date"] == "2025-01-10"
    assert tx.created_by == ACTOR_ID


@pytest.mark.parametrize("payload", [
    {"category": "sales", "amount": "1"},
    {"transaction_type": "gift", "category": "sales", "amount": "1"},
    {"transaction_type": "income", "category": "sales", "amount": "0"},
    {"transaction_type": "income", "category": "sales", "amount": "-5"},
    {"transaction_type": "income", "category": "sales", "amount": "1", "payment_method": "barter"},
])
def test_record_transaction_validation(db_session, payload):
    with pytest.raises(ValidationError):
        finance_service.record_transaction(payload, ACTOR_ID)
    assert db_session.query(FinancialTransaction).count() == 0


def test_record_transaction_unknown_reference(db_session):
    with pytest.raises(NotFound):
        finance_service.record_transaction(
            {"transaction_type": "expense", "category": "rent", "amount": "10", "supplier_id": 777},
            ACTOR_ID,
        )


def test_transactions_are_append_only(db_session):
    tx = finance_service.record_transaction(
        {"transaction_type": "expense", "category": "rent", "amount": "800"}, ACTOR_ID
    )
    tx.amount = Decimal("1")
    with pytest.raises(AppendOnlyViolation):
        db_session.flush()
    db_session.rollback()


def test_reverse_transaction_once(db_session):
    tx = finance_service.record_transaction(
        {"transaction_type": "income", "category": "sales", "amount": "50"}, ACTOR_ID
    )
    reversal = finance_service.reverse_transaction(tx.id, ACTOR_ID, "duplicate entry")

    assert reversal.transaction_type == "expense"
    assert Decimal(reversal.amount) == Decimal("50.00")
    assert reversal.reverses_transaction_id == tx.id
    assert reversal.description == "duplicate entry"

    with pytest.raises(AlreadySettled):
        finance_service.reverse_transaction(tx.id, ACTOR_ID)
    with pytest.raises(AlreadySettled):
        finance_service.reverse_transaction(reversal.id, ACTOR_ID)


def test_list_transactions_filters(db_session):
    for tx_type, amount in (("income", "10"), ("income", "20"), ("expense", "5")):
        finance_service.record_transaction(
            {"transaction_type": tx_type, "category": "misc", "amount": amount}, ACTOR_ID
        )
    rows, total = finance_service.list_transactions(transaction_type="income")
    assert total == 2
    assert all(r.transaction_type == "income" for r in rows)


def test_voucher_settlement_writes_one_transaction(db_session, customer):
    voucher = finance_service.create_voucher(
        {"voucher_type": "receipt", "amount": "250.00", "customer_id": customer.id, "due_date": "2025-02-01"},
        ACTOR_ID,
    )
    assert voucher.status == "pending"
    assert voucher.voucher_number.startswith("RV-")

    voucher, tx = finance_service.settle_voucher(
        voucher.id, ACTOR_ID, settlement_date="2025-01-20", settlement_method="bank_transfer"
    )
    assert voucher.status == "settled"
    assert voucher.settled_by == ACTOR_ID
    assert tx.transaction_type == "income"
    assert tx.voucher_id == voucher.id
    assert Decimal(tx.amount) == Decimal("250.00")
    assert tx.to_dict()["transaction_date"] == "2025-01-20"


def test_payment_voucher_is_expense(db_session, supplier):
    voucher = finance_service.create_voucher(
        {"voucher_type": "payment", "amount": "99.99", "supplier_id": supplier.id}, ACTOR_ID
    )
    assert voucher.voucher_number.startswith("PV-")
    _, tx = finance_service.settle_voucher(voucher.id, ACTOR_ID, settlement_amount="90.00")
    assert tx.transaction_type == "expense"
    assert Decimal(tx.amount) == Decimal("90.00")


def test_voucher_settles_only_once(db_session, customer):
    voucher = finance_service.create_voucher(
        {"voucher_type": "receipt", "amount": "10", "customer_id": customer.id}, ACTOR_ID
    )
    finance_service.settle_voucher(voucher.id, ACTOR_ID)

    with pytest.raises(AlreadySettled):
        finance_service.settle_voucher(voucher.id, ACTOR_ID)
    assert db_session.query(FinancialTransaction).filter_by(voucher_id=voucher.id).count() == 1


def test_voucher_requires_counterparty(db_session):
    with pytest.raises(ValidationError):
        finance_service.create_voucher({"voucher_type": "receipt", "amount": "10"}, ACTOR_ID)
    assert db_session.query(Voucher).count() == 0


def test_settle_unknown_voucher(db_session):
    with pytest.raises(NotFound):
        finance_service.settle_voucher(4040, ACTOR_ID)
