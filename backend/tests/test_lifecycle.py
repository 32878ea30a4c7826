"""Order state machine tables."""

import pytest

from erp.errors import InvalidTransition, ValidationError
from erp.services import lifecycle_service as lifecycle


@pytest.mark.parametrize("order_type, path", [
    ("sales_order", ["draft", "pending", "confirmed", "shipped", "delivered"]),
    ("purchase_order", ["draft", "pending", "received", "completed"]),
    ("quote", ["draft", "pending", "approved"]),
])
def test_happy_paths(order_type, path):
    for current, target in zip(path, path[1:]):
        assert lifecycle.can_transition(order_type, current, target)
        lifecycle.validate_transition(order_type, current, target)


@pytest.mark.parametrize("order_type, current, target", [
    ("sales_order", "draft", "shipped"),
    ("sales_order", "shipped", "confirmed"),
    ("sales_order", "shipped", "cancelled"),
    ("sales_order", "delivered", "cancelled"),
    ("sales_order", "cancelled", "pending"),
    ("sales_order", "draft", "draft"),
    ("purchase_order", "received", "cancelled"),
    ("purchase_order", "draft", "received"),
    ("quote", "rejected", "approved"),
    ("quote", "converted", "expired"),
    ("sales_order", "draft", "teleported"),
])
def test_forbidden_transitions(order_type, current, target):
    assert not lifecycle.can_transition(order_type, current, target)
    with pytest.raises(InvalidTransition):
        lifecycle.validate_transition(order_type, current, target)


def test_cancel_allowed_before_fulfilment():
    for status in ("draft", "pending", "confirmed"):
        assert lifecycle.can_transition("sales_order", status, "cancelled")
    for status in ("draft", "pending"):
        assert lifecycle.can_transition("purchase_order", status, "cancelled")


def test_quote_conversion_reserved():
    with pytest.raises(InvalidTransition):
        lifecycle.validate_transition("quote", "approved", "converted")
    lifecycle.validate_transition("quote", "approved", "converted", via="convert_quote")
    assert "converted" not in lifecycle.allowed_transitions("quote", "approved")
    assert lifecycle.allowed_transitions("quote", "approved") == ["expired"]


def test_stock_posting_statuses():
    assert lifecycle.moves_stock("sales_order", "shipped")
    assert not lifecycle.moves_stock("sales_order", "delivered")
    assert lifecycle.moves_stock("purchase_order", "received")
    assert not lifecycle.moves_stock("purchase_order", "completed")
    assert not lifecycle.moves_stock("quote", "approved")


def test_fulfilled_and_editable():
    assert lifecycle.is_fulfilled("sales_order", "delivered")
    assert not lifecycle.is_fulfilled("sales_order", "confirmed")
    assert lifecycle.is_editable("pending")
    assert not lifecycle.is_editable("confirmed")


def test_unknown_order_type():
    with pytest.raises(ValidationError):
        lifecycle.statuses_for("invoice")
