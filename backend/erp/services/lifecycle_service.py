# Overview: Order state machines for sales orders, purchase orders and quotes.

"""
Order Lifecycle Service

================================================================================
PURPOSE: Single source of truth for which status changes each order type allows
================================================================================

STATE MACHINES:

    sales_order:     draft -> pending -> confirmed -> shipped -> delivered
                     draft | pending | confirmed -> cancelled

    purchase_order:  draft -> pending -> received -> completed
                     draft | pending -> cancelled

    quote:           draft -> pending -> approved -> converted
                     pending -> rejected | expired
                     approved -> expired

RULES:
1. Cannot skip states (draft -> shipped is forbidden)
2. Cannot reverse states (shipped -> confirmed is forbidden)
3. Fulfilled orders (shipped/delivered, received/completed) cannot be cancelled
4. quote -> converted only happens through convert_quote, never a plain transition
5. Stock moves on the first fulfilment state only (shipped / received)

This module is pure: it never touches the session. workflow_service applies
the transitions inside a write unit.

================================================================================
"""

from __future__ import annotations

from typing import Literal

from ..errors import InvalidTransition, ValidationError


SALES_ORDER = "sales_order"
PURCHASE_ORDER = "purchase_order"
QUOTE = "quote"
ORDER_TYPES = (SALES_ORDER, PURCHASE_ORDER, QUOTE)

OrderType = Literal["sales_order", "purchase_order", "quote"]

TRANSITIONS: dict[str, dict[str, frozenset[str]]] = {
    SALES_ORDER: {
        "draft": frozenset({"pending", "cancelled"}),
        "pending": frozenset({"confirmed", "cancelled"}),
        "confirmed": frozenset({"shipped", "cancelled"}),
        "shipped": frozenset({"delivered"}),
        "delivered": frozenset(),
        "cancelled": frozenset(),
    },
    PURCHASE_ORDER: {
        "draft": frozenset({"pending", "cancelled"}),
        "pending": frozenset({"received", "cancelled"}),
        "received": frozenset({"completed"}),
        "completed": frozenset(),
        "cancelled": frozenset(),
    },
    QUOTE: {
        "draft": frozenset({"pending"}),
        "pending": frozenset({"approved", "rejected", "expired"}),
        "approved": frozenset({"converted", "expired"}),
        "converted": frozenset(),
        "rejected": frozenset(),
        "expired": frozenset(),
    },
}

# Transitions reserved for a dedicated operation
RESERVED_TRANSITIONS = {
    (QUOTE, "approved", "converted"): "convert_quote",
}

# Status whose first entry moves physical stock
STOCK_POSTING_STATUS = {
    SALES_ORDER: "shipped",
    PURCHASE_ORDER: "received",
}

FULFILLED_STATUSES = {
    SALES_ORDER: frozenset({"shipped", "delivered"}),
    PURCHASE_ORDER: frozenset({"received", "completed"}),
    QUOTE: frozenset({"converted"}),
}

EDITABLE_STATUSES = frozenset({"draft", "pending"})

# status -> timestamp column stamped on entry
STATUS_TIMESTAMPS = {
    "pending": "submitted_at",
    "confirmed": "confirmed_at",
    "shipped": "shipped_at",
    "delivered": "delivered_at",
    "received": "received_at",
    "completed": "completed_at",
    "approved": "approved_at",
    "converted": "converted_at",
    "cancelled": "cancelled_at",
}


def validate_order_type(order_type: str) -> None:
    if order_type not in ORDER_TYPES:
        raise ValidationError(
            f"Invalid order type '{order_type}'. Must be one of: {', '.join(ORDER_TYPES)}"
        )


def statuses_for(order_type: str) -> frozenset[str]:
    validate_order_type(order_type)
    return frozenset(TRANSITIONS[order_type].keys())


def validate_status(order_type: str, status: str) -> None:
    """
    Raises:
        ValidationError: if status is not a state of this order type's machine
    """
    if status not in statuses_for(order_type):
        raise ValidationError(
            f"Invalid status '{status}' for {order_type}. "
            f"Must be one of: {', '.join(sorted(statuses_for(order_type)))}"
        )


def can_transition(order_type: str, from_status: str, to_status: str) -> bool:
    """
    Check whether from_status -> to_status is an edge of the order type's machine.

    Same-state transitions and statuses unknown to the machine are not edges.
    """
    validate_status(order_type, from_status)
    return to_status in TRANSITIONS[order_type][from_status]


def validate_transition(order_type: str, from_status: str, to_status: str, *, via: str | None = None) -> None:
    """
    Raise InvalidTransition unless the change is allowed.

    `via` names the dedicated operation performing the change; reserved edges
    (quote -> converted) are only accepted from that operation.
    """
    if not can_transition(order_type, from_status, to_status):
        raise InvalidTransition(
            f"Cannot transition {order_type} from '{from_status}' to '{to_status}'",
            {"from": from_status, "to": to_status, "allowed": sorted(TRANSITIONS[order_type][from_status])},
        )
    reserved = RESERVED_TRANSITIONS.get((order_type, from_status, to_status))
    if reserved and via != reserved:
        raise InvalidTransition(
            f"Transition to '{to_status}' is only available through {reserved}",
            {"from": from_status, "to": to_status},
        )


def allowed_transitions(order_type: str, from_status: str) -> list[str]:
    validate_status(order_type, from_status)
    return sorted(
        s for s in TRANSITIONS[order_type][from_status]
        if (order_type, from_status, s) not in RESERVED_TRANSITIONS
    )


def moves_stock(order_type: str, to_status: str) -> bool:
    return STOCK_POSTING_STATUS.get(order_type) == to_status


def is_fulfilled(order_type: str, status: str) -> bool:
    return status in FULFILLED_STATUSES.get(order_type, frozenset())


def is_editable(status: str) -> bool:
    return status in EDITABLE_STATUSES
