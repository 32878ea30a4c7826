"""Workflow engine: transitions, stock posting and atomicity."""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from erp.errors import AlreadySettled, InsufficientStock, InvalidTransition, NotFound, ValidationError
from erp.models import Order, StockMovement
from erp.services import inventory_service, ledger_service, order_service, workflow_service
from conftest import ACTOR_ID, add_stock, line, make_product


def _advance(order, *statuses, **payload):
    for status in statuses:
        order = workflow_service.transition(order.id, status, ACTOR_ID, payload or None)
    return order


def test_sales_order_ships_once(db_session, widget, sales_order_factory):
    order = sales_order_factory([line(widget, 4)])
    order = _advance(order, "pending", "confirmed")
    assert ledger_service.current_stock(widget.id) == Decimal("10")

    order = workflow_service.transition(order.id, "shipped", ACTOR_ID, {"tracking_number": "TRK-1"})
    assert order.status == "shipped"
    assert order.tracking_number == "TRK-1"
    assert order.shipped_at is not None
    assert order.stock_posted_at is not None
    assert ledger_service.current_stock(widget.id) == Decimal("6")

    movement = (
        db_session.query(StockMovement)
        .filter_by(related_document_type="sales_order", related_document_id=order.id)
        .one()
    )
    assert movement.movement_type == "sale_shipment"
    assert Decimal(movement.quantity) == Decimal("-4")
    assert movement.order_line_id == order.lines[0].id

    # delivered changes status only
    order = workflow_service.transition(order.id, "delivered", ACTOR_ID)
    assert order.status == "delivered"
    assert ledger_service.current_stock(widget.id) == Decimal("6")


def test_purchase_order_receipt_adds_stock(db_session, widget, purchase_order_factory):
    order = purchase_order_factory([line(widget, 7, "8.50")])
    order = _advance(order, "pending", "received")

    assert ledger_service.current_stock(widget.id) == Decimal("17")
    assert Decimal(order.lines[0].received_quantity) == Decimal("7")

    order = workflow_service.transition(order.id, "completed", ACTOR_ID)
    assert order.status == "completed"
    assert ledger_service.current_stock(widget.id) == Decimal("17")
    assert db_session.query(StockMovement).filter_by(movement_type="purchase_receipt").count() == 1


def test_shipment_is_dated_by_shipping_date(db_session, widget, sales_order_factory):
    order = _advance(sales_order_factory([line(widget, 3)]), "pending", "confirmed")

    order = workflow_service.transition(order.id, "shipped", ACTOR_ID, {"shipping_date": "2025-01-05"})

    movement = db_session.query(StockMovement).filter_by(related_document_id=order.id).one()
    assert movement.movement_date.date() == date(2025, 1, 5)
    assert order.shipped_at.date() == date(2025, 1, 5)
    assert Decimal(order.lines[0].shipped_quantity) == Decimal("3")
    assert Decimal(order.lines[0].received_quantity) == Decimal("0")


def test_receipt_is_dated_by_received_date(db_session, widget, purchase_order_factory):
    order = _advance(purchase_order_factory([line(widget, 2, "8.00")]), "pending")

    order = workflow_service.transition(order.id, "received", ACTOR_ID, {"received_date": "2025-02-10T09:30:00Z"})

    movement = db_session.query(StockMovement).filter_by(related_document_id=order.id).one()
    assert movement.movement_date == datetime(2025, 2, 10, 9, 30)
    assert order.received_at.date() == date(2025, 2, 10)


def test_future_shipping_date_writes_nothing(db_session, widget, sales_order_factory):
    order = _advance(sales_order_factory([line(widget, 3)]), "pending", "confirmed")
    future = (date.today() + timedelta(days=2)).isoformat()

    with pytest.raises(ValidationError):
        workflow_service.transition(order.id, "shipped", ACTOR_ID, {"shipping_date": future})

    db_session.expire_all()
    assert db_session.get(Order, order.id).status == "confirmed"
    assert ledger_service.current_stock(widget.id) == Decimal("10")


def test_confirm_checks_availability(db_session, widget, sales_order_factory):
    order = sales_order_factory([line(widget, 11)])
    order = _advance(order, "pending")

    with pytest.raises(InsufficientStock) as exc_info:
        workflow_service.transition(order.id, "confirmed", ACTOR_ID)

    assert exc_info.value.details["shortages"][0]["product_id"] == widget.id
    assert db_session.get(Order, order.id).status == "pending"


def test_multi_line_shipment_is_atomic(db_session, widget, gadget, supplier, sales_order_factory):
    """A shortage on the third line leaves every line's stock untouched."""
    bolt = make_product(db_session, "BOLT", unit_price="0.50", supplier=supplier)
    add_stock(bolt, 20)

    order = sales_order_factory([line(widget, 3), line(gadget, 2), line(bolt, 15)])
    order = _advance(order, "pending", "confirmed")

    # Stock drops after confirmation, before shipment
    inventory_service.adjust_inventory(
        product_id=bolt.id, quantity="10", movement_type="adjustment_out", actor_id=ACTOR_ID
    )
    movements_before = db_session.query(StockMovement).count()

    with pytest.raises(InsufficientStock):
        workflow_service.transition(order.id, "shipped", ACTOR_ID)

    assert db_session.query(StockMovement).count() == movements_before
    assert ledger_service.current_stock(widget.id) == Decimal("10")
    assert ledger_service.current_stock(gadget.id) == Decimal("5")
    assert ledger_service.current_stock(bolt.id) == Decimal("10")
    reloaded = db_session.get(Order, order.id)
    assert reloaded.status == "confirmed"
    assert reloaded.stock_posted_at is None


def test_repeated_product_lines_are_summed_for_availability(db_session, widget, sales_order_factory):
    order = sales_order_factory([line(widget, 6), line(widget, 6)])
    order = _advance(order, "pending")
    with pytest.raises(InsufficientStock):
        workflow_service.transition(order.id, "confirmed", ACTOR_ID)


def test_untracked_products_do_not_move_stock(db_session, widget, sales_order_factory):
    service = make_product(db_session, "SETUP", unit_price="50.00", track_stock=False)
    order = sales_order_factory([line(widget, 1), line(service, 1)])
    _advance(order, "pending", "confirmed", "shipped")

    assert db_session.query(StockMovement).filter_by(product_id=service.id).count() == 0
    assert ledger_service.current_stock(widget.id) == Decimal("9")


def test_cannot_skip_states(db_session, widget, sales_order_factory):
    order = sales_order_factory([line(widget, 1)])
    with pytest.raises(InvalidTransition):
        workflow_service.transition(order.id, "shipped", ACTOR_ID)
    assert ledger_service.current_stock(widget.id) == Decimal("10")


def test_cancel_records_reason(db_session, widget, sales_order_factory):
    order = sales_order_factory([line(widget, 1)])
    order = workflow_service.cancel_order(order.id, ACTOR_ID, "customer changed mind")

    assert order.status == "cancelled"
    assert order.cancellation_reason == "customer changed mind"
    assert order.cancelled_by == ACTOR_ID
    assert order.cancelled_at is not None


def test_cannot_cancel_after_shipment(db_session, widget, sales_order_factory):
    order = sales_order_factory([line(widget, 1)])
    order = _advance(order, "pending", "confirmed", "shipped")
    with pytest.raises(InvalidTransition):
        workflow_service.cancel_order(order.id, ACTOR_ID)


def test_confirmed_order_is_not_editable(db_session, widget, sales_order_factory):
    order = sales_order_factory([line(widget, 1)])
    order = _advance(order, "pending", "confirmed")
    with pytest.raises(AlreadySettled):
        order_service.update_order(order.id, {"notes": "late edit"}, ACTOR_ID)


def test_transition_type_guard(db_session, widget, purchase_order_factory):
    po = purchase_order_factory([line(widget, 1)])
    with pytest.raises(NotFound):
        workflow_service.transition(po.id, "pending", ACTOR_ID, order_type="sales_order")
