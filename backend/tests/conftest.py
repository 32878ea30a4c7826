"""
Pytest fixtures for the ERP workflow backend tests.

Provides an in-memory database, a per-test clean slate, master data and
helpers for creating orders and opening stock.
"""

from decimal import Decimal

import pytest

from erp import create_app
from erp.extensions import db
from erp.models import Customer, Product, Supplier
from erp.services import inventory_service, order_service

ACTOR_ID = 7


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        db.session.expunge_all()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(name="Example Retail", company="Example Retail Inc.")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(name="Acme Supply", company="Acme Supply Ltd.")
    db_session.add(supplier)
    db_session.commit()
    return supplier


def make_product(session, code, *, unit_price="10.00", minimum_stock="0", reorder_point="0",
                 reorder_quantity=None, track_stock=True, supplier=None):
    product = Product(
        code=code,
        name=f"Product {code}",
        unit_price=Decimal(unit_price),
        minimum_stock=Decimal(minimum_stock),
        reorder_point=Decimal(reorder_point),
        reorder_quantity=Decimal(reorder_quantity) if reorder_quantity is not None else None,
        track_stock=track_stock,
        default_supplier_id=supplier.id if supplier else None,
    )
    session.add(product)
    session.commit()
    return product


def add_stock(product, quantity, movement_type="opening_balance"):
    return inventory_service.adjust_inventory(
        product_id=product.id,
        quantity=quantity,
        movement_type=movement_type,
        actor_id=ACTOR_ID,
    )


def line(product, quantity, unit_price=None, **extra):
    data = {"product_id": product.id, "quantity": str(quantity)}
    if unit_price is not None:
        data["unit_price"] = str(unit_price)
    data.update(extra)
    return data


@pytest.fixture(scope='function')
def widget(db_session, supplier):
    """Product WID with 10 units of opening stock."""
    product = make_product(db_session, "WID", unit_price="10.00", supplier=supplier)
    add_stock(product, 10)
    return product


@pytest.fixture(scope='function')
def gadget(db_session, supplier):
    """Product GAD with 5 units of opening stock."""
    product = make_product(db_session, "GAD", unit_price="25.00", supplier=supplier)
    add_stock(product, 5)
    return product


@pytest.fixture(scope='function')
def sales_order_factory(db_session, customer):
    def _create(lines, **header):
        payload = {"customer_id": customer.id, "lines": lines}
        payload.update(header)
        return order_service.create_order("sales_order", payload, ACTOR_ID)
    return _create


@pytest.fixture(scope='function')
def purchase_order_factory(db_session, supplier):
    def _create(lines, **header):
        payload = {"supplier_id": supplier.id, "lines": lines}
        payload.update(header)
        return order_service.create_order("purchase_order", payload, ACTOR_ID)
    return _create


def actor_headers(role="admin", actor_id=ACTOR_ID) -> dict:
    """Headers the upstream gateway forwards for an authenticated actor."""
    return {"X-Actor-Id": str(actor_id), "X-Actor-Role": role}
