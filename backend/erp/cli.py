# Overview: Flask CLI command groups for bootstrap, stock repair and finance maintenance.

# backend/erp/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create demo products, a customer, a supplier, opening stock and a 30/70 schedule model.
#
# Inventory:
# - python -m flask inventory rebuild-stock
#   Recompute every product's cached stock counter from the movement ledger.
# - python -m flask inventory verify-stock --product-id 1
#   Compare one product's cached counter with the ledger and repair drift.
#
# Finance:
# - python -m flask finance flag-overdue [--as-of 2025-01-31]
#   Move pending installments due before the cutoff to overdue.

from decimal import Decimal

import click
from flask.cli import with_appcontext

from .errors import WorkflowError
from .extensions import db
from .models import Customer, PaymentScheduleModel, Product, Supplier
from .services import inventory_service, ledger_service, schedule_service

SYSTEM_ACTOR_ID = 1


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the append-only ledgers.
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


DEMO_PRODUCTS = [
    # code, name, unit_price, minimum_stock, reorder_point, reorder_quantity, opening stock
    ("WID-001", "Widget", "10.00", "5", "10", "50", "40"),
    ("GAD-001", "Gadget", "25.00", "2", "5", "20", "12"),
    ("BOL-M8", "M8 Bolt", "0.35", "100", "200", None, "150"),
]


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """
    Seed demo master data.

    Creates (if missing):
    - Supplier "Acme Supply" and customer "Example Retail"
    - Products WID-001, GAD-001, BOL-M8 with opening_balance movements
    - Payment schedule model "30/70" (30% now, 70% after 30 days)
    """
    db.create_all()

    supplier = db.session.query(Supplier).filter_by(name="Acme Supply").first()
    if not supplier:
        supplier = Supplier(name="Acme Supply", company="Acme Supply Ltd.", email="orders@acme.example")
        db.session.add(supplier)
        db.session.commit()
        click.echo(f"PASS Created supplier {supplier.name} (ID: {supplier.id})")

    customer = db.session.query(Customer).filter_by(name="Example Retail").first()
    if not customer:
        customer = Customer(name="Example Retail", company="Example Retail Inc.", email="buyer@retail.example")
        db.session.add(customer)
        db.session.commit()
        click.echo(f"PASS Created customer {customer.name} (ID: {customer.id})")

    for code, name, price, minimum, reorder_point, reorder_qty, opening in DEMO_PRODUCTS:
        if db.session.query(Product).filter_by(code=code).first():
            click.echo(f"SKIP Product {code} exists")
            continue
        product = Product(
            code=code,
            name=name,
            unit_price=Decimal(price),
            minimum_stock=Decimal(minimum),
            reorder_point=Decimal(reorder_point),
            reorder_quantity=Decimal(reorder_qty) if reorder_qty else None,
            default_supplier_id=supplier.id,
        )
        db.session.add(product)
        db.session.commit()
        inventory_service.adjust_inventory(
            product_id=product.id,
            quantity=opening,
            movement_type="opening_balance",
            actor_id=SYSTEM_ACTOR_ID,
            reason="Demo opening balance",
        )
        click.echo(f"PASS Created product {code} with opening stock {opening}")

    if not db.session.query(PaymentScheduleModel).filter_by(name="30/70").first():
        schedule_service.create_schedule_model(
            name="30/70",
            description="30% on order, 70% after 30 days",
            terms=[
                {"day_offset": 0, "percentage": "30", "description": "Deposit"},
                {"day_offset": 30, "percentage": "70", "description": "Balance"},
            ],
            actor_id=SYSTEM_ACTOR_ID,
            is_default=True,
        )
        click.echo("PASS Created payment schedule model 30/70")

    click.echo("DONE Demo data ready.")


@click.group('inventory')
def inventory_group():
    """Stock ledger maintenance commands."""


@inventory_group.command('rebuild-stock')
@with_appcontext
def rebuild_stock():
    """Recompute every cached stock counter from the movement ledger."""
    results = ledger_service.rebuild_cached_stock()
    repaired = [r for r in results if r["repaired"]]
    for r in repaired:
        click.echo(f"FIX  product {r['product_id']}: cached {r['cached']} -> {r['derived']}")
    click.echo(f"Checked {len(results)} products, repaired {len(repaired)}.")


@inventory_group.command('verify-stock')
@click.option('--product-id', type=int, required=True)
@with_appcontext
def verify_stock(product_id):
    """Compare one product's cached counter with the ledger."""
    try:
        result = ledger_service.verify_cached_stock(product_id)
    except WorkflowError as e:
        raise click.ClickException(e.message)
    status = "REPAIRED" if result["repaired"] else "OK"
    click.echo(f"{status} product {product_id}: cached={result['cached']} derived={result['derived']}")


@click.group('finance')
def finance_group():
    """Finance maintenance commands."""


@finance_group.command('flag-overdue')
@click.option('--as-of', default=None, help='Cutoff date (ISO-8601), defaults to today')
@with_appcontext
def flag_overdue(as_of):
    """Move pending installments due before the cutoff to overdue."""
    try:
        count = schedule_service.flag_overdue_schedules(as_of)
    except WorkflowError as e:
        raise click.ClickException(e.message)
    click.echo(f"Flagged {count} installments overdue.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(finance_group)
