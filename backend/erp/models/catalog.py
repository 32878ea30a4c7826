from __future__ import annotations

from ..extensions import db
from ..money import decimal_str
from ..time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data.

    Catalog management owns the lifecycle; the workflow core only reads the
    product and maintains quantity_on_hand.

    STOCK DESIGN DECISION:
    The stock_movements ledger is the source of truth. quantity_on_hand is a
    cached counter written only by the inventory adjustor, under the product row
    lock, in the same transaction as the ledger append. Drift is detected and
    repaired from the ledger (see ledger_service.verify_cached_stock).

    Products are never deleted once referenced; set is_active=False instead.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_products_code"),
        db.Index("ix_products_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # SKU / internal product code
    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    unit = db.Column(db.String(16), nullable=False, default="pcs")

    unit_price = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    minimum_stock = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    reorder_point = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    reorder_quantity = db.Column(db.Numeric(14, 3), nullable=True)

    track_stock = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Cached aggregate of stock_movements.quantity; never written outside the adjustor
    quantity_on_hand = db.Column(db.Numeric(14, 3), nullable=False, default=0)

    default_supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    default_supplier = db.relationship("Supplier", foreign_keys=[default_supplier_id])
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.code!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "unit": self.unit,
            "unit_price": decimal_str(self.unit_price),
            "minimum_stock": decimal_str(self.minimum_stock),
            "reorder_point": decimal_str(self.reorder_point),
            "reorder_quantity": decimal_str(self.reorder_quantity),
            "track_stock": self.track_stock,
            "is_active": self.is_active,
            "quantity_on_hand": decimal_str(self.quantity_on_hand),
            "default_supplier_id": self.default_supplier_id,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Customer(db.Model):
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    company = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    address = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Customer id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "company": self.company,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Supplier(db.Model):
    __tablename__ = "suppliers"
    __table_args__ = (
        db.Index("ix_suppliers_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    company = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    tax_id = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Supplier id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "company": self.company,
            "email": self.email,
            "phone": self.phone,
            "tax_id": self.tax_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
