from __future__ import annotations

from ..extensions import db
from ..money import decimal_str
from ..time_utils import to_iso_date, to_utc_z


class Order(db.Model):
    """
    Order aggregate header: sales order, purchase order or quote.

    The three document types are structurally identical and share this table;
    order_type selects the state machine (see lifecycle_service).

    LIFECYCLE:
    - sales_order:    draft -> pending -> confirmed -> shipped -> delivered
    - purchase_order: draft -> pending -> received -> completed
    - quote:          draft -> pending -> approved -> converted
    cancelled / rejected / expired are the terminal alternatives.

    TOTALS: subtotal, discount_amount, tax_amount and total_amount are always
    re-derived from the lines by order_service.compute_totals; client-supplied
    totals are ignored.

    STOCK: stock_posted_at is set by the transition that moved stock for this
    order. Stock moves at most once per order.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_type_status", "order_type", "status"),
        db.Index("ix_orders_type_date", "order_type", "order_date"),
        db.Index("ix_orders_customer", "customer_id"),
        db.Index("ix_orders_supplier", "supplier_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # sales_order / purchase_order / quote
    order_type = db.Column(db.String(16), nullable=False)

    # Human-readable number (e.g., "SO-2025-00042")
    order_number = db.Column(db.String(32), nullable=False)

    # Counterparty: customer for sales orders and quotes, supplier for purchase orders
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True)

    order_date = db.Column(db.Date, nullable=False)
    # delivery date (sales), expected date (purchases), valid until (quotes)
    delivery_date = db.Column(db.Date, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="draft", index=True)

    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)
    terms = db.Column(db.Text, nullable=True)
    payment_terms = db.Column(db.String(128), nullable=True)
    tracking_number = db.Column(db.String(128), nullable=True)

    # Quote <-> sales order conversion links
    quote_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    converted_order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)

    # Lifecycle user attribution
    created_by = db.Column(db.Integer, nullable=False)
    approved_by = db.Column(db.Integer, nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)

    # Lifecycle timestamps
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    converted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stock_posted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancellation_reason = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("orders", lazy="dynamic"))
    supplier = db.relationship("Supplier", backref=db.backref("orders", lazy="dynamic"))
    lines = db.relationship(
        "OrderLine",
        back_populates="order",
        order_by="OrderLine.line_number",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} type={self.order_type} status={self.status}>"

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_type": self.order_type,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer.name if self.customer else None,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier.name if self.supplier else None,
            "order_date": to_iso_date(self.order_date),
            "delivery_date": to_iso_date(self.delivery_date),
            "status": self.status,
            "subtotal": decimal_str(self.subtotal),
            "discount_percentage": decimal_str(self.discount_percentage),
            "discount_amount": decimal_str(self.discount_amount),
            "tax_percentage": decimal_str(self.tax_percentage),
            "tax_amount": decimal_str(self.tax_amount),
            "total_amount": decimal_str(self.total_amount),
            "notes": self.notes,
            "terms": self.terms,
            "payment_terms": self.payment_terms,
            "tracking_number": self.tracking_number,
            "quote_id": self.quote_id,
            "converted_order_id": self.converted_order_id,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "cancelled_by": self.cancelled_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "submitted_at": to_utc_z(self.submitted_at) if self.submitted_at else None,
            "confirmed_at": to_utc_z(self.confirmed_at) if self.confirmed_at else None,
            "shipped_at": to_utc_z(self.shipped_at) if self.shipped_at else None,
            "delivered_at": to_utc_z(self.delivered_at) if self.delivered_at else None,
            "received_at": to_utc_z(self.received_at) if self.received_at else None,
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "converted_at": to_utc_z(self.converted_at) if self.converted_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "stock_posted_at": to_utc_z(self.stock_posted_at) if self.stock_posted_at else None,
            "cancellation_reason": self.cancellation_reason,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """
    Line item on an order.

    line_total = quantity x unit_price x (1 - discount_percentage / 100), before
    order-level discount and tax. Stock movements created by a fulfilment
    transition point back at the line through StockMovement.order_line_id.
    """
    __tablename__ = "order_lines"
    __table_args__ = (
        db.UniqueConstraint("order_id", "line_number", name="uq_order_lines_order_line_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    description = db.Column(db.String(255), nullable=True)

    # Always positive; direction comes from the order type
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False)
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    tax_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    line_total = db.Column(db.Numeric(14, 2), nullable=False)

    # Purchase lines: quantity physically received
    received_quantity = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    # Sales lines: quantity physically shipped
    shipped_quantity = db.Column(db.Numeric(14, 3), nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="lines")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "product_code": self.product.code if self.product else None,
            "product_name": self.product.name if self.product else None,
            "description": self.description,
            "quantity": decimal_str(self.quantity),
            "unit_price": decimal_str(self.unit_price),
            "discount_percentage": decimal_str(self.discount_percentage),
            "tax_percentage": decimal_str(self.tax_percentage),
            "line_total": decimal_str(self.line_total),
            "received_quantity": decimal_str(self.received_quantity),
            "shipped_quantity": decimal_str(self.shipped_quantity),
            "created_at": to_utc_z(self.created_at),
        }
