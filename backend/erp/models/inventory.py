from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..money import decimal_str
from ..time_utils import to_utc_z


class StockMovement(db.Model):
    """
    One immutable, signed quantity change for a product.

    APPEND-ONLY: rows are inserted by the inventory adjustor and never updated
    or deleted. Corrections are new offsetting movements. The ORM refuses
    updates and deletes (see the mapper events below).

    SIGN CONVENTION:
    - quantity > 0: inbound (purchase_receipt, adjustment_in, return_in, opening_balance)
    - quantity < 0: outbound (sale_shipment, adjustment_out, return_out)

    quantity_before / quantity_after snapshot the derived stock around this
    movement, taken under the product row lock, so for any product the rows
    ordered by id form a gap-free chain.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.UniqueConstraint("reference_number", name="uq_stock_movements_reference"),
        db.Index("ix_stock_movements_product_date", "product_id", "movement_date"),
        db.Index("ix_stock_movements_product_type", "product_id", "movement_type"),
        db.Index("ix_stock_movements_document", "related_document_type", "related_document_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # e.g. "SM-SALE_SHIPMENT-2025-00012"
    reference_number = db.Column(db.String(64), nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(32), nullable=False, index=True)

    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    quantity_before = db.Column(db.Numeric(14, 3), nullable=False)
    quantity_after = db.Column(db.Numeric(14, 3), nullable=False)

    # Valuation snapshot (optional)
    unit_price = db.Column(db.Numeric(14, 2), nullable=True)
    total_value = db.Column(db.Numeric(14, 2), nullable=True)

    # Originating document: "sales_order" / "purchase_order" / None for manual
    related_document_type = db.Column(db.String(32), nullable=True)
    related_document_id = db.Column(db.Integer, nullable=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    order_line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=True)

    warehouse = db.Column(db.String(64), nullable=True)
    reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Business time of the movement; created_at is system time
    movement_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    created_by = db.Column(db.Integer, nullable=False)

    # Set at creation; movements are never approved after the fact
    is_approved = db.Column(db.Boolean, nullable=False, default=True)
    approved_by = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("movements", lazy="dynamic"))

    def __repr__(self) -> str:
        return (
            f"<StockMovement id={self.id} product_id={self.product_id} "
            f"type={self.movement_type} qty={self.quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reference_number": self.reference_number,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "quantity": decimal_str(self.quantity),
            "quantity_before": decimal_str(self.quantity_before),
            "quantity_after": decimal_str(self.quantity_after),
            "unit_price": decimal_str(self.unit_price),
            "total_value": decimal_str(self.total_value),
            "related_document_type": self.related_document_type,
            "related_document_id": self.related_document_id,
            "order_id": self.order_id,
            "order_line_id": self.order_line_id,
            "warehouse": self.warehouse,
            "reason": self.reason,
            "notes": self.notes,
            "movement_date": to_utc_z(self.movement_date),
            "created_by": self.created_by,
            "is_approved": self.is_approved,
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "created_at": to_utc_z(self.created_at),
        }


class AppendOnlyViolation(RuntimeError):
    """Raised when code tries to mutate an append-only ledger row."""


@event.listens_for(StockMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise AppendOnlyViolation(f"stock movement {target.id} is append-only")


@event.listens_for(StockMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"stock movement {target.id} is append-only")
