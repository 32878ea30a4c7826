from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..money import decimal_str
from ..time_utils import to_iso_date, to_utc_z
from .inventory import AppendOnlyViolation


class FinancialTransaction(db.Model):
    """
    Append-only ledger of money movement.

    Balances, receivables and payables are always derived by aggregation over
    this table and the voucher table; nothing here stores a running total.
    Corrections are offsetting rows linked through reverses_transaction_id.
    """
    __tablename__ = "financial_transactions"
    __table_args__ = (
        db.UniqueConstraint("reverses_transaction_id", name="uq_fin_tx_reverses"),
        db.Index("ix_fin_tx_type_date", "transaction_type", "transaction_date"),
        db.Index("ix_fin_tx_category", "category"),
        db.Index("ix_fin_tx_order", "order_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # income / expense
    transaction_type = db.Column(db.String(16), nullable=False)
    category = db.Column(db.String(64), nullable=False)
    subcategory = db.Column(db.String(64), nullable=True)

    # Always positive; direction comes from transaction_type
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    transaction_date = db.Column(db.Date, nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True)
    voucher_id = db.Column(db.Integer, db.ForeignKey("vouchers.id"), nullable=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    payment_schedule_id = db.Column(db.Integer, db.ForeignKey("payment_schedules.id"), nullable=True)
    reverses_transaction_id = db.Column(db.Integer, db.ForeignKey("financial_transactions.id"), nullable=True)

    payment_method = db.Column(db.String(32), nullable=True)
    reference_number = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)
    tags = db.Column(db.JSON, nullable=True)

    created_by = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<FinancialTransaction id={self.id} type={self.transaction_type} amount={self.amount}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_type": self.transaction_type,
            "category": self.category,
            "subcategory": self.subcategory,
            "amount": decimal_str(self.amount),
            "transaction_date": to_iso_date(self.transaction_date),
            "customer_id": self.customer_id,
            "supplier_id": self.supplier_id,
            "voucher_id": self.voucher_id,
            "order_id": self.order_id,
            "payment_schedule_id": self.payment_schedule_id,
            "reverses_transaction_id": self.reverses_transaction_id,
            "payment_method": self.payment_method,
            "reference_number": self.reference_number,
            "description": self.description,
            "tags": self.tags or [],
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(FinancialTransaction, "before_update")
def _reject_transaction_update(mapper, connection, target):
    raise AppendOnlyViolation(f"financial transaction {target.id} is append-only")


@event.listens_for(FinancialTransaction, "before_delete")
def _reject_transaction_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"financial transaction {target.id} is append-only")


class Voucher(db.Model):
    """
    Pending obligation to pay (payment) or receive (receipt) money.

    LIFECYCLE: pending -> settled, exactly once. Settlement writes one
    FinancialTransaction in the same unit (see finance_service.settle_voucher).
    """
    __tablename__ = "vouchers"
    __table_args__ = (
        db.UniqueConstraint("voucher_number", name="uq_vouchers_number"),
        db.Index("ix_vouchers_type_status", "voucher_type", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    voucher_number = db.Column(db.String(32), nullable=False)

    # payment / receipt
    voucher_type = db.Column(db.String(16), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)

    amount = db.Column(db.Numeric(14, 2), nullable=False)
    voucher_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=True)
    category = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    settlement_date = db.Column(db.Date, nullable=True)
    settlement_amount = db.Column(db.Numeric(14, 2), nullable=True)
    settlement_method = db.Column(db.String(32), nullable=True)
    settled_by = db.Column(db.Integer, nullable=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer")
    supplier = db.relationship("Supplier")

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Voucher id={self.id} number={self.voucher_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "voucher_number": self.voucher_number,
            "voucher_type": self.voucher_type,
            "customer_id": self.customer_id,
            "customer_name": self.customer.name if self.customer else None,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier.name if self.supplier else None,
            "order_id": self.order_id,
            "amount": decimal_str(self.amount),
            "voucher_date": to_iso_date(self.voucher_date),
            "due_date": to_iso_date(self.due_date),
            "category": self.category,
            "description": self.description,
            "status": self.status,
            "settlement_date": to_iso_date(self.settlement_date),
            "settlement_amount": decimal_str(self.settlement_amount),
            "settlement_method": self.settlement_method,
            "settled_by": self.settled_by,
            "settled_at": to_utc_z(self.settled_at) if self.settled_at else None,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class PaymentScheduleModel(db.Model):
    """Named, reusable template of installment terms."""
    __tablename__ = "payment_schedule_models"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_payment_schedule_models_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    terms = db.relationship(
        "PaymentScheduleTerm",
        back_populates="model",
        order_by="PaymentScheduleTerm.sequence",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "terms": [term.to_dict() for term in self.terms],
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class PaymentScheduleTerm(db.Model):
    """One {day_offset, percentage, description} row of a schedule model."""
    __tablename__ = "payment_schedule_terms"
    __table_args__ = (
        db.UniqueConstraint("model_id", "sequence", name="uq_payment_schedule_terms_seq"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    model_id = db.Column(db.Integer, db.ForeignKey("payment_schedule_models.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)
    day_offset = db.Column(db.Integer, nullable=False)
    percentage = db.Column(db.Numeric(5, 2), nullable=False)
    description = db.Column(db.String(255), nullable=True)

    model = db.relationship("PaymentScheduleModel", back_populates="terms")

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "day_offset": self.day_offset,
            "percentage": decimal_str(self.percentage),
            "description": self.description,
        }


class PaymentSchedule(db.Model):
    """
    Concrete installment generated by applying a model to an order.

    LIFECYCLE: pending -> paid, pending -> overdue -> paid.
    """
    __tablename__ = "payment_schedules"
    __table_args__ = (
        db.Index("ix_payment_schedules_order", "order_id"),
        db.Index("ix_payment_schedules_status_due", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    model_id = db.Column(db.Integer, db.ForeignKey("payment_schedule_models.id"), nullable=True)
    installment_number = db.Column(db.Integer, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    percentage = db.Column(db.Numeric(5, 2), nullable=False)
    description = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending")
    paid_date = db.Column(db.Date, nullable=True)
    paid_by = db.Column(db.Integer, nullable=True)
    payment_method = db.Column(db.String(32), nullable=True)

    created_by = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("payment_schedules", lazy=True))

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "model_id": self.model_id,
            "installment_number": self.installment_number,
            "due_date": to_iso_date(self.due_date),
            "amount": decimal_str(self.amount),
            "percentage": decimal_str(self.percentage),
            "description": self.description,
            "status": self.status,
            "paid_date": to_iso_date(self.paid_date),
            "paid_by": self.paid_by,
            "payment_method": self.payment_method,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
