from .catalog import Product, Customer, Supplier
from .inventory import StockMovement, AppendOnlyViolation
from .orders import Order, OrderLine
from .documents import DocumentSequence
from .finance import FinancialTransaction, Voucher, PaymentScheduleModel, PaymentScheduleTerm, PaymentSchedule

__all__ = [
    'Product', 'Customer', 'Supplier',
    'StockMovement', 'AppendOnlyViolation',
    'Order', 'OrderLine',
    'DocumentSequence',
    'FinancialTransaction', 'Voucher',
    'PaymentScheduleModel', 'PaymentScheduleTerm', 'PaymentSchedule',
]
