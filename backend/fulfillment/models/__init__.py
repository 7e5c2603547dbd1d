from .catalog import Product
from .inventory import InventoryTransaction, StockReceipt, StockReceiptItem
from .promotions import Coupon
from .orders import OrderStatus, Order, OrderItem, OrderStatusHistory
from .payments import PaymentStatus, Payment
from .banking import BankTransaction, BankReconciliation
from .documents import DocumentSequence

__all__ = [
    'Product',
    'InventoryTransaction', 'StockReceipt', 'StockReceiptItem',
    'Coupon',
    'OrderStatus', 'Order', 'OrderItem', 'OrderStatusHistory',
    'PaymentStatus', 'Payment',
    'BankTransaction', 'BankReconciliation',
    'DocumentSequence',
]
