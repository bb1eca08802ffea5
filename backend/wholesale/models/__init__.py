from .customers import Customer, LoyaltyTransaction
from .credit import CreditTransaction, TransactionType, PaymentMethod
from .catalog import Product, FlatTaxRule
from .orders import Order, OrderLine, OrderTaxLine, OrderStatus, OrderType, OrderPaymentMethod

__all__ = [
    'Customer', 'LoyaltyTransaction',
    'CreditTransaction', 'TransactionType', 'PaymentMethod',
    'Product', 'FlatTaxRule',
    'Order', 'OrderLine', 'OrderTaxLine', 'OrderStatus', 'OrderType', 'OrderPaymentMethod',
]
