# ------ dtfshop/model/__init__.py ------

from .user import User
from .product import Product, PriceRange, METERED_TYPES, PRODUCT_TYPES
from .voucher import Voucher
from .order import Order, OrderItem, OrderStatusHistory
from .quote import Quote
from .cart import Cart, CartItem
from .loyalty import LoyaltyAccount, PointTransaction
from .setting import Setting
from .notification import Notification

__all__ = [
    "User",
    "Product",
    "PriceRange",
    "METERED_TYPES",
    "PRODUCT_TYPES",
    "Voucher",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "Quote",
    "Cart",
    "CartItem",
    "LoyaltyAccount",
    "PointTransaction",
    "Setting",
    "Notification",
]
