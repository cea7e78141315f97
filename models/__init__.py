# Import models so that SQLAlchemy metadata includes them on app startup
from .user import User  # noqa: F401
from .category import Category  # noqa: F401
from .book import Book  # noqa: F401
from .address import Address  # noqa: F401
from .shipping_provider import ShippingProvider  # noqa: F401
from .cart_item import CartItem  # noqa: F401
from .voucher import Voucher  # noqa: F401
from .voucher_usage import VoucherUsage  # noqa: F401
from .order import Order  # noqa: F401
from .order_item import OrderItem  # noqa: F401
from .payment import Payment  # noqa: F401
from .user_book import UserBook  # noqa: F401
