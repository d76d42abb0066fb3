# Import models so that SQLAlchemy metadata includes them on app startup
from .user import User  # noqa: F401
from .shop import Shop  # noqa: F401
from .product import Product  # noqa: F401
from .order import Order  # noqa: F401
from .order_item import OrderItem  # noqa: F401
from .payment import Payment  # noqa: F401
from .delivery import DeliveryAssignment  # noqa: F401
from .notification import Notification  # noqa: F401
