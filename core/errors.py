"""
Domain errors raised by the order lifecycle services.

Every error carries a stable ``code`` and the HTTP status the API maps it to,
so route handlers never translate them one by one (see ``main.py``).
"""
from typing import Any, Dict, List, Optional


def _plain(value: Any) -> Any:
    # Enum members render as their value in messages and JSON
    return getattr(value, "value", value)


class OrderLifecycleError(Exception):
    code = "order_error"
    http_status = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        payload.update(self.context)
        return payload


class ValidationError(OrderLifecycleError):
    """Malformed input, e.g. a cancellation without a reason."""

    code = "validation_error"
    http_status = 422


class EmptyCart(ValidationError):
    code = "empty_cart"

    def __init__(self, message: str = "Order must contain at least one item"):
        super().__init__(message)


class NotAuthorized(OrderLifecycleError):
    code = "not_authorized"
    http_status = 403


class NotFound(OrderLifecycleError):
    code = "not_found"
    http_status = 404


class ShopNotFound(NotFound):
    code = "shop_not_found"

    def __init__(self, shop_id: int):
        super().__init__(f"Shop {shop_id} not found", shop_id=shop_id)


class OrderNotFound(NotFound):
    code = "order_not_found"

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found", order_id=order_id)


class ProductNotFound(NotFound):
    code = "product_not_found"

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found", product_id=product_id)


class AssignmentNotFound(NotFound):
    code = "assignment_not_found"

    def __init__(self, assignment_id: int):
        super().__init__(f"Delivery assignment {assignment_id} not found", assignment_id=assignment_id)


class InvalidTransition(OrderLifecycleError):
    """Attempted state change is not permitted from the current state. Never retried."""

    code = "invalid_transition"
    http_status = 409

    def __init__(self, current: Any, target: Any, message: Optional[str] = None):
        current, target = _plain(current), _plain(target)
        super().__init__(
            message or f"Cannot move from {current} to {target}",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class InsufficientStock(OrderLifecycleError):
    code = "insufficient_stock"
    http_status = 409

    def __init__(self, shortfalls: List[Any]):
        names = ", ".join(str(s.name or s.product_id) for s in shortfalls)
        super().__init__(
            f"Insufficient stock for: {names}",
            shortfalls=[s.as_dict() for s in shortfalls],
        )
        self.shortfalls = shortfalls


class ConcurrentModification(OrderLifecycleError):
    """Lost a compare-and-swap race; the caller may safely retry."""

    code = "concurrent_modification"
    http_status = 409

    def __init__(self, message: str = "The resource was modified concurrently, please try again", **context: Any):
        super().__init__(message, retryable=True, **context)


class GeocodingUnavailable(OrderLifecycleError):
    code = "geocoding_unavailable"
    http_status = 503


class NoAgentAvailable(OrderLifecycleError):
    code = "no_agent_available"
    http_status = 503
