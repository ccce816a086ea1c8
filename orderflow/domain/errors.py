"""
Domain exceptions.

The API layer maps these to HTTP status codes; background jobs and the
webhook handler log them instead of surfacing them.
"""

from typing import Any, Mapping, Optional


class OrderflowError(Exception):
    """Base class for every error raised by the order engine."""


class ValidationError(OrderflowError):
    """Malformed input. Nothing was written."""


class InsufficientStock(ValidationError):
    def __init__(self, product_id: int, requested: int, available: int, product_name: Optional[str] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.product_name = product_name
        label = product_name or f"product {product_id}"
        super().__init__(f"Insufficient stock for {label}: requested {requested}, available {available}")


class PoolExhausted(InsufficientStock):
    """No unused preloaded credential is left for the product."""


class OrderNotFound(OrderflowError):
    def __init__(self, reference: Any):
        self.reference = reference
        super().__init__(f"Order not found: {reference}")


class ProductNotFound(OrderflowError):
    def __init__(self, product_id: Any):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class TransitionConflict(OrderflowError):
    """
    The stored state did not match the expected prior state.

    Callers treat this as "already handled by someone else".
    """

    def __init__(self, order_id: int, expected: Mapping[str, Any], actual: Mapping[str, Any]):
        self.order_id = order_id
        self.expected = dict(expected)
        self.actual = dict(actual)
        super().__init__(f"Order {order_id} state {self.actual} does not match expected {self.expected}")


class InvalidTransition(OrderflowError):
    """The requested change is not allowed from the order's current state."""


class OrderCodeAllocationError(OrderflowError):
    pass


class SignatureMismatch(OrderflowError):
    pass


class PaymentGatewayError(OrderflowError):
    pass


class PaymentGatewayTimeout(PaymentGatewayError):
    pass


class NotificationError(OrderflowError):
    pass


class SubscriptionNotFound(OrderflowError):
    def __init__(self, subscription_id: Any):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription not found: {subscription_id}")
