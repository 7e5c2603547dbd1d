# Overview: Exception taxonomy shared by the fulfillment services.

"""
Service errors.

Callers map these to responses:
- NotFoundError / ValidationError: surface the message to the user
- ConflictError: the entity is no longer in a state that allows the operation
- InsufficientStockError: order cannot be fulfilled from current stock
- ConcurrencyError: transient; the whole operation is safe to retry
"""


class FulfillmentError(Exception):
    """Base class for fulfillment-core errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(FulfillmentError):
    """Raised when an entity id does not resolve."""
    pass


class ValidationError(FulfillmentError):
    """Raised when input fails a business rule."""
    pass


class EmptyCartError(ValidationError):
    """Raised when an order is requested for an empty cart."""

    def __init__(self, message: str = "cart is empty"):
        super().__init__(message)


class CouponInvalidError(ValidationError):
    """Raised when a coupon fails validation or has no usage left."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ConflictError(FulfillmentError):
    """Raised for state-machine violations (already decided, already refunded...)."""
    pass


class InsufficientStockError(FulfillmentError):
    """Raised when a strict decrement cannot be satisfied."""

    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"insufficient stock for product {product_id}: requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ConcurrencyError(FulfillmentError):
    """Raised when a lock/transaction conflict persists after bounded retries."""
    pass
