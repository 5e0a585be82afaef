"""Custom exceptions for the storefront API."""

from typing import Dict, Optional


class StorefrontError(Exception):
    """Base exception for all business-rule failures.

    `kind` is the stable identifier clients can switch on; the message is safe
    to show to end users.
    """

    kind = "StorefrontError"


class UnauthenticatedError(StorefrontError):
    """Raised when a request carries no valid credentials."""

    kind = "Unauthenticated"

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message)


class UnauthorizedError(StorefrontError):
    """Raised when the caller is authenticated but not entitled."""

    kind = "Unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFoundError(StorefrontError):
    kind = "NotFound"


class AddressNotFoundError(NotFoundError):
    kind = "AddressNotFound"

    def __init__(self, address_id: str):
        self.address_id = address_id
        super().__init__("Address not found")


class OrderNotFoundError(NotFoundError):
    kind = "OrderNotFound"

    def __init__(self, order_ref: str):
        self.order_ref = order_ref
        super().__init__("Order not found")


class CouponNotFoundError(NotFoundError):
    kind = "CouponNotFound"

    def __init__(self, code: str):
        self.code = code
        super().__init__("Invalid coupon code")


class ProductNotFoundError(NotFoundError):
    kind = "ProductNotFound"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Product not found")


class ConflictError(StorefrontError):
    """Raised when a unique value (email, coupon code) is already taken."""

    kind = "Conflict"


class EmptyCartError(StorefrontError):
    kind = "EmptyCart"

    def __init__(self):
        super().__init__("Cart is empty")


class InsufficientStockError(StorefrontError):
    """Raised when a product cannot cover the requested quantity."""

    kind = "InsufficientStock"

    def __init__(self, product_id: str, product_name: str, available: int):
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        super().__init__(f"{product_name} only has {available} items in stock")


class InvalidStateTransitionError(StorefrontError):
    kind = "InvalidStateTransition"

    def __init__(self, current: str, action: str, message: Optional[str] = None):
        self.current = current
        self.action = action
        super().__init__(message or f"Cannot {action} an order that is {current}")


class CouponError(StorefrontError):
    """Base class for coupon rule failures."""

    kind = "CouponError"


class CouponInactiveError(CouponError):
    kind = "CouponInactive"

    def __init__(self):
        super().__init__("This coupon is no longer active")


class CouponNotYetValidError(CouponError):
    kind = "CouponNotYetValid"

    def __init__(self):
        super().__init__("This coupon is not yet valid")


class CouponExpiredError(CouponError):
    kind = "CouponExpired"

    def __init__(self):
        super().__init__("This coupon has expired")


class UsageLimitReachedError(CouponError):
    kind = "UsageLimitReached"

    def __init__(self):
        super().__init__("This coupon has reached its usage limit")


class PerUserLimitReachedError(CouponError):
    kind = "PerUserLimitReached"

    def __init__(self):
        super().__init__("You have already used this coupon")


class BelowMinimumOrderError(CouponError):
    kind = "BelowMinimumOrder"

    def __init__(self, minimum: int, formatted_minimum: str):
        self.minimum = minimum
        super().__init__(f"Minimum order amount of Rs {formatted_minimum} required for this coupon")


class RateLimitedError(StorefrontError):
    """Raised when a caller exceeds a limiter's budget for the current window."""

    kind = "RateLimited"

    def __init__(self, message: str, retry_after_seconds: int, headers: Optional[Dict[str, str]] = None):
        self.retry_after_seconds = retry_after_seconds
        self.headers = headers or {"Retry-After": str(retry_after_seconds)}
        super().__init__(message)


class TransientStoreError(StorefrontError):
    """Raised when the store fails mid-transaction; the caller may retry.

    The original cause is kept on `__cause__` for logging and never shown to
    clients.
    """

    kind = "TransientFailure"

    def __init__(self, message: str = "The service is temporarily unavailable, please retry"):
        super().__init__(message)
