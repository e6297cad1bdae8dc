"""Custom exceptions for merchstore."""


class MerchStoreError(Exception):
    """Base exception for all merchstore errors."""

    pass


class ValidationError(MerchStoreError):
    """Raised when user input (quantities, addresses, ids) is invalid."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InsufficientStockError(ValidationError):
    """Raised when a cart line asks for more units than are in stock."""

    def __init__(self, name: str, available: int, requested: int, field: str | None = "quantity"):
        self.name = name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Only {available} of {name} available in stock (requested {requested})", field=field
        )


class ConfigError(MerchStoreError):
    """Raised when the store configuration fails validation."""

    def __init__(self, source: str, problems: list[str]):
        self.source = source
        self.problems = problems
        details = "; ".join(problems)
        super().__init__(f"Invalid configuration in {source}: {details}")


class InvalidSchemaVersionError(MerchStoreError):
    """Raised when a stored document has an unsupported schema version."""

    def __init__(self, found: int, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"Unsupported schema version {found}. This tool supports version {supported}."
        )


class ProductNotFoundError(MerchStoreError):
    """Raised when a product or variant doesn't exist or is inactive."""

    def __init__(self, product_id: str, variant_id: str | None = None):
        self.product_id = product_id
        self.variant_id = variant_id
        if variant_id:
            msg = f"Product variant not found or unavailable: {product_id}/{variant_id}"
        else:
            msg = f"Product not found or unavailable: {product_id}"
        super().__init__(msg)


class CartLineNotFoundError(MerchStoreError):
    """Raised when a cart line ID doesn't exist in the session's cart."""

    def __init__(self, line_id: str):
        self.line_id = line_id
        super().__init__(f"Cart item not found: {line_id}")


class PromoInvalid(MerchStoreError):
    """Raised when a promo code is unknown, expired or not eligible."""

    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(f"Promo code '{code}' cannot be applied: {reason}")


class StepIncomplete(MerchStoreError):
    """Raised when advancing past a checkout step whose data is missing."""

    def __init__(self, step: str, missing: list[str]):
        self.step = step
        self.missing = missing
        super().__init__(
            f"Checkout step '{step}' is incomplete (missing: {', '.join(missing)})"
        )


class StepNotAccessible(MerchStoreError):
    """Raised when navigating to a checkout step that cannot be reached."""

    def __init__(self, step: str, current: str):
        self.step = step
        self.current = current
        super().__init__(f"Checkout step '{step}' is not accessible from '{current}'")


class PaymentError(MerchStoreError):
    """Raised when the payment gateway reports a hard failure."""

    CATEGORIES = ("card_error", "validation_error", "api_error", "network_error")

    def __init__(self, category: str, reason: str, code: str | None = None):
        if category not in self.CATEGORIES:
            category = "api_error"
        self.category = category
        self.reason = reason
        self.code = code
        super().__init__(reason)


class PaymentInProgressError(MerchStoreError):
    """Raised when a second payment submission starts while one is in flight."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"A payment is already being processed for session {session_id}")


class OrderNotFoundError(MerchStoreError):
    """Raised when an order ID or order number doesn't exist."""

    def __init__(self, order_ref: str):
        self.order_ref = order_ref
        super().__init__(f"Order not found: {order_ref}")


class InvalidTransition(MerchStoreError):
    """Raised when an order status change is not allowed by the state machine."""

    def __init__(self, current: str, requested: str, allowed: list[str], reason: str | None = None):
        self.current = current
        self.requested = requested
        self.allowed = allowed
        msg = f"Cannot transition from {current} to {requested}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class WebhookError(MerchStoreError):
    """Raised when a gateway webhook payload fails verification or parsing."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid webhook: {reason}")


class NotAuthorizedError(MerchStoreError):
    """Raised when an admin request lacks a valid token."""

    def __init__(self):
        super().__init__("Admin token missing or invalid")
