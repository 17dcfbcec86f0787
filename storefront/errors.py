"""Exceptions raised by the storefront service layer.

Routers translate these into HTTP responses; nothing below the routers
knows about HTTP.
"""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_detail(self) -> dict:
        return {"error": self.code, "message": self.message}

    @property
    def code(self) -> str:
        return "internal_error"


class ValidationError(StorefrontError):
    """Raised when request data is malformed, incomplete or inconsistent."""

    status_code = 400

    @property
    def code(self) -> str:
        return "validation_error"


class NotFound(StorefrontError):
    """Raised when a referenced order, product or variant doesn't exist."""

    status_code = 404

    @property
    def code(self) -> str:
        return "not_found"


class InsufficientStock(StorefrontError):
    """Raised when one or more line items can't be reserved.

    ``items`` holds one dict per failing line item so the customer can see
    exactly what to change.
    """

    status_code = 409

    def __init__(self, items: list[dict]):
        self.items = items
        names = ", ".join(str(i.get("product_name") or i.get("variant_id")) for i in items)
        super().__init__(f"Insufficient stock for: {names}")

    @property
    def code(self) -> str:
        return "insufficient_stock"

    def to_detail(self) -> dict:
        return {"error": self.code, "message": self.message, "items": self.items}


class PaymentGatewayError(StorefrontError):
    """Raised when the payment provider is unreachable or rejects a request."""

    status_code = 502

    @property
    def code(self) -> str:
        return "payment_gateway_error"


class WebhookSignatureError(StorefrontError):
    """Raised when a webhook arrives without a valid signature."""

    status_code = 401

    @property
    def code(self) -> str:
        return "invalid_webhook_signature"


class ReconciliationConflict(StorefrontError):
    """A payment result arrived for an order already in a terminal state.

    Never surfaced to clients; reconciliation logs it and returns the
    current order.
    """

    def __init__(self, order_number: str, payment_status: str):
        self.order_number = order_number
        self.payment_status = payment_status
        super().__init__(f"Order {order_number} is already {payment_status}")

    @property
    def code(self) -> str:
        return "reconciliation_conflict"


class InvalidStatusTransition(StorefrontError):
    """Raised when an admin requests a fulfilment transition the table forbids."""

    status_code = 409

    def __init__(self, current: str, requested: str, reason: str | None = None):
        self.current = current
        self.requested = requested
        msg = f"Cannot move order from '{current}' to '{requested}'"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)

    @property
    def code(self) -> str:
        return "invalid_status_transition"
