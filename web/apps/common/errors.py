"""Error taxonomy shared by the checkout, payment and stock layers.

Each error carries a stable machine-readable ``code`` (returned to clients
as ``{"detail": code}``) and the HTTP status the API layer maps it to.
Domain code raises these; views translate them with ``to_body()`` and
``status_code`` and never inspect messages.
"""


class AppError(Exception):
    """Base class for errors that have a defined client-facing mapping."""

    code = "APP_ERROR"
    status_code = 400

    def __init__(self, message: str | None = None, *, code: str | None = None):
        if code:
            self.code = code
        self.message = message or self.code
        super().__init__(self.message)

    def to_body(self) -> dict:
        body = {"detail": self.code}
        if self.message and self.message != self.code:
            body["message"] = self.message
        return body


# ---- Client errors ----
class ValidationFailed(AppError):
    code = "VALIDATION_ERROR"
    status_code = 400


class EmptyCart(AppError):
    code = "EMPTY_CART"
    status_code = 400


class ShippingAddressRequired(AppError):
    code = "SHIPPING_ADDRESS_REQUIRED"
    status_code = 400


class PaymentMethodRequired(AppError):
    code = "PAYMENT_METHOD_REQUIRED"
    status_code = 400


class InvalidPaymentMethod(AppError):
    code = "INVALID_PAYMENT_METHOD"
    status_code = 400


class PaymentDetailsRequired(AppError):
    code = "PAYMENT_DETAILS_REQUIRED"
    status_code = 400


class InvalidCoupon(AppError):
    code = "INVALID_COUPON"
    status_code = 400


class InsufficientStock(AppError):
    """Requested quantity exceeds what the ledger can give."""

    code = "INSUFFICIENT_STOCK"
    status_code = 422

    def __init__(self, sku: str, requested: int, available: int):
        self.sku = sku
        self.requested = requested
        self.available = available
        super().__init__(f"{sku}: requested {requested}, available {available}")


class NotFound(AppError):
    code = "NOT_FOUND"
    status_code = 404


class StockNotFound(NotFound):
    code = "STOCK_NOT_FOUND"


class InvalidStatus(AppError):
    code = "INVALID_STATUS"
    status_code = 400


class InvalidTransition(AppError):
    code = "INVALID_TRANSITION"
    status_code = 409


class RefundNotAllowed(AppError):
    code = "REFUND_NOT_ALLOWED"
    status_code = 409


class RefundExceedsAmount(AppError):
    code = "REFUND_EXCEEDS_AMOUNT"
    status_code = 422


class PaymentAlreadyUsed(AppError):
    code = "PAYMENT_ALREADY_USED"
    status_code = 409


# ---- Gateway errors ----
class InvalidSignature(AppError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class PaymentFailed(AppError):
    code = "PAYMENT_FAILED"
    status_code = 402


class RefundFailed(AppError):
    code = "REFUND_FAILED"
    status_code = 502


class PaymentOutcomeUnknown(AppError):
    """The provider may or may not have moved money; sync will find out."""

    code = "PAYMENT_OUTCOME_UNKNOWN"
    status_code = 504


class UpstreamUnavailable(AppError):
    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503
