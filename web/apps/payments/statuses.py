"""Payment status vocabularies and the provider-to-local mapping.

Provider statuses are parsed into a closed enum. Anything the provider
sends that we do not know becomes ``UNKNOWN``, and ``to_local_status`` is a
total function whose fallback is ``PENDING``: an unrecognised status keeps
a payment open for the sync job instead of being treated as settled.
"""

from enum import Enum


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @classmethod
    def choices(cls):
        return [(s.value, s.value) for s in cls]


class ProviderPaymentStatus(str, Enum):
    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw) -> "ProviderPaymentStatus":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


_PROVIDER_TO_LOCAL = {
    ProviderPaymentStatus.CREATED: PaymentStatus.PENDING,
    ProviderPaymentStatus.AUTHORIZED: PaymentStatus.PROCESSING,
    ProviderPaymentStatus.CAPTURED: PaymentStatus.SUCCESS,
    ProviderPaymentStatus.FAILED: PaymentStatus.FAILED,
    ProviderPaymentStatus.REFUNDED: PaymentStatus.REFUNDED,
    ProviderPaymentStatus.UNKNOWN: PaymentStatus.PENDING,
}


def to_local_status(raw) -> PaymentStatus:
    return _PROVIDER_TO_LOCAL.get(ProviderPaymentStatus.parse(raw), PaymentStatus.PENDING)


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"

    @classmethod
    def parse(cls, raw) -> "RefundStatus":
        value = str(raw or "").strip().lower()
        if value == "created":
            return cls.PENDING
        try:
            return cls(value)
        except ValueError:
            return cls.PENDING


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    NETBANKING = "netbanking"
    UPI = "upi"
    WALLET = "wallet"

    @classmethod
    def parse(cls, raw) -> "PaymentMethod | None":
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return None


CURRENCIES = {"INR", "USD", "EUR", "GBP"}
