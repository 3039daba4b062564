"""Domain models, status machine and ports for checkout.

Dataclasses here are plain values with no ORM coupling. The ports are the
seams the checkout service depends on; Django-backed implementations live
in ``repository``, ``unit_of_work``, ``apps.inventory.ledger`` and
``apps.payments.service``, in-process stubs in ``adapters``.
"""

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, List, Optional, Protocol

from apps.common.errors import InvalidStatus, InvalidTransition
from apps.payments.statuses import PaymentMethod


# ---- Enums ----
class OrderStatus(str, Enum):
    """Fulfillment status of an order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"

    @classmethod
    def parse(cls, raw) -> "OrderStatus":
        """Parse a client-supplied status.

        Raises:
            InvalidStatus: For anything outside the fixed set.
        """
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise InvalidStatus(f"unknown order status {raw!r}")


_PRE_DELIVERY = (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED)

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    # Return flow: a delivered order can still come back.
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}
for _src in _PRE_DELIVERY:
    ALLOWED_TRANSITIONS[_src] = ALLOWED_TRANSITIONS[_src] | {OrderStatus.CANCELLED, OrderStatus.RETURNED}


def check_transition(current, target) -> OrderStatus:
    """Validate ``current -> target`` and return the parsed target.

    Raises:
        InvalidStatus: If ``target`` is not a known status.
        InvalidTransition: If the move is not allowed from ``current``.
    """
    src = OrderStatus.parse(current)
    dst = OrderStatus.parse(target)
    if dst not in ALLOWED_TRANSITIONS[src]:
        raise InvalidTransition(f"cannot move order from {src.value} to {dst.value}")
    return dst


class OrderPaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


def generate_order_number(now: datetime) -> str:
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


# ---- Collaborator values ----
@dataclass(frozen=True)
class CartItem:
    product_id: str
    sku: str
    quantity: int
    price_cents: int
    variant_id: str = ""
    mrp_cents: int = 0
    name: str = ""


@dataclass(frozen=True)
class Cart:
    user_id: str
    items: List[CartItem]
    subtotal_cents: int
    tax_cents: int
    currency: str = "INR"


@dataclass(frozen=True)
class PriceQuote:
    """Pricing-rule result for one line: per-unit final price, line discount."""

    final_price_cents: int
    discount_cents: int


# ---- Entities ----
@dataclass(frozen=True)
class OrderItem:
    product_id: str
    sku: str
    quantity: int
    unit_price_cents: int
    total_cents: int
    discount_cents: int = 0
    variant_id: str = ""
    mrp_cents: int = 0
    name: str = ""


@dataclass
class OrderPayment:
    method: PaymentMethod
    status: OrderPaymentStatus = OrderPaymentStatus.PENDING
    transaction_id: Optional[str] = None
    amount_cents: int = 0
    paid_at: Optional[datetime] = None


@dataclass
class Order:
    """A checkout outcome.

    ``id`` is assigned in the domain (UUID4) so the payment record can
    reference the order before the order row exists.
    """

    id: uuid.UUID
    order_number: str
    user_id: str
    items: List[OrderItem]
    payment: OrderPayment
    shipping_address_id: str
    billing_address_id: str
    subtotal_cents: int
    discount_cents: int
    tax_cents: int
    total_cents: int
    currency: str = "INR"
    coupon_code: Optional[str] = None
    coupon_discount_cents: int = 0
    status: OrderStatus = OrderStatus.PENDING
    notes: str = ""
    tracking_number: str = ""
    shipping_provider: str = ""
    created_by: str = ""
    updated_by: str = ""
    internal_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def transition_to(self, target, actor: str = "") -> OrderStatus:
        self.status = check_transition(self.status, target)
        if actor:
            self.updated_by = actor
        return self.status

    def mark_paid(self, transaction_id: str, paid_at: datetime):
        self.payment.status = OrderPaymentStatus.COMPLETED
        self.payment.transaction_id = transaction_id
        self.payment.amount_cents = self.total_cents
        self.payment.paid_at = paid_at


@dataclass(frozen=True)
class PricingSummary:
    items: List[OrderItem]
    subtotal_cents: int
    discount_cents: int
    coupon_code: Optional[str]
    coupon_discount_cents: int
    tax_cents: int
    total_cents: int
    currency: str

    def as_dict(self) -> dict:
        return {
            "items": [
                {
                    "product_id": i.product_id,
                    "sku": i.sku,
                    "quantity": i.quantity,
                    "unit_price_cents": i.unit_price_cents,
                    "discount_cents": i.discount_cents,
                    "total_cents": i.total_cents,
                }
                for i in self.items
            ],
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "coupon_code": self.coupon_code,
            "coupon_discount_cents": self.coupon_discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class PaymentDetails:
    """Checkout callback fields returned by the provider to the client."""

    provider_order_id: str
    payment_id: str
    signature: str


@dataclass(frozen=True)
class PaymentAttempt:
    """The payment side of one checkout, as seen by the saga."""

    transaction_id: str
    order_id: uuid.UUID
    provider_order_id: str
    provider_payment_id: str
    amount_cents: int
    currency: str
    method: PaymentMethod
    captured: bool = False
    processing_fee_cents: int = 0
    gateway_response: dict = field(default_factory=dict, compare=False)


# ---- Ports (DIP) ----
class CartPort(Protocol):
    def get_cart_by_user_id(self, user_id: str) -> Cart: ...


class CouponPort(Protocol):
    def validate_coupon(self, code: str, amount_cents: int) -> int:
        """Return the discount in cents, or raise ``InvalidCoupon``."""
        ...


class PricingPort(Protocol):
    def calculate_price(self, product_id: str, quantity: int, base_price_cents: int) -> PriceQuote: ...


class AddressPort(Protocol):
    def create_address(self, user_id: str, payload: dict) -> str: ...


class StockPort(Protocol):
    def check_availability(self, lines: Iterable[tuple[str, int]]) -> None: ...

    def decrement(self, sku: str, qty: int, reference: str) -> Any: ...


class PaymentsPort(Protocol):
    """Payment lifecycle as driven by the checkout saga.

    ``begin`` and the settlement calls (``refund``, ``release``) run outside
    the unit of work so their records survive an abort; ``capture`` talks
    to the provider; ``confirm`` writes inside the unit of work.
    """

    def begin(self, order: Order, method: PaymentMethod, details: PaymentDetails) -> PaymentAttempt: ...

    def capture(self, attempt: PaymentAttempt, signature: str) -> PaymentAttempt: ...

    def confirm(self, attempt: PaymentAttempt) -> None: ...

    def refund(self, attempt: PaymentAttempt, reason: str) -> None: ...

    def release(self, attempt: PaymentAttempt, error: BaseException) -> None: ...


class OrderStore(Protocol):
    def add(self, order: Order) -> None: ...

    def save(self, order: Order) -> None: ...


class UnitOfWork(Protocol):
    def begin(self) -> None: ...

    def commit(self) -> None: ...

    def abort(self) -> None: ...


class IdempotencyStore(Protocol):
    def get(self, key: str) -> Optional[Order]: ...

    def save(self, key: str, result: Order) -> None: ...
