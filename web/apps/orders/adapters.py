"""In-process stub adapters for the checkout collaborator ports.

These stubs implement ``CartPort``, ``CouponPort``, ``PricingPort`` and
``AddressPort`` without any network calls. They back local development
and the API tests, where deterministic behavior is useful and the cart,
coupon, pricing and address services are not running.
"""

import threading
import uuid
from typing import Dict, List, Optional

from django.conf import settings

from apps.common.errors import InvalidCoupon

from .domain import Cart, CartItem, PriceQuote


class CartRegistry:
    """Thread-safe user_id -> cart lines map shared by the stub cart."""

    def __init__(self):
        self._lock = threading.Lock()
        self._carts: Dict[str, List[CartItem]] = {}

    def put(self, user_id: str, items: List[CartItem]) -> None:
        with self._lock:
            self._carts[user_id] = list(items)

    def get(self, user_id: str) -> List[CartItem]:
        with self._lock:
            return list(self._carts.get(user_id, []))

    def clear(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._carts.clear()
            else:
                self._carts.pop(user_id, None)


carts = CartRegistry()


class CartStub:
    """Stub ``CartPort`` reading from the module-level ``carts`` registry.

    Subtotal is the sum of ``price * quantity``; tax is a flat
    ``CART_TAX_RATE_PERCENT`` of the subtotal, rounded down to the cent.
    """

    def __init__(self, registry: CartRegistry = carts, tax_rate_percent: int | None = None):
        self.registry = registry
        self.tax_rate_percent = (
            tax_rate_percent if tax_rate_percent is not None else settings.CART_TAX_RATE_PERCENT
        )

    def get_cart_by_user_id(self, user_id: str) -> Cart:
        items = self.registry.get(user_id)
        subtotal = sum(i.price_cents * i.quantity for i in items)
        return Cart(
            user_id=user_id,
            items=items,
            subtotal_cents=subtotal,
            tax_cents=subtotal * self.tax_rate_percent // 100,
            currency=settings.CHECKOUT_CURRENCY,
        )


class CouponStub:
    """Stub ``CouponPort`` with a fixed coupon table.

    Each entry is ``code -> (percent_off, min_amount_cents)``.
    """

    DEFAULT_COUPONS = {"SAVE10": (10, 10000)}

    def __init__(self, coupons: Optional[dict] = None):
        self.coupons = dict(self.DEFAULT_COUPONS if coupons is None else coupons)

    def validate_coupon(self, code: str, amount_cents: int) -> int:
        rule = self.coupons.get((code or "").upper())
        if rule is None:
            raise InvalidCoupon(f"coupon {code!r} does not exist")
        percent, minimum = rule
        if amount_cents < minimum:
            raise InvalidCoupon(f"coupon {code!r} needs a minimum of {minimum}")
        return amount_cents * percent // 100


class PricingStub:
    """Stub ``PricingPort``.

    ``rules`` maps a product id to a per-unit final price in cents;
    products without a rule keep their cart price. The line discount is
    the per-unit saving times the quantity.
    """

    def __init__(self, rules: Optional[dict] = None):
        self.rules = dict(rules or {})

    def calculate_price(self, product_id: str, quantity: int, base_price_cents: int) -> PriceQuote:
        final = min(self.rules.get(product_id, base_price_cents), base_price_cents)
        return PriceQuote(final_price_cents=final, discount_cents=(base_price_cents - final) * quantity)


class AddressStub:
    """Stub ``AddressPort`` that keeps addresses in memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self.addresses: Dict[str, dict] = {}

    def create_address(self, user_id: str, payload: dict) -> str:
        ref = f"addr_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self.addresses[ref] = {"user_id": user_id, **(payload or {})}
        return ref
