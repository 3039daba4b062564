"""HTTP adapter clients for the checkout collaborator ports.

Concrete ``httpx`` clients for the cart, coupon, pricing and address
services. All of them go through ``apps.common.http.send``, which adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
    by the gateway middleware.
- One circuit breaker per downstream service, with HALF_OPEN probing after
    a timeout.
- Retries with exponential backoff for transport errors and 5xx.

Every call here is a read or an idempotent lookup except address
creation, which is attempted once.
"""

from typing import Optional

import httpx
from django.conf import settings

from apps.common.errors import InvalidCoupon, UpstreamUnavailable, ValidationFailed
from apps.common.http import get_breaker, send

from .domain import Cart, CartItem, PriceQuote


def _unavailable(service: str, detail) -> UpstreamUnavailable:
    return UpstreamUnavailable(f"{service}: {detail}")


class _HttpClient:
    service = ""
    setting = ""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or getattr(settings, self.setting)).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self._cb = get_breaker(self.service)

    def _send(self, method: str, path: str, *, retry: bool = True, **kwargs) -> httpx.Response:
        try:
            resp = send(self._cb, method, f"{self.base_url}{path}", retry=retry, timeout=self.timeout, **kwargs)
        except httpx.RequestError as e:
            raise _unavailable(self.service, e)
        if resp.status_code >= 500:
            raise _unavailable(self.service, f"HTTP {resp.status_code}")
        return resp


class HttpCartClient(_HttpClient):
    """Cart service client. A 404 means the user has no cart."""

    service = "cart"
    setting = "CART_BASE_URL"

    def get_cart_by_user_id(self, user_id: str) -> Cart:
        resp = self._send("GET", f"/carts/{user_id}")
        if resp.status_code == 404:
            return Cart(user_id=user_id, items=[], subtotal_cents=0, tax_cents=0, currency=settings.CHECKOUT_CURRENCY)
        if resp.status_code != 200:
            raise _unavailable(self.service, f"HTTP {resp.status_code}")
        data = resp.json()
        items = [
            CartItem(
                product_id=str(i["product_id"]),
                sku=i["sku"],
                quantity=int(i["quantity"]),
                price_cents=int(i["price_cents"]),
                variant_id=str(i.get("variant_id") or ""),
                mrp_cents=int(i.get("mrp_cents") or 0),
                name=i.get("name") or "",
            )
            for i in data.get("items") or []
        ]
        return Cart(
            user_id=user_id,
            items=items,
            subtotal_cents=int(data.get("subtotal_cents", sum(i.price_cents * i.quantity for i in items))),
            tax_cents=int(data.get("tax_cents", 0)),
            currency=data.get("currency") or settings.CHECKOUT_CURRENCY,
        )


class HttpCouponClient(_HttpClient):
    """Coupon service client.

    Business rejections (400/404/422) map to ``InvalidCoupon`` and do not
    count against the breaker.
    """

    service = "coupon"
    setting = "COUPON_BASE_URL"

    def validate_coupon(self, code: str, amount_cents: int) -> int:
        resp = self._send("POST", "/coupons/validate", json={"code": code, "amount_cents": amount_cents})
        if resp.status_code in (400, 404, 422):
            message: Optional[str] = None
            try:
                message = resp.json().get("message")
            except ValueError:
                pass
            raise InvalidCoupon(message or f"coupon {code!r} rejected")
        if resp.status_code != 200:
            raise _unavailable(self.service, f"HTTP {resp.status_code}")
        return int(resp.json()["discount_cents"])


class HttpPricingClient(_HttpClient):
    service = "pricing"
    setting = "PRICING_BASE_URL"

    def calculate_price(self, product_id: str, quantity: int, base_price_cents: int) -> PriceQuote:
        resp = self._send(
            "POST",
            "/prices/calculate",
            json={"product_id": product_id, "quantity": quantity, "base_price_cents": base_price_cents},
        )
        if resp.status_code != 200:
            raise _unavailable(self.service, f"HTTP {resp.status_code}")
        data = resp.json()
        return PriceQuote(
            final_price_cents=int(data["final_price_cents"]),
            discount_cents=int(data.get("discount_cents", 0)),
        )


class HttpAddressClient(_HttpClient):
    service = "address"
    setting = "ADDRESS_BASE_URL"

    def create_address(self, user_id: str, payload: dict) -> str:
        resp = self._send("POST", f"/users/{user_id}/addresses", retry=False, json=payload)
        if resp.status_code in (400, 422):
            raise ValidationFailed("address rejected", code="INVALID_ADDRESS")
        if resp.status_code not in (200, 201):
            raise _unavailable(self.service, f"HTTP {resp.status_code}")
        return str(resp.json()["id"])
