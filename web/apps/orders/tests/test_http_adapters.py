"""Unit tests for the HTTP collaborator clients.

``httpx.Client.request`` is monkeypatched; the tests assert how each
client maps statuses and transport errors onto domain values and errors.
"""

import httpx
import pytest

from apps.common.errors import InvalidCoupon, UpstreamUnavailable, ValidationFailed
from apps.orders.http_adapters import HttpAddressClient, HttpCartClient, HttpCouponClient, HttpPricingClient


class DummyResp:
    """Minimal httpx-like response stub."""

    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data or {}

    def json(self):
        return self._json


def respond(monkeypatch, *responses, calls=None):
    queue = list(responses)

    def fake_request(self, method, url, json=None, params=None, headers=None, **kw):
        if calls is not None:
            calls.append((method, url, json, headers))
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)


def test_cart_maps_items(monkeypatch):
    calls = []
    respond(
        monkeypatch,
        DummyResp(
            200,
            {
                "items": [{"product_id": 7, "sku": "A", "quantity": 2, "price_cents": 10000}],
                "subtotal_cents": 20000,
                "tax_cents": 3600,
                "currency": "INR",
            },
        ),
        calls=calls,
    )
    cart = HttpCartClient(base_url="http://cart").get_cart_by_user_id("u1")

    assert calls[0][:2] == ("GET", "http://cart/carts/u1")
    assert cart.items[0].product_id == "7"
    assert (cart.subtotal_cents, cart.tax_cents) == (20000, 3600)


def test_cart_404_is_an_empty_cart(monkeypatch):
    respond(monkeypatch, DummyResp(404))
    assert HttpCartClient(base_url="http://cart").get_cart_by_user_id("u1").items == []


def test_cart_retries_5xx_then_succeeds(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = []
    respond(monkeypatch, DummyResp(503), DummyResp(200, {"items": []}), calls=calls)

    cart = HttpCartClient(base_url="http://cart").get_cart_by_user_id("u1")

    assert cart.items == []
    assert len(calls) == 2
    assert calls[1][3]["X-Retry-Count"] == "1"


def test_cart_network_error_becomes_upstream_unavailable(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 2
    respond(monkeypatch, httpx.ConnectError("boom"))
    with pytest.raises(UpstreamUnavailable):
        HttpCartClient(base_url="http://cart").get_cart_by_user_id("u1")


def test_coupon_rejection_is_invalid_coupon(monkeypatch):
    respond(monkeypatch, DummyResp(422, {"message": "expired"}))
    with pytest.raises(InvalidCoupon) as e:
        HttpCouponClient(base_url="http://coupons").validate_coupon("OLD", 1000)
    assert e.value.message == "expired"


def test_coupon_discount(monkeypatch):
    respond(monkeypatch, DummyResp(200, {"discount_cents": 500}))
    assert HttpCouponClient(base_url="http://coupons").validate_coupon("SAVE10", 5000) == 500


def test_pricing_quote(monkeypatch):
    respond(monkeypatch, DummyResp(200, {"final_price_cents": 900, "discount_cents": 300}))
    quote = HttpPricingClient(base_url="http://pricing").calculate_price("p1", 3, 1000)
    assert (quote.final_price_cents, quote.discount_cents) == (900, 300)


def test_address_create_is_not_retried(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = []
    respond(monkeypatch, DummyResp(502), calls=calls)
    with pytest.raises(UpstreamUnavailable):
        HttpAddressClient(base_url="http://addr").create_address("u1", {"line1": "x"})
    assert len(calls) == 1


def test_address_rejected(monkeypatch):
    respond(monkeypatch, DummyResp(400))
    with pytest.raises(ValidationFailed) as e:
        HttpAddressClient(base_url="http://addr").create_address("u1", {})
    assert e.value.code == "INVALID_ADDRESS"


def test_address_created(monkeypatch):
    respond(monkeypatch, DummyResp(201, {"id": "addr_9"}))
    assert HttpAddressClient(base_url="http://addr").create_address("u1", {"line1": "x"}) == "addr_9"
