import pytest
from django.core.cache import cache
from rest_framework.test import APIClient

from apps.common.http import reset_breakers
from apps.orders import providers as order_providers
from apps.orders.adapters import carts
from apps.orders.domain import CartItem
from apps.payments.providers import get_sandbox_gateway

SHIPPING = {
    "name": "Asha Rao",
    "line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "postal_code": "560001",
    "country": "IN",
}


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    settings.CART_TAX_RATE_PERCENT = 18
    yield
    get_sandbox_gateway().reset()
    carts.clear()
    order_providers.reset_idempotency_store()
    reset_breakers()
    cache.clear()


@pytest.fixture
def api():
    return APIClient()


@pytest.fixture
def sandbox():
    return get_sandbox_gateway()


@pytest.fixture
def make_stock(db):
    def _make(sku, quantity, reserved=0, product_id=None):
        from apps.inventory.models import Stock

        return Stock.objects.create(
            sku=sku,
            product_id=product_id or f"prod-{sku}",
            quantity=quantity,
            reserved=reserved,
        )

    return _make


@pytest.fixture
def put_cart():
    """Fill the stub cart: ``put_cart(user, [(sku, qty, price_cents), ...])``."""

    def _put(user_id, lines):
        carts.put(
            user_id,
            [CartItem(product_id=f"prod-{sku}", sku=sku, quantity=qty, price_cents=price) for sku, qty, price in lines],
        )

    return _put


@pytest.fixture
def pay(api, sandbox):
    """Create a provider order for the cart and authorize it in the sandbox.

    Returns the ``payment_details`` body a client would send to checkout.
    """

    def _pay(user_id, coupon_code=None, outcome="authorized", key="pay-1"):
        body = {"coupon_code": coupon_code} if coupon_code else {}
        resp = api.post(
            "/api/payments/orders/",
            body,
            format="json",
            HTTP_X_USER_ID=user_id,
            HTTP_IDEMPOTENCY_KEY=key,
        )
        assert resp.status_code == 201, resp.content
        return sandbox.simulate_payment(resp.json()["provider_order_id"], outcome=outcome)

    return _pay


@pytest.fixture
def shipping():
    return dict(SHIPPING)
