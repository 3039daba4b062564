"""Service provider helpers for wiring ``CheckoutService`` with its ports.

``get_checkout_service`` returns a configured service. With
``settings.USE_HTTP_ADAPTERS`` the collaborators are the HTTP clients;
otherwise the in-process stubs are used. Stock, orders, the unit of work
and payments are always the Django-backed implementations, and the
idempotency cache is one process-wide instance.
"""

import threading

from django.conf import settings

from apps.inventory.ledger import StockLedger
from apps.payments.providers import get_payment_service

from .adapters import AddressStub, CartStub, CouponStub, PricingStub
from .http_adapters import HttpAddressClient, HttpCartClient, HttpCouponClient, HttpPricingClient
from .idempotency import TTLIdempotencyStore
from .repository import OrderRepository
from .service import CheckoutService
from .unit_of_work import DjangoUnitOfWork

_idempotency: TTLIdempotencyStore | None = None
_address_stub = AddressStub()
_lock = threading.Lock()


def get_idempotency_store() -> TTLIdempotencyStore:
    global _idempotency
    with _lock:
        if _idempotency is None:
            _idempotency = TTLIdempotencyStore(
                ttl_seconds=settings.IDEMPOTENCY_CACHE_TTL_SECS,
                max_entries=settings.IDEMPOTENCY_CACHE_MAX_ENTRIES,
            )
        return _idempotency


def reset_idempotency_store() -> None:
    global _idempotency
    with _lock:
        _idempotency = None


def get_order_repository() -> OrderRepository:
    return OrderRepository()


def get_checkout_service() -> CheckoutService:
    """Return a ``CheckoutService`` wired for the current settings."""
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        collaborators = dict(
            cart=HttpCartClient(),
            coupons=HttpCouponClient(),
            pricing=HttpPricingClient(),
            addresses=HttpAddressClient(),
        )
    else:
        collaborators = dict(
            cart=CartStub(),
            coupons=CouponStub(),
            pricing=PricingStub(),
            addresses=_address_stub,
        )
    return CheckoutService(
        **collaborators,
        stock=StockLedger(),
        payments=get_payment_service(),
        orders=get_order_repository(),
        uow_factory=DjangoUnitOfWork,
        idempotency=get_idempotency_store(),
        currency=settings.CHECKOUT_CURRENCY,
    )
