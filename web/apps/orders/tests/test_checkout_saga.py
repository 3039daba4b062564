"""Unit tests for the checkout saga against in-memory ports.

No database: orders, stock and payments are fakes sharing one
``InMemoryUnitOfWork``, so an abort rolls all of them back together.
"""

import pytest

from apps.common.errors import (
    EmptyCart,
    InsufficientStock,
    InvalidCoupon,
    InvalidPaymentMethod,
    InvalidSignature,
    PaymentAlreadyUsed,
    PaymentDetailsRequired,
    PaymentFailed,
    PaymentMethodRequired,
    PaymentOutcomeUnknown,
    RefundFailed,
    ShippingAddressRequired,
)
from apps.orders.domain import OrderPaymentStatus, OrderStatus, PaymentDetails

from .fakes import Harness

SHIP = {"name": "Asha", "line1": "12 MG Road", "city": "Bengaluru", "postal_code": "560001"}
DETAILS = PaymentDetails(provider_order_id="order_1", payment_id="pay_1", signature="sig")


def checkout(h, user="u1", **kwargs):
    kwargs.setdefault("shipping_address", SHIP)
    kwargs.setdefault("payment_method", "upi")
    kwargs.setdefault("payment_details", DETAILS)
    return h.service.process_checkout(user, **kwargs)


def test_single_item_with_tax_and_stock_decrement():
    h = Harness(stock_levels={"A": 10})
    h.cart("u1", [("A", 2, 10000)])

    order = checkout(h)

    assert (order.subtotal_cents, order.tax_cents, order.total_cents) == (20000, 3600, 23600)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment.status == OrderPaymentStatus.COMPLETED
    assert order.payment.transaction_id == "TXN-1"
    assert order.order_number.startswith("ORD-")
    assert h.stock.available["A"] == 8
    assert h.stock.movements == [("A", -2, order.order_number)]
    assert h.payments.statuses["TXN-1"] == "success"
    assert h.orders.rows[order.id].status == OrderStatus.CONFIRMED
    assert h.uow.committed


def test_coupon_discount_on_subtotal():
    h = Harness(stock_levels={"A": 10})
    h.cart("u1", [("A", 5, 10000)])

    order = checkout(h, coupon_code="save10")

    assert order.coupon_code == "SAVE10"
    assert order.coupon_discount_cents == 5000
    assert order.tax_cents == 9000
    assert order.total_cents == 50000 - 5000 + 9000


def test_coupon_below_minimum_is_rejected_before_payment():
    h = Harness(stock_levels={"A": 10})
    h.cart("u1", [("A", 1, 5000)])

    with pytest.raises(InvalidCoupon):
        checkout(h, coupon_code="SAVE10")
    assert h.payments.begun == []


def test_insufficient_stock_fails_before_payment():
    h = Harness(stock_levels={"B": 1})
    h.cart("u1", [("B", 2, 10000)])

    with pytest.raises(InsufficientStock) as e:
        checkout(h)

    assert e.value.status_code == 422
    assert h.payments.begun == []
    assert h.payments.refunds == []
    assert h.orders.rows == {}
    assert h.stock.available["B"] == 1


def test_stock_lost_after_capture_is_compensated_once():
    h = Harness(stock_levels={"A": 5, "B": 5})
    h.cart("u1", [("A", 1, 10000), ("B", 2, 10000)])
    h.stock.steal.add("B")

    with pytest.raises(InsufficientStock):
        checkout(h)

    assert len(h.payments.refunds) == 1
    txn, amount, reason = h.payments.refunds[0]
    assert (txn, amount) == ("TXN-1", 35400)
    assert "INSUFFICIENT_STOCK" in reason
    assert h.payments.statuses["TXN-1"] == "refunded"
    assert h.orders.rows == {}
    # decrement of A rolled back with the scope
    assert h.stock.available["A"] == 5
    assert h.uow.aborted


def test_failed_compensation_does_not_mask_original_error():
    h = Harness(stock_levels={"A": 5})
    h.cart("u1", [("A", 1, 10000)])
    h.stock.steal.add("A")
    h.payments.refund_error = RefundFailed("provider down")

    with pytest.raises(InsufficientStock):
        checkout(h)
    assert h.orders.rows == {}


@pytest.mark.parametrize(
    "outcome, error",
    [("declined", PaymentFailed), ("timeout", PaymentOutcomeUnknown), ("bad_signature", InvalidSignature)],
)
def test_capture_failure_releases_without_refund(outcome, error):
    h = Harness(stock_levels={"A": 5}, payment_outcome=outcome)
    h.cart("u1", [("A", 1, 10000)])

    with pytest.raises(error):
        checkout(h)

    assert h.payments.refunds == []
    assert len(h.payments.released) == 1
    assert isinstance(h.payments.released[0][1], error)
    assert h.orders.rows == {}
    assert h.stock.available["A"] == 5


def test_replay_with_same_key_returns_same_order():
    h = Harness(stock_levels={"A": 10})
    h.cart("u1", [("A", 2, 10000)])

    first = checkout(h, idempotency_key="k1")
    second = checkout(h, idempotency_key="k1")

    assert first.id == second.id
    assert len(h.payments.begun) == 1
    assert len(h.orders.rows) == 1
    assert h.stock.available["A"] == 8


def test_multi_item_mixed_discounts_use_each_line_quantity():
    h = Harness(stock_levels={"A": 10, "B": 10, "C": 10}, pricing_rules={"prod-A": 9000, "prod-C": 2500})
    h.cart("u1", [("A", 3, 10000), ("B", 2, 5000), ("C", 1, 3000)])

    order = checkout(h)

    by_sku = {i.sku: i for i in order.items}
    assert (by_sku["A"].unit_price_cents, by_sku["A"].total_cents, by_sku["A"].discount_cents) == (9000, 27000, 3000)
    assert (by_sku["B"].unit_price_cents, by_sku["B"].total_cents, by_sku["B"].discount_cents) == (5000, 10000, 0)
    assert (by_sku["C"].unit_price_cents, by_sku["C"].total_cents, by_sku["C"].discount_cents) == (2500, 2500, 500)
    assert order.subtotal_cents == 43000
    assert order.discount_cents == 3500
    assert order.tax_cents == 7740
    assert order.total_cents == 43000 - 3500 + 7740


def test_total_is_clamped_at_zero():
    h = Harness(stock_levels={"A": 10}, coupons={"FREE": (100, 0)}, pricing_rules={"prod-A": 0}, tax=0)
    h.cart("u1", [("A", 1, 10000)])

    summary = h.service.checkout_summary("u1", "FREE")
    assert summary.total_cents == 0


def test_billing_defaults_to_shipping():
    h = Harness(stock_levels={"A": 10})
    h.cart("u1", [("A", 1, 10000)])

    order = checkout(h)
    assert order.billing_address_id == order.shipping_address_id


@pytest.mark.parametrize(
    "kwargs, error",
    [
        ({"shipping_address": None}, ShippingAddressRequired),
        ({"payment_method": None}, PaymentMethodRequired),
        ({"payment_method": "cod"}, InvalidPaymentMethod),
        ({"payment_details": None}, PaymentDetailsRequired),
    ],
)
def test_validation_errors_never_touch_payment_or_stock(kwargs, error):
    h = Harness(stock_levels={"A": 10})
    h.cart("u1", [("A", 1, 10000)])

    with pytest.raises(error):
        checkout(h, **kwargs)
    assert h.payments.begun == []
    assert h.stock.available["A"] == 10


def test_empty_cart():
    h = Harness()
    with pytest.raises(EmptyCart):
        checkout(h)


def test_validate_checkout_reports_totals():
    h = Harness(stock_levels={"A": 10})
    h.cart("u1", [("A", 2, 10000)])

    result = h.service.validate_checkout("u1", SHIP, "credit_card")
    assert result == {"valid": True, "item_count": 2, "total_cents": 23600, "tax_cents": 3600}


def test_losing_a_confirm_race_never_refunds_the_winner():
    h = Harness(stock_levels={"A": 5}, payment_outcome="settled_elsewhere")
    h.cart("u1", [("A", 1, 10000)])

    with pytest.raises(PaymentAlreadyUsed):
        checkout(h)

    assert h.payments.refunds == []
    assert len(h.payments.released) == 1
    assert isinstance(h.payments.released[0][1], PaymentAlreadyUsed)
    assert h.orders.rows == {}
    assert h.stock.available["A"] == 5
