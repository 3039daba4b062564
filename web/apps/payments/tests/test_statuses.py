import pytest

from apps.payments.statuses import (
    PaymentMethod,
    PaymentStatus,
    ProviderPaymentStatus,
    RefundStatus,
    to_local_status,
)


@pytest.mark.parametrize(
    "raw, local",
    [
        ("created", PaymentStatus.PENDING),
        ("authorized", PaymentStatus.PROCESSING),
        ("CAPTURED", PaymentStatus.SUCCESS),
        ("failed", PaymentStatus.FAILED),
        ("refunded", PaymentStatus.REFUNDED),
        ("disputed", PaymentStatus.PENDING),
        (None, PaymentStatus.PENDING),
    ],
)
def test_provider_status_maps_to_local(raw, local):
    assert to_local_status(raw) is local


def test_unrecognised_provider_status_parses_to_unknown():
    assert ProviderPaymentStatus.parse(" Chargeback ") is ProviderPaymentStatus.UNKNOWN
    assert ProviderPaymentStatus.parse(ProviderPaymentStatus.CAPTURED) is ProviderPaymentStatus.CAPTURED


def test_refund_status_parse():
    assert RefundStatus.parse("created") is RefundStatus.PENDING
    assert RefundStatus.parse("processed") is RefundStatus.PROCESSED
    assert RefundStatus.parse("bogus") is RefundStatus.PENDING


def test_payment_method_parse():
    assert PaymentMethod.parse(" UPI ") is PaymentMethod.UPI
    assert PaymentMethod.parse("cod") is None
