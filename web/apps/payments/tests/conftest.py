import uuid

import pytest

from apps.payments.models import Transaction


@pytest.fixture
def make_txn(db, sandbox):
    """A local transaction backed by a sandbox provider payment.

    ``outcome`` is the provider payment status; ``status`` the local one.
    """

    def _make(status="pending", outcome="authorized", amount_cents=10000, **fields):
        provider_order = sandbox.create_provider_order(amount_cents, "INR", "cart-u1")
        details = sandbox.simulate_payment(provider_order.id, outcome=outcome)
        return Transaction.objects.create(
            order_id=fields.pop("order_id", uuid.uuid4()),
            user_id=fields.pop("user_id", "u1"),
            provider_order_id=provider_order.id,
            provider_payment_id=details["payment_id"],
            amount_cents=amount_cents,
            method="upi",
            status=status,
            **fields,
        )

    return _make
