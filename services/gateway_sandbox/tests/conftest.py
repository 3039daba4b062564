import os

os.environ.setdefault("SANDBOX_DATABASE_URL", "sqlite://")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from services.gateway_sandbox import main  # noqa: E402
from services.gateway_sandbox.repo import Base, engine  # noqa: E402


@pytest.fixture
def client():
    Base.metadata.drop_all(engine)
    with TestClient(main.app) as c:
        c.auth = (main.KEY_ID, main.KEY_SECRET)
        yield c


@pytest.fixture
def paid_order(client):
    """An order with an authorized payment; returns the callback fields."""

    def _make(amount=23600, outcome="authorized"):
        order = client.post("/v1/orders", json={"amount": amount, "currency": "INR", "receipt": "cart-u1"}).json()
        return client.post("/v1/sandbox/payments", json={"order_id": order["id"], "outcome": outcome}).json()

    return _make
