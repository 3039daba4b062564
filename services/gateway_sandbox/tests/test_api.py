from services.gateway_sandbox.main import KEY_SECRET, sign


def test_requires_basic_auth(client):
    r = client.post("/v1/orders", json={"amount": 100, "currency": "INR"}, auth=("rzp_test_key", "wrong"))
    assert r.status_code == 401
    assert client.get("/health").json() == {"ok": True}


def test_order_idempotency(client):
    body = {"amount": 5000, "currency": "INR", "receipt": "cart-u1"}
    headers = {"Idempotency-Key": "u1:k1"}

    first = client.post("/v1/orders", json=body, headers=headers).json()
    second = client.post("/v1/orders", json=body, headers=headers).json()
    assert first["id"] == second["id"]
    assert first["status"] == "created"

    r = client.post("/v1/orders", json={**body, "amount": 6000}, headers=headers)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "IDEMPOTENCY_CONFLICT"

    assert client.post("/v1/orders", json=body).json()["id"] != first["id"]


def test_callback_signature_matches_provider_scheme(client, paid_order):
    cb = paid_order()
    assert cb["signature"] == sign(KEY_SECRET, f"{cb['provider_order_id']}|{cb['payment_id']}")


def test_capture_then_partial_and_full_refund(client, paid_order):
    pid = paid_order(amount=10000)["payment_id"]

    r = client.post(f"/v1/payments/{pid}/capture", json={"amount": 10000, "currency": "INR"})
    assert r.status_code == 200
    assert (r.json()["status"], r.json()["fee"]) == ("captured", 200)

    # capturing again is harmless
    assert client.post(f"/v1/payments/{pid}/capture", json={"amount": 10000, "currency": "INR"}).status_code == 200

    refund = client.post(f"/v1/payments/{pid}/refund", json={"amount": 4000, "notes": {"reason": "damaged"}}).json()
    assert (refund["amount"], refund["status"]) == (4000, "processed")
    assert client.get(f"/v1/refunds/{refund['id']}").json()["payment_id"] == pid

    rest = client.post(f"/v1/payments/{pid}/refund", json={}).json()
    assert rest["amount"] == 6000
    payment = client.get(f"/v1/payments/{pid}").json()
    assert (payment["status"], payment["amount_refunded"]) == ("refunded", 10000)

    r = client.post(f"/v1/payments/{pid}/refund", json={"amount": 1})
    assert r.status_code == 400


def test_capture_rejects_wrong_amount_and_failed_payments(client, paid_order):
    pid = paid_order(amount=10000)["payment_id"]
    r = client.post(f"/v1/payments/{pid}/capture", json={"amount": 9000, "currency": "INR"})
    assert r.status_code == 400
    assert "authorized amount" in r.json()["error"]["description"]

    failed = paid_order(outcome="failed")["payment_id"]
    r = client.post(f"/v1/payments/{failed}/capture", json={"amount": 23600, "currency": "INR"})
    assert r.status_code == 400
    assert r.json()["error"]["description"] == "card declined"


def test_refund_requires_capture_and_unknown_ids_are_404(client, paid_order):
    pid = paid_order()["payment_id"]
    assert client.post(f"/v1/payments/{pid}/refund", json={}).status_code == 400
    assert client.get("/v1/payments/pay_missing").status_code == 404
    assert client.get("/v1/refunds/rfnd_missing").json()["error"]["code"] == "NOT_FOUND"
    r = client.post("/v1/sandbox/payments", json={"order_id": "order_missing"})
    assert r.status_code == 404


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "req-7"})
    assert r.headers["X-Request-ID"] == "req-7"
