"""Payment provider sandbox API built with FastAPI.

Speaks the wire format the web tier's ``HttpPaymentGateway`` expects:
amounts in minor units, ``/v1/orders``, ``/v1/payments/{id}/capture``,
``/v1/payments/{id}/refund`` and provider-style error bodies. Requests are
authenticated with HTTP basic auth (``key_id:key_secret``). Checkout
callback signatures are HMAC-SHA256 over ``order_id|payment_id`` under the
key secret, exactly as the real provider computes them.

``/v1/sandbox/payments`` is sandbox-only: it plays the customer paying for
an order so local runs can drive a full checkout.
"""

import hashlib
import hmac
import json
import logging
import os
import secrets
import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated, Literal, Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .repo import SandboxError, SandboxRepo, engine, init_db

KEY_ID = os.getenv("SANDBOX_KEY_ID", "rzp_test_key")
KEY_SECRET = os.getenv("SANDBOX_KEY_SECRET", "sandbox-key-secret")
WEBHOOK_SECRET = os.getenv("SANDBOX_WEBHOOK_SECRET", "sandbox-webhook-secret")
WEBHOOK_URL = os.getenv("SANDBOX_WEBHOOK_URL", "")
DB_WAIT_SECS = float(os.getenv("SANDBOX_DB_WAIT_SECS", "30"))

logger = logging.getLogger("gateway_sandbox")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


def _wait_for_db() -> None:
    deadline = time.time() + DB_WAIT_SECS
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            return
        except OperationalError:
            if time.time() > deadline:
                raise
            time.sleep(1)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _wait_for_db()
    init_db()
    yield


app = FastAPI(title="Payment Provider Sandbox", lifespan=lifespan)
security = HTTPBasic()

Currency = constr(pattern=r"^[A-Z]{3}$")


def authenticate(credentials: Annotated[HTTPBasicCredentials, Depends(security)]) -> str:
    ok_id = secrets.compare_digest(credentials.username.encode(), KEY_ID.encode())
    ok_secret = secrets.compare_digest(credentials.password.encode(), KEY_SECRET.encode())
    if not (ok_id and ok_secret):
        raise HTTPException(status_code=401, detail="invalid key", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


Auth = Annotated[str, Depends(authenticate)]


def sign(secret: str, message: str | bytes) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class OrderIn(BaseModel):
    amount: int = Field(gt=0)
    currency: Currency
    receipt: str = Field(default="", max_length=64)
    notes: dict = Field(default_factory=dict)


class SimulatePaymentIn(BaseModel):
    order_id: str
    method: str = "upi"
    outcome: Literal["authorized", "captured", "failed"] = "authorized"
    amount: Optional[int] = Field(default=None, gt=0)


class CaptureIn(BaseModel):
    amount: int = Field(gt=0)
    currency: Currency


class RefundIn(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)
    notes: dict = Field(default_factory=dict)


@app.exception_handler(SandboxError)
async def sandbox_error_handler(_request: Request, exc: SandboxError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


def emit_webhook(event: str, entity_name: str, entity: dict) -> None:
    """Deliver a signed webhook when ``SANDBOX_WEBHOOK_URL`` is configured.

    Delivery is best effort: a failure is logged and the API call that
    triggered it still succeeds, as with the real provider.
    """
    if not WEBHOOK_URL:
        return
    body = json.dumps(
        {"event": event, "payload": {entity_name: {"entity": entity}}}, separators=(",", ":")
    ).encode("utf-8")
    try:
        resp = httpx.post(
            WEBHOOK_URL,
            content=body,
            headers={"Content-Type": "application/json", "X-Razorpay-Signature": sign(WEBHOOK_SECRET, body)},
            timeout=5.0,
        )
        logger.info("webhook delivered", extra={"event": event, "status": resp.status_code})
    except httpx.HTTPError as e:
        logger.warning("webhook delivery failed", extra={"event": event, "error": str(e)})


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/v1/orders")
def create_order(
    req: OrderIn,
    _key: Auth,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Create a provider order.

    With an ``Idempotency-Key`` a retried request returns the order the
    first one created; reusing the key with another body is a 409.
    """
    order, replayed = SandboxRepo().create_order(
        req.amount, req.currency, req.receipt, req.notes, idempotency_key=idempotency_key
    )
    if not replayed:
        logger.info("order created", extra={"order_id": order["id"], "amount": order["amount"]})
    return order


@app.post("/v1/sandbox/payments")
def simulate_payment(req: SimulatePaymentIn, _key: Auth):
    """Return the checkout callback fields a client would post back."""
    payment = SandboxRepo().create_payment(req.order_id, req.method, req.outcome, req.amount)
    if req.outcome == "authorized":
        emit_webhook("payment.authorized", "payment", payment)
    elif req.outcome == "failed":
        emit_webhook("payment.failed", "payment", payment)
    return {
        "provider_order_id": req.order_id,
        "payment_id": payment["id"],
        "signature": sign(KEY_SECRET, f"{req.order_id}|{payment['id']}"),
    }


@app.get("/v1/payments/{payment_id}")
def get_payment(payment_id: str, _key: Auth):
    return SandboxRepo().get_payment(payment_id)


@app.post("/v1/payments/{payment_id}/capture")
def capture_payment(payment_id: str, req: CaptureIn, _key: Auth):
    payment = SandboxRepo().capture(payment_id, req.amount, req.currency)
    logger.info("payment captured", extra={"payment_id": payment_id, "amount": req.amount})
    emit_webhook("payment.captured", "payment", payment)
    return payment


@app.post("/v1/payments/{payment_id}/refund")
def refund_payment(payment_id: str, req: RefundIn, _key: Auth):
    refund, _payment = SandboxRepo().refund(payment_id, req.amount, str(req.notes.get("reason", "")))
    logger.info("payment refunded", extra={"payment_id": payment_id, "refund_id": refund["id"]})
    emit_webhook("refund.processed", "refund", refund)
    return refund


@app.get("/v1/refunds/{refund_id}")
def get_refund(refund_id: str, _key: Auth):
    return SandboxRepo().get_refund(refund_id)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
