"""Payment gateway adapter.

Wraps the provider's REST API (Razorpay-compatible wire format: amounts
in minor units, ``/v1/orders``, ``/v1/payments/{id}/capture`` ...) behind
typed results. The same module holds the signature helpers and the
webhook decoder, which are shared with the in-process sandbox gateway.

Retry policy: reads and provider-order creation (which carries an
``Idempotency-Key``) are retried on transport errors and 5xx. Capture and
refund move money and are attempted exactly once; a transport failure
during capture raises ``PaymentOutcomeUnknown`` because the provider may
already have captured.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx
from django.conf import settings

from apps.common.errors import (
    InvalidSignature,
    NotFound,
    PaymentFailed,
    PaymentOutcomeUnknown,
    RefundFailed,
    UpstreamUnavailable,
)
from apps.common.http import get_breaker, send

from .statuses import ProviderPaymentStatus, RefundStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderOrder:
    id: str
    amount_cents: int
    currency: str
    receipt: str
    status: str
    raw: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ProviderPayment:
    id: str
    order_id: str
    amount_cents: int
    currency: str
    status: ProviderPaymentStatus
    method: str = ""
    fee_cents: int = 0
    error: str = ""
    raw: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ProviderRefund:
    id: str
    payment_id: str
    amount_cents: int
    status: RefundStatus
    raw: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class WebhookEvent:
    """A decoded provider webhook.

    Attributes:
        event: Raw event name, e.g. ``payment.captured``.
        kind: ``payment``, ``refund`` or ``unknown``.
        payment_id: Provider payment id the event refers to.
        order_id: Provider order id, when present.
        refund_id: Provider refund id for refund events.
        amount_cents: Amount carried by the entity.
        payment_status: Provider payment status implied by the event.
        refund_status: Refund status for refund events.
    """

    event: str
    kind: str
    payment_id: str = ""
    order_id: str = ""
    refund_id: str = ""
    amount_cents: int = 0
    payment_status: ProviderPaymentStatus = ProviderPaymentStatus.UNKNOWN
    refund_status: Optional[RefundStatus] = None
    raw: dict = field(default_factory=dict, compare=False)


class PaymentGatewayPort(Protocol):
    name: str

    def create_provider_order(
        self, amount_cents: int, currency: str, receipt: str, notes: dict | None = None,
        idempotency_key: str | None = None,
    ) -> ProviderOrder: ...

    def verify_signature(self, payment_id: str, order_id: str, signature: str) -> bool: ...

    def get_payment_details(self, payment_id: str) -> ProviderPayment: ...

    def capture(self, payment_id: str, amount_cents: int, currency: str) -> ProviderPayment: ...

    def refund(self, payment_id: str, amount_cents: int | None = None, reason: str = "") -> ProviderRefund: ...

    def get_refund(self, refund_id: str) -> ProviderRefund: ...

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool: ...

    def decode_webhook_event(self, event: str, payload: dict) -> WebhookEvent: ...


# ---- Signatures ----

def sign(secret: str, message: str | bytes) -> str:
    """Hex HMAC-SHA256 of ``message`` under ``secret``."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def payment_signature(secret: str, order_id: str, payment_id: str) -> str:
    return sign(secret, f"{order_id}|{payment_id}")


def check_signature(expected: str, provided: str | None, what: str) -> bool:
    """Constant-time comparison; a mismatch is always a hard error.

    Raises:
        InvalidSignature: When ``provided`` is empty or differs.
    """
    if not provided or not hmac.compare_digest(expected, str(provided)):
        raise InvalidSignature(f"{what} signature mismatch")
    return True


# ---- Wire parsing ----

def parse_order(data: dict) -> ProviderOrder:
    return ProviderOrder(
        id=data["id"],
        amount_cents=int(data.get("amount", 0)),
        currency=data.get("currency", ""),
        receipt=data.get("receipt", "") or "",
        status=data.get("status", ""),
        raw=data,
    )


def parse_payment(data: dict) -> ProviderPayment:
    return ProviderPayment(
        id=data["id"],
        order_id=data.get("order_id", "") or "",
        amount_cents=int(data.get("amount", 0)),
        currency=data.get("currency", ""),
        status=ProviderPaymentStatus.parse(data.get("status")),
        method=data.get("method", "") or "",
        fee_cents=int(data.get("fee") or 0),
        error=data.get("error_description", "") or "",
        raw=data,
    )


def parse_refund(data: dict) -> ProviderRefund:
    return ProviderRefund(
        id=data["id"],
        payment_id=data.get("payment_id", "") or "",
        amount_cents=int(data.get("amount", 0)),
        status=RefundStatus.parse(data.get("status")),
        raw=data,
    )


_PAYMENT_EVENTS = {
    "payment.authorized": ProviderPaymentStatus.AUTHORIZED,
    "payment.captured": ProviderPaymentStatus.CAPTURED,
    "payment.failed": ProviderPaymentStatus.FAILED,
}

_REFUND_EVENTS = {
    "refund.created": RefundStatus.PENDING,
    "refund.processed": RefundStatus.PROCESSED,
    "refund.failed": RefundStatus.FAILED,
}


def decode_webhook_event(event: str, payload: dict) -> WebhookEvent:
    """Turn a webhook ``(event, payload)`` pair into a ``WebhookEvent``.

    Unknown event names decode to ``kind="unknown"`` instead of raising so
    the endpoint can acknowledge them.
    """
    payload = payload or {}
    if event in _PAYMENT_EVENTS:
        entity = (payload.get("payment") or {}).get("entity") or {}
        return WebhookEvent(
            event=event,
            kind="payment",
            payment_id=entity.get("id", "") or "",
            order_id=entity.get("order_id", "") or "",
            amount_cents=int(entity.get("amount") or 0),
            payment_status=_PAYMENT_EVENTS[event],
            raw=entity,
        )
    if event in _REFUND_EVENTS:
        entity = (payload.get("refund") or {}).get("entity") or {}
        return WebhookEvent(
            event=event,
            kind="refund",
            payment_id=entity.get("payment_id", "") or "",
            refund_id=entity.get("id", "") or "",
            amount_cents=int(entity.get("amount") or 0),
            refund_status=_REFUND_EVENTS[event],
            raw=entity,
        )
    return WebhookEvent(event=event, kind="unknown", raw=payload)


def _error_description(resp: httpx.Response) -> str:
    try:
        err = resp.json().get("error") or {}
    except (ValueError, AttributeError):
        return f"HTTP {resp.status_code}"
    return err.get("description") or err.get("code") or f"HTTP {resp.status_code}"


class HttpPaymentGateway:
    """HTTP client for the payment provider.

    Credentials go out as HTTP basic auth (``key_id:key_secret``); the same
    secret signs checkout callbacks, while webhooks use their own secret.
    """

    name = "razorpay"

    def __init__(
        self,
        base_url: str | None = None,
        key_id: str | None = None,
        key_secret: str | None = None,
        webhook_secret: str | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or settings.GATEWAY_BASE_URL).rstrip("/")
        self.key_id = key_id or settings.GATEWAY_KEY_ID
        self.key_secret = key_secret or settings.GATEWAY_KEY_SECRET
        self.webhook_secret = webhook_secret or settings.GATEWAY_WEBHOOK_SECRET
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.name = getattr(settings, "PAYMENT_PROVIDER", self.name)
        self._cb = get_breaker("payment-gateway")

    def _call(self, method: str, path: str, *, retry: bool, json: dict | None = None, headers=None):
        return send(
            self._cb,
            method,
            f"{self.base_url}{path}",
            retry=retry,
            timeout=self.timeout,
            json=json,
            headers=headers,
            auth=(self.key_id, self.key_secret),
        )

    def _read(self, path: str) -> dict:
        try:
            resp = self._call("GET", path, retry=True)
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"gateway unreachable: {e}")
        if resp.status_code == 404:
            raise NotFound(_error_description(resp))
        if resp.status_code >= 400:
            raise UpstreamUnavailable(_error_description(resp))
        return resp.json()

    def create_provider_order(self, amount_cents, currency, receipt, notes=None, idempotency_key=None):
        """Create (or, for a repeated idempotency key, fetch) a provider order.

        Args:
            amount_cents: Amount in minor units.
            currency: ISO currency code.
            receipt: Our reference, usually the order number or cart ref.
            notes: Free-form metadata stored by the provider.
            idempotency_key: Forwarded as ``Idempotency-Key`` so a retried
                request maps to the same provider order.

        Returns:
            ProviderOrder: The created or replayed provider order.

        Raises:
            PaymentFailed: When the provider rejects the order.
            UpstreamUnavailable: On transport errors or 5xx after retries.
        """
        body = {"amount": amount_cents, "currency": currency, "receipt": receipt, "notes": notes or {}}
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            resp = self._call("POST", "/v1/orders", retry=bool(idempotency_key), json=body, headers=headers)
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"gateway unreachable: {e}")
        if resp.status_code >= 500:
            raise UpstreamUnavailable(_error_description(resp))
        if resp.status_code >= 400:
            raise PaymentFailed(_error_description(resp), code="PROVIDER_ORDER_REJECTED")
        return parse_order(resp.json())

    def verify_signature(self, payment_id: str, order_id: str, signature: str) -> bool:
        return check_signature(payment_signature(self.key_secret, order_id, payment_id), signature, "payment")

    def get_payment_details(self, payment_id: str) -> ProviderPayment:
        return parse_payment(self._read(f"/v1/payments/{payment_id}"))

    def capture(self, payment_id: str, amount_cents: int, currency: str) -> ProviderPayment:
        try:
            resp = self._call(
                "POST",
                f"/v1/payments/{payment_id}/capture",
                retry=False,
                json={"amount": amount_cents, "currency": currency},
            )
        except httpx.RequestError as e:
            logger.error("capture outcome unknown", extra={"payment_id": payment_id, "error": str(e)})
            raise PaymentOutcomeUnknown(f"capture of {payment_id} did not complete: {e}")
        if resp.status_code >= 500:
            raise PaymentOutcomeUnknown(_error_description(resp))
        if resp.status_code >= 400:
            raise PaymentFailed(_error_description(resp))
        return parse_payment(resp.json())

    def refund(self, payment_id: str, amount_cents: int | None = None, reason: str = "") -> ProviderRefund:
        body: dict = {"notes": {"reason": reason}}
        if amount_cents is not None:
            body["amount"] = amount_cents
        try:
            resp = self._call("POST", f"/v1/payments/{payment_id}/refund", retry=False, json=body)
        except httpx.RequestError as e:
            raise RefundFailed(f"refund of {payment_id} did not complete: {e}")
        if resp.status_code >= 400:
            raise RefundFailed(_error_description(resp))
        return parse_refund(resp.json())

    def get_refund(self, refund_id: str) -> ProviderRefund:
        return parse_refund(self._read(f"/v1/refunds/{refund_id}"))

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        return check_signature(sign(self.webhook_secret, body), signature, "webhook")

    def decode_webhook_event(self, event: str, payload: dict) -> WebhookEvent:
        return decode_webhook_event(event, payload)


def webhook_body(event: str, payload: dict) -> bytes:
    """Serialize a webhook the way the provider does (used by the sandbox)."""
    return json.dumps({"event": event, "payload": payload}, separators=(",", ":")).encode("utf-8")
