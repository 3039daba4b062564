"""In-process sandbox implementation of ``PaymentGatewayPort``.

Behaves like the provider for the flows the service uses (orders,
authorisation, capture, refunds, webhooks) without any network calls.
Used by the test suite and by local runs with ``USE_HTTP_ADAPTERS`` off.
Signatures are real HMACs under the configured secrets, so signature
checks are exercised exactly as in production.
"""

import secrets
import threading
from typing import Optional

from django.conf import settings

from apps.common.errors import NotFound, PaymentFailed, RefundFailed

from .gateway import (
    ProviderPayment,
    ProviderRefund,
    WebhookEvent,
    check_signature,
    decode_webhook_event,
    parse_order,
    parse_payment,
    parse_refund,
    payment_signature,
    sign,
    webhook_body,
)
from .statuses import ProviderPaymentStatus

FEE_BASIS_POINTS = 200


def _new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(7)}"


class SandboxGateway:
    name = "sandbox"

    def __init__(self, key_secret: str | None = None, webhook_secret: str | None = None):
        self.key_secret = key_secret or settings.GATEWAY_KEY_SECRET
        self.webhook_secret = webhook_secret or settings.GATEWAY_WEBHOOK_SECRET
        self._lock = threading.Lock()
        self.orders: dict[str, dict] = {}
        self.payments: dict[str, dict] = {}
        self.refunds: dict[str, dict] = {}
        self._by_idempotency_key: dict[str, str] = {}

    def reset(self):
        with self._lock:
            self.orders.clear()
            self.payments.clear()
            self.refunds.clear()
            self._by_idempotency_key.clear()

    # ---- provider API ----

    def create_provider_order(self, amount_cents, currency, receipt, notes=None, idempotency_key=None):
        with self._lock:
            if idempotency_key and idempotency_key in self._by_idempotency_key:
                return parse_order(self.orders[self._by_idempotency_key[idempotency_key]])
            data = {
                "id": _new_id("order"),
                "amount": amount_cents,
                "currency": currency,
                "receipt": receipt,
                "status": "created",
                "notes": notes or {},
            }
            self.orders[data["id"]] = data
            if idempotency_key:
                self._by_idempotency_key[idempotency_key] = data["id"]
            return parse_order(data)

    def verify_signature(self, payment_id: str, order_id: str, signature: str) -> bool:
        return check_signature(payment_signature(self.key_secret, order_id, payment_id), signature, "payment")

    def get_payment_details(self, payment_id: str) -> ProviderPayment:
        with self._lock:
            data = self.payments.get(payment_id)
            if data is None:
                raise NotFound(f"payment {payment_id}")
            return parse_payment(dict(data))

    def capture(self, payment_id: str, amount_cents: int, currency: str) -> ProviderPayment:
        with self._lock:
            data = self.payments.get(payment_id)
            if data is None:
                raise PaymentFailed(f"payment {payment_id} does not exist")
            if data["amount"] != amount_cents:
                raise PaymentFailed("capture amount must equal the authorized amount")
            if data["status"] == "captured":
                return parse_payment(dict(data))
            if data["status"] != "authorized":
                raise PaymentFailed(data.get("error_description") or f"payment is {data['status']}")
            data["status"] = "captured"
            data["captured"] = True
            data["fee"] = amount_cents * FEE_BASIS_POINTS // 10000
            order = self.orders.get(data["order_id"])
            if order is not None:
                order["status"] = "paid"
            return parse_payment(dict(data))

    def refund(self, payment_id: str, amount_cents: int | None = None, reason: str = "") -> ProviderRefund:
        with self._lock:
            data = self.payments.get(payment_id)
            if data is None or data["status"] not in ("captured", "refunded"):
                raise RefundFailed(f"payment {payment_id} is not refundable")
            amount = data["amount"] - data.get("amount_refunded", 0) if amount_cents is None else amount_cents
            if amount <= 0 or data.get("amount_refunded", 0) + amount > data["amount"]:
                raise RefundFailed("refund amount exceeds captured amount")
            data["amount_refunded"] = data.get("amount_refunded", 0) + amount
            if data["amount_refunded"] == data["amount"]:
                data["status"] = "refunded"
            refund = {
                "id": _new_id("rfnd"),
                "payment_id": payment_id,
                "amount": amount,
                "status": "processed",
                "notes": {"reason": reason},
            }
            self.refunds[refund["id"]] = refund
            return parse_refund(dict(refund))

    def get_refund(self, refund_id: str) -> ProviderRefund:
        with self._lock:
            data = self.refunds.get(refund_id)
            if data is None:
                raise NotFound(f"refund {refund_id}")
            return parse_refund(dict(data))

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        return check_signature(sign(self.webhook_secret, body), signature, "webhook")

    def decode_webhook_event(self, event: str, payload: dict) -> WebhookEvent:
        return decode_webhook_event(event, payload)

    # ---- sandbox controls ----

    def simulate_payment(
        self,
        order_id: str,
        method: str = "upi",
        outcome: str = "authorized",
        amount_cents: Optional[int] = None,
    ) -> dict:
        """Play the customer paying for a provider order.

        Returns the checkout callback fields a client would post back:
        ``provider_order_id``, ``payment_id`` and ``signature``.
        """
        with self._lock:
            order = self.orders.get(order_id)
            if order is None:
                raise NotFound(f"order {order_id}")
            status = ProviderPaymentStatus.parse(outcome).value
            data = {
                "id": _new_id("pay"),
                "order_id": order_id,
                "amount": order["amount"] if amount_cents is None else amount_cents,
                "currency": order["currency"],
                "status": status,
                "method": method,
                "captured": status == "captured",
                "fee": 0,
                "error_description": "card declined" if status == "failed" else "",
            }
            self.payments[data["id"]] = data
            return {
                "provider_order_id": order_id,
                "payment_id": data["id"],
                "signature": payment_signature(self.key_secret, order_id, data["id"]),
            }

    def set_payment(self, payment_id: str, **fields):
        with self._lock:
            self.payments[payment_id].update(fields)

    def set_refund(self, refund_id: str, **fields):
        with self._lock:
            self.refunds[refund_id].update(fields)

    def signed_webhook(self, event: str, payload: dict) -> tuple[bytes, str]:
        body = webhook_body(event, payload)
        return body, sign(self.webhook_secret, body)
