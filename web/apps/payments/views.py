"""HTTP views for payments: provider orders, lookups, refunds and webhooks."""

import logging

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from apps.common.errors import AppError
from apps.common.identity import auth_required, user_id_from
from apps.orders import providers as order_providers

from . import providers
from .schemas import ProviderOrderIn, RefundIn, RefundOut, TransactionOut

logger = logging.getLogger(__name__)

WEBHOOK_SIGNATURE_HEADER = "X-Razorpay-Signature"


class PaymentsView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments"


class ProviderOrderView(PaymentsView):
    """Create the provider order the client pays against.

    Requires ``Idempotency-Key``; the key is forwarded to the provider so a
    retried request returns the same provider order.
    """

    def post(self, request):
        user_id = user_id_from(request)
        if not user_id:
            return auth_required()
        idem_key = request.headers.get("Idempotency-Key")
        if not idem_key:
            return Response({"detail": "IDEMPOTENCY_KEY_REQUIRED"}, status=status.HTTP_400_BAD_REQUEST)
        try:
            dto = ProviderOrderIn.model_validate(request.data or {})
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        try:
            summary = order_providers.get_checkout_service().checkout_summary(user_id, dto.coupon_code)
            order = providers.get_payment_service().create_checkout_order(
                user_id,
                summary.total_cents,
                summary.currency,
                receipt=f"cart-{user_id}",
                idempotency_key=f"{user_id}:{idem_key}",
            )
        except AppError as e:
            return Response(e.to_body(), status=e.status_code)
        return Response(
            {
                "provider_order_id": order.id,
                "amount_cents": order.amount_cents,
                "currency": order.currency,
                "pricing": summary.as_dict(),
            },
            status=status.HTTP_201_CREATED,
        )


class PaymentByOrderView(PaymentsView):
    def get(self, request, oid):
        user_id = user_id_from(request)
        if not user_id:
            return auth_required()
        try:
            tx = providers.get_payment_service().get_for_order(oid)
        except AppError as e:
            return Response(e.to_body(), status=e.status_code)
        if tx.user_id != user_id:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        return Response(TransactionOut.from_model(tx).model_dump(mode="json"))


class RefundView(PaymentsView):
    """Operator refund of a successful payment (full when no amount)."""

    def post(self, request, public_id: str):
        actor = user_id_from(request)
        if not actor:
            return auth_required()
        try:
            dto = RefundIn.model_validate(request.data or {})
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        try:
            refund = providers.get_payment_service().refund_transaction(
                public_id, dto.amount_cents, dto.reason, actor=actor
            )
        except AppError as e:
            return Response(e.to_body(), status=e.status_code)
        body = RefundOut(
            provider_refund_id=refund.provider_refund_id,
            amount_cents=refund.amount_cents,
            reason=refund.reason,
            status=refund.status,
            processed_at=refund.processed_at,
        ).model_dump(mode="json")
        return Response(body, status=status.HTTP_201_CREATED)


class WebhookView(APIView):
    """Provider webhook endpoint. The raw body is what gets signed."""

    throttle_classes = []

    def post(self, request):
        signature = request.headers.get(WEBHOOK_SIGNATURE_HEADER, "")
        try:
            outcome = providers.get_payment_service().handle_webhook(request.body, signature)
        except AppError as e:
            logger.warning("webhook rejected", extra={"code": e.code})
            return Response(e.to_body(), status=e.status_code)
        return Response({"status": outcome})
