"""HTTP views for checkout and orders.

Views are kept intentionally small: they validate requests (via Pydantic),
delegate to the checkout service or the order repository, and map
``AppError`` subclasses to ``{"detail": code}`` responses.

Idempotency: ``POST /api/checkout/`` honors an ``Idempotency-Key`` header.
The first request claims the key; its terminal response (success or a
client error) is stored and replayed with ``Idempotent-Replay: true`` for
retries with the same payload. Reusing a key with a different payload is
a 409. Server and upstream failures release the key so the client can
retry. Keys are scoped to the calling user.
"""

import logging

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from apps.common.errors import AppError, ValidationFailed
from apps.common.identity import auth_required, user_id_from

from . import providers
from .idempotency import finalize, get_or_create_idempotent, release
from .schemas import (
    BulkStatusDTO,
    CheckoutRequest,
    OrderReadDTO,
    StatusUpdateDTO,
    TrackingOut,
    ValidateCheckoutRequest,
)

logger = logging.getLogger(__name__)


def _invalid(e: ValidationError) -> Response:
    body = ValidationFailed(str(e)).to_body()
    return Response(body, status=status.HTTP_400_BAD_REQUEST)


def _error(e: AppError) -> Response:
    return Response(e.to_body(), status=e.status_code)


class CheckoutView(APIView):
    """Turn the caller's cart into a paid, confirmed order."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout"

    def post(self, request):
        """Run checkout.

        Returns:
            Response: One of the following responses.
            - 201 with the order when checkout completes.
            - The stored status and body, with ``Idempotent-Replay: true``,
              when a finished request is retried with the same key.
            - 409 ``IDEMPOTENCY_CONFLICT`` / ``IDEMPOTENCY_IN_PROGRESS``.
            - 400/402/409/422 for client and payment errors.
            - 503/504 when the provider or a collaborator is unavailable.
            - 500 ``CHECKOUT_FAILED`` for anything else.
        """
        user_id = user_id_from(request)
        if not user_id:
            return auth_required()
        try:
            dto = CheckoutRequest.model_validate(request.data or {})
        except ValidationError as e:
            return _invalid(e)

        idem_key = request.headers.get("Idempotency-Key")
        scoped_key = f"{user_id}:{idem_key}" if idem_key else None
        rec = None
        if scoped_key:
            try:
                existing, rec = get_or_create_idempotent(scoped_key, dto.model_dump(mode="json"))
            except AppError as e:
                return _error(e)
            if existing:
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        try:
            order = providers.get_checkout_service().process_checkout(
                user_id,
                dto.shipping_address.model_dump() if dto.shipping_address else None,
                billing_address=dto.billing_address.model_dump() if dto.billing_address else None,
                payment_method=dto.payment_method,
                coupon_code=dto.coupon_code,
                payment_details=dto.payment_details.to_domain() if dto.payment_details else None,
                idempotency_key=scoped_key,
            )
        except AppError as e:
            if rec is not None:
                if e.status_code < 500:
                    finalize(rec, e.status_code, e.to_body())
                else:
                    release(rec)
            return _error(e)
        except Exception:
            logger.exception("checkout failed", extra={"user_id": user_id})
            if rec is not None:
                release(rec)
            return Response({"detail": "CHECKOUT_FAILED"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        body = OrderReadDTO.from_domain(order).model_dump(mode="json")
        if rec is not None:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class CheckoutSummaryView(APIView):
    """Pricing preview of the caller's cart, optionally with a coupon."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout_read"

    def get(self, request):
        user_id = user_id_from(request)
        if not user_id:
            return auth_required()
        coupon = (request.query_params.get("coupon") or "").strip() or None
        try:
            summary = providers.get_checkout_service().checkout_summary(user_id, coupon)
        except AppError as e:
            return _error(e)
        return Response(summary.as_dict())


class CheckoutValidateView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout_read"

    def post(self, request):
        user_id = user_id_from(request)
        if not user_id:
            return auth_required()
        try:
            dto = ValidateCheckoutRequest.model_validate(request.data or {})
        except ValidationError as e:
            return _invalid(e)
        try:
            result = providers.get_checkout_service().validate_checkout(
                user_id,
                dto.shipping_address.model_dump() if dto.shipping_address else None,
                dto.payment_method,
            )
        except AppError as e:
            return _error(e)
        return Response(result)


class OrderDetailView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        user_id = user_id_from(request)
        if not user_id:
            return auth_required()
        try:
            order = providers.get_order_repository().get(oid, user_id=user_id)
        except AppError as e:
            return _error(e)
        return Response(OrderReadDTO.from_domain(order).model_dump(mode="json"))


class OrderTrackingView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        user_id = user_id_from(request)
        if not user_id:
            return auth_required()
        try:
            order = providers.get_order_repository().get(oid, user_id=user_id)
        except AppError as e:
            return _error(e)
        body = TrackingOut(
            id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            tracking_number=order.tracking_number,
            shipping_provider=order.shipping_provider,
            updated_at=order.updated_at,
        ).model_dump(mode="json")
        return Response(body)


class OrderStatusView(APIView):
    """Operator status change through the order status machine."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_admin"

    def patch(self, request, oid):
        actor = user_id_from(request)
        if not actor:
            return auth_required()
        try:
            dto = StatusUpdateDTO.model_validate(request.data or {})
        except ValidationError as e:
            return _invalid(e)
        try:
            order = providers.get_order_repository().transition_status(
                oid,
                dto.status,
                actor,
                tracking_number=dto.tracking_number,
                shipping_provider=dto.shipping_provider,
                note=dto.note,
            )
        except AppError as e:
            return _error(e)
        return Response(OrderReadDTO.from_domain(order).model_dump(mode="json"))


class BulkOrderStatusView(APIView):
    """Apply one status to many orders; the response lists each outcome."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_admin"

    def post(self, request):
        actor = user_id_from(request)
        if not actor:
            return auth_required()
        try:
            dto = BulkStatusDTO.model_validate(request.data or {})
        except ValidationError as e:
            return _invalid(e)
        try:
            result = providers.get_order_repository().bulk_transition(dto.order_ids, dto.status, actor)
        except AppError as e:
            return _error(e)
        return Response(result)
