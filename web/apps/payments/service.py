"""Payment lifecycle: checkout capture, compensation, refunds and webhooks.

``PaymentService`` is the Django-backed ``PaymentsPort`` used by the
checkout saga. Transaction rows are created and settled outside the
saga's unit of work so that what happened at the provider is always
recorded, even when the order insert is rolled back. Every status change
is written to the ``payments.audit`` logger.
"""

import json
import logging
from dataclasses import replace
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.common.errors import (
    AppError,
    InvalidSignature,
    NotFound,
    PaymentAlreadyUsed,
    PaymentFailed,
    PaymentOutcomeUnknown,
    RefundExceedsAmount,
    RefundNotAllowed,
    ValidationFailed,
)
from apps.orders.domain import Order, PaymentAttempt, PaymentDetails
from apps.orders.models import OrderModel

from .gateway import PaymentGatewayPort, WebhookEvent
from .models import Refund, Transaction
from .statuses import PaymentMethod, PaymentStatus, ProviderPaymentStatus, RefundStatus, to_local_status

logger = logging.getLogger(__name__)
audit = logging.getLogger("payments.audit")


def backoff_delay(retry_count: int) -> timedelta:
    """Delay before the next retry: ``unit * base ** retry_count``."""
    base = max(1, getattr(settings, "PAYMENT_RETRY_BACKOFF_BASE", 2))
    unit = getattr(settings, "PAYMENT_RETRY_BACKOFF_UNIT_SECS", 60)
    return timedelta(seconds=unit * (base ** max(0, retry_count)))


def audit_status_change(tx: Transaction, old: str, new: str, source: str, **extra):
    audit.info(
        "payment status changed",
        extra={
            "transaction": tx.public_id,
            "order_id": str(tx.order_id),
            "provider_payment_id": tx.provider_payment_id,
            "from_status": old,
            "to_status": new,
            "source": source,
            **extra,
        },
    )


def order_exists(order_id) -> bool:
    return OrderModel.objects.filter(id=order_id).exists()


def settled_elsewhere(provider_payment_id: str, public_id: str) -> bool:
    """True when another transaction already holds this provider payment as ``success``."""
    return (
        Transaction.objects.filter(provider_payment_id=provider_payment_id, status=PaymentStatus.SUCCESS.value)
        .exclude(public_id=public_id)
        .exists()
    )


def apply_provider_status(tx: Transaction, provider_status, source: str, now, check_orphan: bool = True) -> bool:
    """Move ``tx`` toward the provider's status. Does not save.

    Local state only ever moves toward provider truth. Disagreements that
    would need money to move (provider failed or reverted a payment we
    consider successful) are flagged for review instead.

    Returns:
        bool: True when the local status changed.
    """
    new = to_local_status(provider_status)
    old = PaymentStatus(tx.status)
    if new == old or old == PaymentStatus.REFUNDED:
        return False

    if old == PaymentStatus.SUCCESS:
        if new != PaymentStatus.REFUNDED:
            tx.flag(f"PROVIDER_REPORTS_{ProviderPaymentStatus.parse(provider_status).value.upper()}")
            logger.warning(
                "provider disagrees with successful payment",
                extra={"transaction": tx.public_id, "provider_status": str(provider_status), "source": source},
            )
            return False
    elif new == PaymentStatus.PENDING:
        # Never regress an in-flight payment to pending.
        return False

    if new == PaymentStatus.SUCCESS and settled_elsewhere(tx.provider_payment_id, tx.public_id):
        # An earlier attempt whose outcome was unknown; the retry settled the order.
        tx.status = PaymentStatus.CANCELLED.value
        tx.next_retry_at = None
        tx.error_message = "DUPLICATE_ATTEMPT: payment settled by another transaction"
        tx.flag("DUPLICATE_ATTEMPT")
        audit_status_change(tx, old.value, tx.status, source, error="DUPLICATE_ATTEMPT")
        return True


    tx.status = new.value
    if new == PaymentStatus.SUCCESS:
        tx.captured_at = tx.captured_at or now
        tx.next_retry_at = None
        tx.error_message = ""
        if check_orphan and not order_exists(tx.order_id):
            tx.flag("CAPTURED_WITHOUT_ORDER")
    elif new == PaymentStatus.FAILED:
        tx.failed_at = now
        if tx.retry_count < settings.PAYMENT_RETRY_MAX:
            tx.next_retry_at = now + backoff_delay(tx.retry_count)
    audit_status_change(tx, old.value, new.value, source)
    return True


class PaymentService:
    """Django-backed implementation of the saga's payments port."""

    def __init__(self, gateway: PaymentGatewayPort, clock=timezone.now):
        self.gateway = gateway
        self.clock = clock

    @property
    def provider_name(self) -> str:
        name = getattr(self.gateway, "name", Transaction.Provider.SANDBOX)
        return name if name in Transaction.Provider.values else Transaction.Provider.SANDBOX

    # ---- provider orders ----

    def create_checkout_order(self, user_id: str, amount_cents: int, currency: str, receipt: str, idempotency_key: str):
        """Create the provider order a client pays against before checkout."""
        order = self.gateway.create_provider_order(
            amount_cents,
            currency,
            receipt,
            notes={"user_id": user_id},
            idempotency_key=idempotency_key,
        )
        logger.info(
            "provider order created",
            extra={"provider_order_id": order.id, "amount_cents": amount_cents, "user_id": user_id},
        )
        return order

    # ---- saga ----

    def begin(self, order: Order, method: PaymentMethod, details: PaymentDetails) -> PaymentAttempt:
        """Record a pending transaction for the capture about to happen.

        Raises:
            PaymentAlreadyUsed: If this provider payment already settled
                another order.
        """
        if Transaction.objects.filter(
            provider_payment_id=details.payment_id, status=PaymentStatus.SUCCESS.value
        ).exists():
            raise PaymentAlreadyUsed(f"payment {details.payment_id} already settled an order")
        tx = Transaction.objects.create(
            order_id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            provider=self.provider_name,
            provider_order_id=details.provider_order_id,
            provider_payment_id=details.payment_id,
            amount_cents=order.total_cents,
            currency=order.currency,
            method=method.value,
            status=PaymentStatus.PENDING.value,
        )
        audit_status_change(tx, "-", tx.status, "checkout")
        return PaymentAttempt(
            transaction_id=tx.public_id,
            order_id=order.id,
            provider_order_id=tx.provider_order_id,
            provider_payment_id=tx.provider_payment_id,
            amount_cents=tx.amount_cents,
            currency=tx.currency,
            method=method,
        )

    def capture(self, attempt: PaymentAttempt, signature: str) -> PaymentAttempt:
        """Verify the callback and make sure the payment ends up captured.

        Raises:
            InvalidSignature: When the callback signature does not verify.
            PaymentFailed: When the provider payment is not capturable or
                does not match the order.
            PaymentOutcomeUnknown: When the capture call did not complete.
            PaymentAlreadyUsed: When the payment is already captured and
                another transaction settled an order with it.
        """
        self.gateway.verify_signature(attempt.provider_payment_id, attempt.provider_order_id, signature)
        try:
            payment = self.gateway.get_payment_details(attempt.provider_payment_id)
        except NotFound:
            raise PaymentFailed(f"payment {attempt.provider_payment_id} unknown to provider")

        if payment.order_id and payment.order_id != attempt.provider_order_id:
            raise PaymentFailed("payment belongs to another provider order", code="PAYMENT_ORDER_MISMATCH")
        if payment.amount_cents != attempt.amount_cents:
            raise PaymentFailed(
                f"authorized {payment.amount_cents}, order total {attempt.amount_cents}",
                code="AMOUNT_MISMATCH",
            )

        if payment.status == ProviderPaymentStatus.CAPTURED:
            # Captured before this attempt: either an earlier attempt whose
            # outcome was unknown (ours to settle) or a twin that won.
            if settled_elsewhere(attempt.provider_payment_id, attempt.transaction_id):
                raise PaymentAlreadyUsed(f"payment {attempt.provider_payment_id} already settled an order")
            captured = payment
        elif payment.status == ProviderPaymentStatus.AUTHORIZED:
            captured = self.gateway.capture(attempt.provider_payment_id, attempt.amount_cents, attempt.currency)
        else:
            raise PaymentFailed(payment.error or f"payment is {payment.status.value}")

        if captured.status != ProviderPaymentStatus.CAPTURED:
            raise PaymentFailed(f"capture returned {captured.status.value}")
        return replace(
            attempt,
            captured=True,
            processing_fee_cents=captured.fee_cents,
            gateway_response=captured.raw,
        )

    def confirm(self, attempt: PaymentAttempt) -> None:
        """Mark the transaction successful. Runs inside the unit of work.

        Raises:
            PaymentAlreadyUsed: When a concurrent checkout committed a
                successful transaction for the same provider payment first.
        """
        now = self.clock()
        try:
            with transaction.atomic():
                Transaction.objects.filter(public_id=attempt.transaction_id).update(
                    status=PaymentStatus.SUCCESS.value,
                    captured_at=now,
                    processing_fee_cents=attempt.processing_fee_cents,
                    gateway_response=attempt.gateway_response,
                    error_message="",
                    updated_at=now,
                )
        except IntegrityError:
            raise PaymentAlreadyUsed(f"payment {attempt.provider_payment_id} already settled an order")
        audit.info(
            "payment status changed",
            extra={
                "transaction": attempt.transaction_id,
                "order_id": str(attempt.order_id),
                "from_status": PaymentStatus.PENDING.value,
                "to_status": PaymentStatus.SUCCESS.value,
                "source": "checkout",
            },
        )

    def refund(self, attempt: PaymentAttempt, reason: str) -> None:
        """Compensate a captured payment whose checkout was aborted.

        A failed refund is recorded (failed ``Refund`` row, transaction left
        ``success`` and flagged for review) rather than raised, so it never
        replaces the error that aborted the checkout.

        Nothing is sent to the provider when another transaction holds the
        payment as ``success``: the money belongs to that order.
        """
        now = self.clock()
        tx = Transaction.objects.get(public_id=attempt.transaction_id)
        old = tx.status
        if settled_elsewhere(tx.provider_payment_id, tx.public_id):
            logger.warning(
                "compensation skipped, payment settled another order",
                extra={"transaction": tx.public_id, "provider_payment_id": tx.provider_payment_id},
            )
            self.release(attempt, PaymentAlreadyUsed(f"payment {tx.provider_payment_id} already settled an order"))
            return
        tx.captured_at = tx.captured_at or now
        tx.processing_fee_cents = attempt.processing_fee_cents
        tx.gateway_response = attempt.gateway_response
        try:
            result = self.gateway.refund(attempt.provider_payment_id, attempt.amount_cents, reason)
        except AppError as exc:
            logger.critical(
                "compensating refund failed",
                extra={"transaction": tx.public_id, "order_id": str(tx.order_id), "error": str(exc)},
            )
            with transaction.atomic():
                Refund.objects.create(
                    transaction=tx,
                    amount_cents=attempt.amount_cents,
                    reason=reason,
                    status=RefundStatus.FAILED.value,
                    error_message=str(exc),
                )
                tx.status = PaymentStatus.SUCCESS.value
                tx.flag("COMPENSATION_REFUND_FAILED")
                tx.save()
            audit_status_change(tx, old, tx.status, "compensation")
            return

        with transaction.atomic():
            Refund.objects.create(
                transaction=tx,
                provider_refund_id=result.id,
                amount_cents=result.amount_cents,
                reason=reason,
                status=result.status.value,
                processed_at=now if result.status == RefundStatus.PROCESSED else None,
            )
            tx.status = PaymentStatus.REFUNDED.value
            tx.error_message = reason
            tx.save()
        logger.warning(
            "payment refunded after checkout abort",
            extra={"transaction": tx.public_id, "refund_id": result.id, "amount_cents": result.amount_cents},
        )
        audit_status_change(tx, old, tx.status, "compensation", refund_id=result.id)

    def release(self, attempt: PaymentAttempt, error: BaseException) -> None:
        """Settle an attempt that never captured.

        - outcome unknown: stays ``pending`` for the sync job
        - declined: ``failed`` with the first retry scheduled
        - bad signature: ``failed`` and never retried
        - anything else: ``cancelled``
        """
        now = self.clock()
        tx = Transaction.objects.get(public_id=attempt.transaction_id)
        old = tx.status
        code = getattr(error, "code", type(error).__name__)
        tx.error_message = f"{code}: {error}"[:1000]
        if isinstance(error, PaymentOutcomeUnknown):
            pass
        elif isinstance(error, InvalidSignature):
            tx.status = PaymentStatus.FAILED.value
            tx.failed_at = now
            tx.next_retry_at = None
        elif isinstance(error, PaymentFailed):
            tx.status = PaymentStatus.FAILED.value
            tx.failed_at = now
            tx.next_retry_at = now + backoff_delay(tx.retry_count)
        else:
            tx.status = PaymentStatus.CANCELLED.value
        tx.save()
        if tx.status != old:
            audit_status_change(tx, old, tx.status, "checkout", error=code)

    # ---- operator actions ----

    def get_for_order(self, order_id) -> Transaction:
        qs = Transaction.objects.filter(order_id=order_id, is_deleted=False)
        tx = qs.filter(status=PaymentStatus.SUCCESS.value).first() or qs.first()
        if tx is None:
            raise NotFound(f"no payment for order {order_id}")
        return tx

    def refund_transaction(self, public_id: str, amount_cents: int | None = None, reason: str = "", actor: str = "") -> Refund:
        """Issue a full or partial refund for a successful payment.

        Raises:
            NotFound: Unknown transaction.
            RefundNotAllowed: The transaction is not in ``success``.
            RefundExceedsAmount: The refund would exceed what is left.
            RefundFailed: The provider rejected the refund.
        """
        now = self.clock()
        with transaction.atomic():
            try:
                tx = Transaction.objects.select_for_update().get(public_id=public_id, is_deleted=False)
            except Transaction.DoesNotExist:
                raise NotFound(f"transaction {public_id}")
            if tx.status != PaymentStatus.SUCCESS.value:
                raise RefundNotAllowed(f"transaction is {tx.status}")
            remaining = tx.amount_cents - tx.refunded_cents
            amount = remaining if amount_cents is None else amount_cents
            if amount <= 0 or amount > remaining:
                raise RefundExceedsAmount(f"requested {amount}, refundable {remaining}")

            result = self.gateway.refund(tx.provider_payment_id, amount, reason)
            refund = Refund.objects.create(
                transaction=tx,
                provider_refund_id=result.id,
                amount_cents=result.amount_cents,
                reason=reason,
                status=result.status.value,
                processed_at=now if result.status == RefundStatus.PROCESSED else None,
            )
            if tx.refunded_cents >= tx.amount_cents:
                tx.status = PaymentStatus.REFUNDED.value
                tx.save()
                OrderModel.objects.filter(id=tx.order_id).update(payment_status="refunded", updated_at=now)
                audit_status_change(tx, PaymentStatus.SUCCESS.value, tx.status, "operator", actor=actor)
        logger.info(
            "refund issued",
            extra={"transaction": public_id, "amount_cents": amount, "actor": actor, "refund_id": result.id},
        )
        return refund

    # ---- webhooks ----

    def handle_webhook(self, body: bytes, signature: str) -> str:
        """Verify, decode and apply a raw webhook delivery.

        Raises:
            InvalidSignature: When the body signature does not verify.
            ValidationFailed: When the body is not a JSON envelope.
        """
        self.gateway.verify_webhook_signature(body, signature)
        try:
            envelope = json.loads(body or b"{}")
        except ValueError:
            raise ValidationFailed("webhook body is not JSON", code="MALFORMED_WEBHOOK")
        if not isinstance(envelope, dict):
            raise ValidationFailed("webhook body is not an object", code="MALFORMED_WEBHOOK")
        event = self.gateway.decode_webhook_event(envelope.get("event", ""), envelope.get("payload") or {})
        return self.apply_webhook(event)

    def apply_webhook(self, event: WebhookEvent) -> str:
        """Apply a decoded event. Returns a short outcome label."""
        if event.kind == "unknown":
            logger.info("webhook event ignored", extra={"event": event.event})
            return "ignored"
        now = self.clock()
        with transaction.atomic():
            tx = self._locked_for_event(event)
            if tx is None:
                logger.warning(
                    "webhook for unknown payment",
                    extra={"event": event.event, "payment_id": event.payment_id, "order_id": event.order_id},
                )
                return "unmatched"
            if event.kind == "payment":
                if not tx.provider_payment_id:
                    tx.provider_payment_id = event.payment_id
                changed = apply_provider_status(tx, event.payment_status, "webhook", now, check_orphan=False)
                tx.last_synced_at = now
                tx.save()
                return "updated" if changed else "unchanged"
            return self._apply_refund_event(tx, event, now)

    def _locked_for_event(self, event: WebhookEvent):
        qs = Transaction.objects.select_for_update().filter(is_deleted=False)
        tx = None
        if event.payment_id:
            tx = qs.filter(provider_payment_id=event.payment_id).order_by("-created_at").first()
        if tx is None and event.order_id:
            tx = qs.filter(provider_order_id=event.order_id).order_by("-created_at").first()
        return tx

    def _apply_refund_event(self, tx: Transaction, event: WebhookEvent, now) -> str:
        refund = Refund.objects.filter(transaction=tx, provider_refund_id=event.refund_id).first()
        if refund is None:
            # Refund initiated outside this service (provider dashboard).
            refund = Refund(transaction=tx, provider_refund_id=event.refund_id, amount_cents=event.amount_cents)
        refund.status = event.refund_status.value
        if event.refund_status == RefundStatus.PROCESSED and refund.processed_at is None:
            refund.processed_at = now
        refund.save()
        if tx.status == PaymentStatus.SUCCESS.value and tx.refunded_cents >= tx.amount_cents:
            tx.status = PaymentStatus.REFUNDED.value
            tx.save()
            audit_status_change(tx, PaymentStatus.SUCCESS.value, tx.status, "webhook", refund_id=event.refund_id)
        return "refund_" + refund.status
