"""Reconciliation jobs that re-derive local payment state from the provider.

Four independent passes, each safe to run while another copy is running:

- ``sync_payments``: pending/processing transactions are refreshed from
  the provider (this is how a capture that timed out gets resolved).
- ``reconcile_payments``: recent success/processing transactions are
  compared with the provider; amount drift is flagged, never corrected.
- ``retry_failed_payments``: failed transactions due for a retry are
  re-checked with exponential backoff until ``PAYMENT_RETRY_MAX``.
- ``sync_refunds``: pending refunds are refreshed from the provider; a
  transaction moves to refunded once its refunds cover the amount.

Candidates are selected first, then every row is locked and handled in
its own transaction with ``SELECT ... FOR UPDATE SKIP LOCKED``, so
overlapping runs work on disjoint rows and one bad record never aborts the
batch.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Callable, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.orders.models import OrderModel

from .gateway import PaymentGatewayPort
from .models import Refund, Transaction
from .service import apply_provider_status, audit_status_change, backoff_delay
from .statuses import PaymentStatus, ProviderPaymentStatus, RefundStatus, to_local_status

logger = logging.getLogger(__name__)
audit = logging.getLogger("payments.audit")


@dataclass
class JobReport:
    job: str
    candidates: int = 0
    processed: int = 0
    updated: int = 0
    flagged: int = 0
    skipped: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class PaymentReconciler:
    def __init__(self, gateway: PaymentGatewayPort, clock: Callable = timezone.now):
        self.gateway = gateway
        self.clock = clock

    # ---- jobs ----

    def sync_payments(self, batch_size: Optional[int] = None, now=None) -> JobReport:
        now = now or self.clock()
        min_age = timedelta(seconds=settings.PAYMENT_SYNC_MIN_AGE_SECS)
        filters = {
            "status__in": [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value],
            "created_at__lte": now - min_age,
        }
        return self._run(
            "payment_sync",
            filters,
            batch_size or settings.PAYMENT_SYNC_BATCH_SIZE,
            lambda tx: self._sync_one(tx, now),
            order_by="updated_at",
        )

    def sync_refunds(self, batch_size: Optional[int] = None, now=None) -> JobReport:
        now = now or self.clock()
        filters = {"status": RefundStatus.PENDING.value}
        return self._run(
            "refund_sync",
            filters,
            batch_size or settings.REFUND_SYNC_BATCH_SIZE,
            lambda refund: self._sync_refund(refund, now),
            order_by="created_at",
            queryset=Refund.objects.exclude(provider_refund_id=""),
        )

    def reconcile_payments(
        self,
        lookback: Optional[timedelta] = None,
        batch_size: Optional[int] = None,
        now=None,
    ) -> JobReport:
        now = now or self.clock()
        lookback = lookback or timedelta(minutes=settings.PAYMENT_RECONCILE_LOOKBACK_MINUTES)
        filters = {
            "status__in": [PaymentStatus.SUCCESS.value, PaymentStatus.PROCESSING.value],
            "created_at__gte": now - lookback,
        }
        return self._run(
            "payment_reconcile",
            filters,
            batch_size or settings.PAYMENT_RECONCILE_BATCH_SIZE,
            lambda tx: self._reconcile_one(tx, now),
            order_by="created_at",
        )

    def retry_failed_payments(self, batch_size: Optional[int] = None, now=None) -> JobReport:
        now = now or self.clock()
        filters = {
            "status": PaymentStatus.FAILED.value,
            "retry_count__lt": settings.PAYMENT_RETRY_MAX,
            "next_retry_at__lte": now,
        }
        return self._run(
            "payment_retry",
            filters,
            batch_size or settings.PAYMENT_RETRY_BATCH_SIZE,
            lambda tx: self._retry_one(tx, now),
            order_by="next_retry_at",
        )

    # ---- per-record handlers; each returns (changed, flagged) ----

    def _sync_one(self, tx: Transaction, now) -> tuple[bool, bool]:
        payment = self.gateway.get_payment_details(tx.provider_payment_id)
        was_flagged = tx.flagged_for_review
        changed = apply_provider_status(tx, payment.status, "sync", now)
        if changed and tx.status == PaymentStatus.FAILED.value:
            tx.error_message = payment.error or tx.error_message
        if changed and tx.status == PaymentStatus.SUCCESS.value:
            tx.processing_fee_cents = payment.fee_cents
            tx.gateway_response = payment.raw
        tx.last_synced_at = now
        tx.save()
        return changed, tx.flagged_for_review and not was_flagged

    def _reconcile_one(self, tx: Transaction, now) -> tuple[bool, bool]:
        payment = self.gateway.get_payment_details(tx.provider_payment_id)
        was_flagged = tx.flagged_for_review
        changed = False
        if payment.amount_cents != tx.amount_cents:
            tx.flag(f"AMOUNT_MISMATCH: local={tx.amount_cents} provider={payment.amount_cents}")
            logger.warning(
                "payment amount mismatch",
                extra={"transaction": tx.public_id, "local": tx.amount_cents, "provider": payment.amount_cents},
            )
        provider_local = to_local_status(payment.status)
        if provider_local != PaymentStatus(tx.status):
            changed = apply_provider_status(tx, payment.status, "reconcile", now)
        tx.last_synced_at = now
        tx.save()
        return changed, tx.flagged_for_review and not was_flagged

    def _retry_one(self, tx: Transaction, now) -> tuple[bool, bool]:
        payment = self.gateway.get_payment_details(tx.provider_payment_id)
        was_flagged = tx.flagged_for_review
        tx.last_synced_at = now
        if payment.status == ProviderPaymentStatus.CAPTURED:
            apply_provider_status(tx, payment.status, "retry", now)
            tx.processing_fee_cents = payment.fee_cents
            tx.gateway_response = payment.raw
            tx.save()
            return True, tx.flagged_for_review and not was_flagged

        tx.retry_count += 1
        if tx.retry_count >= settings.PAYMENT_RETRY_MAX:
            tx.next_retry_at = None
            tx.error_message = f"RETRY_EXHAUSTED after {tx.retry_count} attempts: {payment.error or payment.status.value}"
            logger.warning(
                "payment retries exhausted",
                extra={"transaction": tx.public_id, "retry_count": tx.retry_count},
            )
        else:
            tx.next_retry_at = now + backoff_delay(tx.retry_count)
        tx.save()
        audit.info(
            "payment retry scheduled" if tx.next_retry_at else "payment retry abandoned",
            extra={
                "transaction": tx.public_id,
                "retry_count": tx.retry_count,
                "next_retry_at": tx.next_retry_at.isoformat() if tx.next_retry_at else None,
                "provider_status": payment.status.value,
            },
        )
        return False, False

    def _sync_refund(self, refund: Refund, now) -> tuple[bool, bool]:
        result = self.gateway.get_refund(refund.provider_refund_id)
        if result.status == RefundStatus.PENDING:
            return False, False

        refund.status = result.status.value
        tx = Transaction.objects.select_for_update().get(pk=refund.transaction_id)
        if result.status == RefundStatus.FAILED:
            refund.error_message = "provider reports refund failed"
            refund.save()
            tx.flag(f"REFUND_FAILED: {refund.provider_refund_id}")
            tx.save()
            logger.warning(
                "refund failed at provider",
                extra={"transaction": tx.public_id, "refund_id": refund.provider_refund_id},
            )
            return True, True

        refund.processed_at = refund.processed_at or now
        refund.save()
        if tx.status == PaymentStatus.SUCCESS.value and tx.refunded_cents >= tx.amount_cents:
            tx.status = PaymentStatus.REFUNDED.value
            tx.last_synced_at = now
            tx.save()
            OrderModel.objects.filter(id=tx.order_id).update(payment_status="refunded", updated_at=now)
            audit_status_change(tx, PaymentStatus.SUCCESS.value, tx.status, "refund_sync", refund_id=refund.provider_refund_id)
        return True, False

    # ---- batch runner ----

    def _run(self, job: str, filters: dict, batch_size: int, handler, order_by: str, queryset=None) -> JobReport:
        if queryset is None:
            queryset = Transaction.objects.filter(is_deleted=False).exclude(provider_payment_id="")
        report = JobReport(job=job)
        candidate_ids = list(
            queryset.filter(**filters)
            .order_by(order_by)
            .values_list("pk", flat=True)[:batch_size]
        )
        report.candidates = len(candidate_ids)
        for pk in candidate_ids:
            try:
                with transaction.atomic():
                    record = queryset.select_for_update(skip_locked=True).filter(pk=pk, **filters).first()
                    if record is None:
                        # Taken by a concurrent run or no longer eligible.
                        report.skipped += 1
                        continue
                    changed, flagged = handler(record)
                report.processed += 1
                report.updated += int(changed)
                report.flagged += int(flagged)
            except Exception:
                report.errors += 1
                logger.exception("reconciliation failed for record", extra={"job": job, "pk": str(pk)})
        logger.info("reconciliation run finished", extra=report.as_dict())
        return report
