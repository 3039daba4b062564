"""Sync, reconcile and retry passes against the sandbox provider."""

from datetime import timedelta

import pytest
from django.utils import timezone

from apps.payments.models import Refund, Transaction
from apps.payments.providers import get_reconciler
from apps.payments.service import backoff_delay

pytestmark = pytest.mark.django_db


def later(minutes=10):
    return timezone.now() + timedelta(minutes=minutes)


def reload(tx):
    return Transaction.objects.get(pk=tx.pk)


def test_sync_resolves_captured_payment_and_flags_orphan(make_txn):
    tx = make_txn(status="pending", outcome="captured")

    report = get_reconciler().sync_payments(now=later())

    assert (report.candidates, report.updated, report.flagged, report.errors) == (1, 1, 1, 0)
    tx = reload(tx)
    assert tx.status == "success"
    assert tx.captured_at is not None
    assert tx.last_synced_at is not None
    assert tx.flag_reason == "CAPTURED_WITHOUT_ORDER"


def test_sync_ignores_recent_transactions(make_txn):
    make_txn(status="pending", outcome="captured")
    assert get_reconciler().sync_payments(now=timezone.now()).candidates == 0


def test_sync_failed_provider_payment_schedules_retry(make_txn):
    tx = make_txn(status="processing", outcome="failed")
    now = later()

    get_reconciler().sync_payments(now=now)

    tx = reload(tx)
    assert tx.status == "failed"
    assert tx.next_retry_at == now + backoff_delay(0)
    assert tx.error_message == "card declined"


def test_sync_keeps_unknown_provider_status_pending(make_txn, sandbox):
    tx = make_txn(status="pending")
    sandbox.set_payment(tx.provider_payment_id, status="on_hold")

    report = get_reconciler().sync_payments(now=later())

    assert report.updated == 0
    assert reload(tx).status == "pending"


def test_one_bad_record_does_not_abort_the_batch(make_txn):
    good = make_txn(status="pending", outcome="captured")
    bad = make_txn(status="pending")
    Transaction.objects.filter(pk=bad.pk).update(provider_payment_id="pay_missing")

    report = get_reconciler().sync_payments(now=later())

    assert (report.candidates, report.processed, report.errors) == (2, 1, 1)
    assert reload(good).status == "success"
    assert reload(bad).status == "pending"


def test_reconcile_flags_amount_mismatch_without_correcting(make_txn, sandbox):
    tx = make_txn(status="success", outcome="captured")
    sandbox.set_payment(tx.provider_payment_id, amount=9000)

    report = get_reconciler().reconcile_payments()

    assert report.flagged == 1
    tx = reload(tx)
    assert tx.amount_cents == 10000
    assert tx.status == "success"
    assert tx.flag_reason.startswith("AMOUNT_MISMATCH")


def test_reconcile_never_downgrades_a_successful_payment(make_txn, sandbox):
    tx = make_txn(status="success", outcome="captured")
    sandbox.set_payment(tx.provider_payment_id, status="failed")

    get_reconciler().reconcile_payments()

    tx = reload(tx)
    assert tx.status == "success"
    assert tx.flag_reason == "PROVIDER_REPORTS_FAILED"


def test_reconcile_applies_provider_refund(make_txn, sandbox):
    tx = make_txn(status="success", outcome="captured")
    sandbox.set_payment(tx.provider_payment_id, status="refunded")

    report = get_reconciler().reconcile_payments()

    assert report.updated == 1
    assert reload(tx).status == "refunded"


def test_retry_picks_up_payment_captured_after_failure(make_txn):
    now = timezone.now()
    tx = make_txn(status="failed", outcome="captured", retry_count=1, next_retry_at=now - timedelta(seconds=1))
    reconciler = get_reconciler()

    report = reconciler.retry_failed_payments(now=now)

    assert report.updated == 1
    tx = reload(tx)
    assert tx.status == "success"
    assert tx.next_retry_at is None
    assert tx.retry_count == 1
    assert reconciler.retry_failed_payments(now=later(60 * 24)).candidates == 0


def test_retry_backs_off_until_exhausted(make_txn, settings):
    settings.PAYMENT_RETRY_MAX = 3
    now = timezone.now()
    tx = make_txn(status="failed", outcome="failed", next_retry_at=now)
    reconciler = get_reconciler()

    reconciler.retry_failed_payments(now=now)
    tx = reload(tx)
    assert tx.retry_count == 1
    assert tx.next_retry_at == now + backoff_delay(1)

    # not due yet
    assert reconciler.retry_failed_payments(now=now).candidates == 0

    for _ in range(2):
        due = reload(tx).next_retry_at
        reconciler.retry_failed_payments(now=due)

    tx = reload(tx)
    assert tx.retry_count == 3
    assert tx.next_retry_at is None
    assert tx.status == "failed"
    assert tx.error_message.startswith("RETRY_EXHAUSTED")
    assert reconciler.retry_failed_payments(now=later(60 * 24 * 30)).candidates == 0


def test_backoff_grows_monotonically(settings):
    settings.PAYMENT_RETRY_BACKOFF_BASE = 2
    settings.PAYMENT_RETRY_BACKOFF_UNIT_SECS = 60
    delays = [backoff_delay(n) for n in range(4)]
    assert delays == [timedelta(seconds=s) for s in (60, 120, 240, 480)]


def test_sync_cancels_attempt_whose_payment_settled_another_transaction(make_txn):
    stale = make_txn(status="pending", outcome="captured")
    Transaction.objects.create(
        order_id=stale.order_id,
        user_id="u1",
        provider_order_id=stale.provider_order_id,
        provider_payment_id=stale.provider_payment_id,
        amount_cents=stale.amount_cents,
        method="upi",
        status="success",
    )

    report = get_reconciler().sync_payments(now=later())

    assert (report.candidates, report.updated, report.flagged, report.errors) == (1, 1, 1, 0)
    stale = reload(stale)
    assert stale.status == "cancelled"
    assert stale.flag_reason == "DUPLICATE_ATTEMPT"
    assert stale.next_retry_at is None


def pending_refund(tx, sandbox):
    provider_refund = sandbox.refund(tx.provider_payment_id, tx.amount_cents, "damaged")
    sandbox.set_refund(provider_refund.id, status="pending")
    return Refund.objects.create(
        transaction=tx,
        provider_refund_id=provider_refund.id,
        amount_cents=tx.amount_cents,
        reason="damaged",
        status="pending",
    )


def test_refund_sync_follows_pending_refund_until_processed(make_txn, sandbox):
    tx = make_txn(status="success", outcome="captured")
    refund = pending_refund(tx, sandbox)
    reconciler = get_reconciler()

    report = reconciler.sync_refunds()
    assert (report.candidates, report.processed, report.updated) == (1, 1, 0)
    assert Refund.objects.get(pk=refund.pk).status == "pending"
    assert reload(tx).status == "success"

    sandbox.set_refund(refund.provider_refund_id, status="processed")
    report = reconciler.sync_refunds()

    assert (report.updated, report.errors) == (1, 0)
    refund = Refund.objects.get(pk=refund.pk)
    assert refund.status == "processed"
    assert refund.processed_at is not None
    assert reload(tx).status == "refunded"
    assert reconciler.sync_refunds().candidates == 0


def test_refund_sync_flags_refund_the_provider_failed(make_txn, sandbox):
    tx = make_txn(status="success", outcome="captured")
    refund = pending_refund(tx, sandbox)
    sandbox.set_refund(refund.provider_refund_id, status="failed")

    report = get_reconciler().sync_refunds()

    assert (report.updated, report.flagged) == (1, 1)
    assert Refund.objects.get(pk=refund.pk).status == "failed"
    tx = reload(tx)
    assert tx.status == "success"
    assert tx.flag_reason == f"REFUND_FAILED: {refund.provider_refund_id}"
