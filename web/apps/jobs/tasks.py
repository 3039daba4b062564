"""Task registrations for the background scheduler."""

import functools
from datetime import timedelta

from django.conf import settings
from django.db import close_old_connections

from apps.orders.idempotency import purge_expired_keys
from apps.orders.providers import get_idempotency_store, get_order_repository
from apps.payments.providers import get_reconciler

from .scheduler import Scheduler


def _db_task(fn):
    """Drop stale connections around each run; the loop thread is long-lived."""

    @functools.wraps(fn)
    def wrapper():
        close_old_connections()
        try:
            return fn()
        finally:
            close_old_connections()

    return wrapper


@_db_task
def payment_sync():
    return get_reconciler().sync_payments().as_dict()


@_db_task
def payment_reconcile():
    return get_reconciler().reconcile_payments().as_dict()


@_db_task
def payment_retry():
    return get_reconciler().retry_failed_payments().as_dict()


@_db_task
def refund_sync():
    return get_reconciler().sync_refunds().as_dict()


@_db_task
def order_cleanup():
    cancelled = get_order_repository().cancel_stale_pending(
        timedelta(hours=settings.ORDER_PENDING_RETENTION_HOURS)
    )
    return {"cancelled": cancelled}


@_db_task
def idempotency_purge():
    return {
        "durable": purge_expired_keys(),
        "cache": get_idempotency_store().purge_expired(),
    }


TASKS = {
    "payment_sync": (payment_sync, "SCHEDULE_PAYMENT_SYNC_MINUTES"),
    "payment_reconcile": (payment_reconcile, "SCHEDULE_PAYMENT_RECONCILE_MINUTES"),
    "payment_retry": (payment_retry, "SCHEDULE_PAYMENT_RETRY_MINUTES"),
    "refund_sync": (refund_sync, "SCHEDULE_REFUND_SYNC_MINUTES"),
    "order_cleanup": (order_cleanup, "SCHEDULE_ORDER_CLEANUP_MINUTES"),
    "idempotency_purge": (idempotency_purge, "SCHEDULE_IDEMPOTENCY_PURGE_MINUTES"),
}


def build_scheduler(only=None, **kwargs) -> Scheduler:
    """Return a scheduler with the standard tasks (or the ``only`` subset)."""
    scheduler = Scheduler(poll_interval=settings.SCHEDULER_POLL_SECS, **kwargs)
    for name, (handler, period_setting) in TASKS.items():
        if only and name not in only:
            continue
        scheduler.register(name, timedelta(minutes=getattr(settings, period_setting)), handler)
    return scheduler
