from datetime import timedelta
from io import StringIO

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError

from apps.jobs.tasks import TASKS, build_scheduler


def test_build_scheduler_registers_periods_from_settings(settings):
    settings.SCHEDULE_PAYMENT_RETRY_MINUTES = 7

    s = build_scheduler()

    assert set(s.tasks) == set(TASKS)
    assert s.tasks["payment_retry"].period == timedelta(minutes=7)


def test_build_scheduler_subset():
    assert set(build_scheduler(only=["order_cleanup"]).tasks) == {"order_cleanup"}


@pytest.mark.django_db(transaction=True)
def test_run_scheduler_once_runs_every_task():
    out = StringIO()
    call_command("run_scheduler", "--once", stdout=out)

    out = out.getvalue()
    for name in TASKS:
        assert f"{name}: ok" in out


@pytest.mark.django_db(transaction=True)
def test_payment_tasks_return_reports():
    report = TASKS["payment_sync"][0]()
    assert report["job"] == "payment_sync"
    assert report["errors"] == 0

    assert TASKS["refund_sync"][0]()["job"] == "refund_sync"
    assert TASKS["order_cleanup"][0]() == {"cancelled": 0}
    assert TASKS["idempotency_purge"][0]() == {"durable": 0, "cache": 0}


def test_unknown_task_is_rejected():
    with pytest.raises(CommandError):
        call_command("run_scheduler", "--once", "--only", "nope")
