import pytest

from apps.common.http import get_breaker


@pytest.mark.django_db
def test_health_reports_db_and_circuits(api):
    get_breaker("cart")

    r = api.get("/health/")

    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["degraded"] is False
    assert body["components"]["db"] == {"ok": True}
    assert body["components"]["circuits"]["cart"] == "CLOSED"


@pytest.mark.django_db
def test_open_circuit_degrades_but_stays_up(api):
    cb = get_breaker("pricing")
    for _ in range(cb.fail_threshold):
        cb.on_failure()

    body = api.get("/health/").json()

    assert body["ok"] is True
    assert body["degraded"] is True
    assert body["components"]["circuits"]["pricing"] == "OPEN"
