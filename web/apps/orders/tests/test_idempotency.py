from datetime import timedelta

import pytest
from django.utils import timezone

from apps.orders.idempotency import (
    IdempotencyConflict,
    IdempotencyInProgress,
    TTLIdempotencyStore,
    finalize,
    get_or_create_idempotent,
    purge_expired_keys,
    release,
)
from apps.orders.models import IdempotencyKey


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_store_hit_returns_a_copy():
    store = TTLIdempotencyStore(ttl_seconds=60, max_entries=10)
    value = {"id": 1}
    store.save("k", value)
    got = store.get("k")
    assert got == value
    got["id"] = 2
    assert store.get("k") == {"id": 1}


def test_store_entries_expire_after_ttl():
    clock = FakeClock()
    store = TTLIdempotencyStore(ttl_seconds=60, max_entries=10, clock=clock)
    store.save("k", "v")
    clock.now += 59
    assert store.get("k") == "v"
    clock.now += 1
    assert store.get("k") is None
    assert len(store) == 0


def test_store_evicts_least_recently_used():
    store = TTLIdempotencyStore(ttl_seconds=60, max_entries=2)
    store.save("a", 1)
    store.save("b", 2)
    store.get("a")
    store.save("c", 3)
    assert store.get("b") is None
    assert store.get("a") == 1
    assert store.get("c") == 3


def test_store_last_write_wins():
    store = TTLIdempotencyStore(ttl_seconds=60, max_entries=2)
    store.save("a", 1)
    store.save("a", 2)
    assert store.get("a") == 2
    assert len(store) == 1


def test_store_purge_expired():
    clock = FakeClock()
    store = TTLIdempotencyStore(ttl_seconds=10, max_entries=10, clock=clock)
    store.save("a", 1)
    clock.now += 5
    store.save("b", 2)
    clock.now += 6
    assert store.purge_expired() == 1
    assert store.get("b") == 2


def test_store_rejects_zero_capacity():
    with pytest.raises(ValueError):
        TTLIdempotencyStore(ttl_seconds=10, max_entries=0)


@pytest.mark.django_db
def test_durable_key_claim_then_replay():
    existing, rec = get_or_create_idempotent("u1:k", {"a": 1})
    assert existing is False
    finalize(rec, 201, {"id": "x"})

    existing, rec2 = get_or_create_idempotent("u1:k", {"a": 1})
    assert existing is True
    assert (rec2.response_status, rec2.response_body) == (201, {"id": "x"})


@pytest.mark.django_db
def test_durable_key_conflict_and_in_progress():
    get_or_create_idempotent("u1:k", {"a": 1})
    with pytest.raises(IdempotencyInProgress):
        get_or_create_idempotent("u1:k", {"a": 1})
    with pytest.raises(IdempotencyConflict):
        get_or_create_idempotent("u1:k", {"a": 2})


@pytest.mark.django_db
def test_released_key_can_be_claimed_again():
    _, rec = get_or_create_idempotent("u1:k", {"a": 1})
    release(rec)
    existing, _ = get_or_create_idempotent("u1:k", {"a": 1})
    assert existing is False


@pytest.mark.django_db
def test_expired_record_is_reclaimed_and_purged():
    _, rec = get_or_create_idempotent("u1:k", {"a": 1})
    finalize(rec, 201, {"id": "x"})
    IdempotencyKey.objects.filter(pk=rec.pk).update(expires_at=timezone.now() - timedelta(seconds=1))

    existing, rec = get_or_create_idempotent("u1:k", {"a": 2})
    assert existing is False
    assert rec.response_status == 0

    IdempotencyKey.objects.filter(pk=rec.pk).update(expires_at=timezone.now() - timedelta(seconds=1))
    assert purge_expired_keys() == 1
    assert not IdempotencyKey.objects.exists()
