"""Idempotency for checkout, in two layers.

``TTLIdempotencyStore`` is the bounded in-process cache injected into the
checkout service: key -> completed ``Order``, with a TTL and an LRU cap.
It is a fast path only and does not survive restarts.

The durable layer (``get_or_create_idempotent`` / ``finalize`` /
``release``) works at the HTTP level. It stores a hash of the request
body so a reused key with a different payload is rejected, remembers
terminal responses so retries replay them, and lets a request that
failed on a server error be retried under the same key.
"""

import copy
import hashlib
import json
import threading
import time
from collections import OrderedDict
from datetime import timedelta
from typing import Callable, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.common.errors import AppError

from .domain import Order
from .models import IdempotencyKey


class IdempotencyConflict(AppError):
    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409


class IdempotencyInProgress(AppError):
    code = "IDEMPOTENCY_IN_PROGRESS"
    status_code = 409


class TTLIdempotencyStore:
    """Thread-safe key -> Order cache bounded by TTL and entry count.

    Args:
        ttl_seconds: Lifetime of an entry after its last save.
        max_entries: Upper bound on entries; least recently used go first.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, ttl_seconds: float, max_entries: int, clock: Callable[[], float] = time.monotonic):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, tuple[float, Order]]" = OrderedDict()

    def get(self, key: str) -> Optional[Order]:
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            expires_at, order = hit
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return copy.deepcopy(order)

    def save(self, key: str, result: Order) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, copy.deepcopy(result))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, (exp, _) in self._entries.items() if exp <= now]
            for k in stale:
                del self._entries[k]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---- durable request records ----

def _hash(payload: dict) -> str:
    """Stable SHA-256 of a JSON payload (sorted keys, compact separators)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Claim ``key`` for this request, or find the earlier claim.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``. ``existing`` is
        True when a finished response is stored and should be replayed.

    Raises:
        IdempotencyConflict: The key was used with a different payload.
        IdempotencyInProgress: The first request with this key is still
            running.
    """
    h = _hash(payload)
    now = timezone.now()
    expires_at = now + timedelta(hours=settings.IDEMPOTENCY_KEY_TTL_HOURS)

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, expires_at=expires_at)
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)

    stale_claim = rec.response_status == 0 and rec.created_at <= now - timedelta(
        seconds=getattr(settings, "IDEMPOTENCY_IN_PROGRESS_STALE_SECS", 300)
    )
    if rec.expires_at <= now or stale_claim:
        # Expired records and abandoned claims no longer bind the key.
        rec.request_hash = h
        rec.response_status = 0
        rec.response_body = {}
        rec.order_id = None
        rec.created_at = now
        rec.expires_at = expires_at
        rec.save()
        return False, rec
    if rec.request_hash != h:
        raise IdempotencyConflict()
    if rec.response_status == 0:
        raise IdempotencyInProgress()
    return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Store the terminal response so retries can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def release(rec: IdempotencyKey):
    """Drop the claim after a non-terminal failure so the key can be retried."""
    IdempotencyKey.objects.filter(pk=rec.pk, response_status=0).delete()


def purge_expired_keys(now=None) -> int:
    now = now or timezone.now()
    deleted, _ = IdempotencyKey.objects.filter(expires_at__lte=now).delete()
    return deleted
