"""Stock ledger: reserve, unreserve, decrement and adjust per SKU.

Hot-path writes (``reserve`` and ``decrement``) are single conditional
UPDATEs: the row only changes when ``quantity - reserved >= qty`` still
holds at write time, so two concurrent callers can never both take the
last units. Colder paths (``unreserve``, ``adjust``) lock the row with
``SELECT ... FOR UPDATE`` and recompute in Python. Every successful
mutation appends a ``StockMovement`` in the same transaction.
"""

import logging
from collections import defaultdict
from typing import Iterable

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from apps.common.errors import InsufficientStock, StockNotFound, ValidationFailed

from .models import Stock, StockMovement

logger = logging.getLogger(__name__)


def _require_positive(qty: int) -> int:
    if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
        raise ValidationFailed("quantity must be a positive integer", code="INVALID_QUANTITY")
    return qty


class StockLedger:
    """Django-backed stock ledger. Stateless; safe to share between threads."""

    def get(self, sku: str) -> Stock:
        try:
            return Stock.objects.get(sku=sku, is_deleted=False)
        except Stock.DoesNotExist:
            raise StockNotFound(sku)

    def check_availability(self, lines: Iterable[tuple[str, int]]) -> None:
        """Fail fast when any SKU cannot cover the requested quantity.

        Read-only; the authoritative check is the conditional write in
        ``decrement``. Quantities for repeated SKUs are summed.

        Raises:
            StockNotFound: For an unknown SKU.
            InsufficientStock: For the first SKU that falls short.
        """
        wanted: dict[str, int] = defaultdict(int)
        for sku, qty in lines:
            wanted[sku] += _require_positive(qty)
        rows = {
            s.sku: s
            for s in Stock.objects.filter(sku__in=list(wanted), is_deleted=False)
        }
        for sku, qty in wanted.items():
            stock = rows.get(sku)
            if stock is None:
                raise StockNotFound(sku)
            if qty > stock.available:
                raise InsufficientStock(sku, qty, stock.available)

    def reserve(self, sku: str, qty: int, order_ref: str) -> Stock:
        _require_positive(qty)
        return self._conditional_write(
            sku,
            qty,
            StockMovement.Type.RESERVE,
            order_ref,
            reserved=F("reserved") + qty,
            available=F("quantity") - F("reserved") - qty,
        )

    def decrement(self, sku: str, qty: int, reference: str) -> Stock:
        _require_positive(qty)
        return self._conditional_write(
            sku,
            qty,
            StockMovement.Type.OUT,
            reference,
            quantity=F("quantity") - qty,
            available=F("quantity") - F("reserved") - qty,
        )

    def unreserve(self, sku: str, qty: int, order_ref: str) -> Stock:
        """Release a hold. Releasing more than is reserved clamps at zero."""
        _require_positive(qty)
        with transaction.atomic():
            stock = self._locked(sku)
            released = min(qty, stock.reserved)
            if released < qty:
                logger.warning(
                    "unreserve exceeds reserved quantity",
                    extra={"sku": sku, "requested": qty, "reserved": stock.reserved, "order_ref": order_ref},
                )
            stock.reserved -= released
            stock.last_movement_at = timezone.now()
            stock.save()
            self._record(stock, StockMovement.Type.UNRESERVE, released, order_ref)
            return stock

    def adjust(
        self,
        sku: str,
        delta: int,
        reference: str,
        notes: str = "",
        movement_type: str = StockMovement.Type.ADJUSTMENT,
    ) -> Stock:
        """Apply a signed correction to the physical quantity.

        Raises:
            InsufficientStock: If the result would drop below what is
                already reserved.
        """
        if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
            raise ValidationFailed("delta must be a non-zero integer", code="INVALID_QUANTITY")
        with transaction.atomic():
            stock = self._locked(sku)
            new_quantity = stock.quantity + delta
            if new_quantity < stock.reserved:
                raise InsufficientStock(sku, -delta, stock.available)
            stock.quantity = new_quantity
            stock.last_movement_at = timezone.now()
            stock.save()
            self._record(stock, movement_type, delta, reference, notes)
            return stock

    # ---- internals ----

    def _locked(self, sku: str) -> Stock:
        try:
            return Stock.objects.select_for_update().get(sku=sku, is_deleted=False)
        except Stock.DoesNotExist:
            raise StockNotFound(sku)

    def _conditional_write(self, sku, qty, movement_type, reference, **updates) -> Stock:
        now = timezone.now()
        with transaction.atomic():
            changed = Stock.objects.filter(
                sku=sku,
                is_deleted=False,
                quantity__gte=F("reserved") + qty,
            ).update(last_movement_at=now, updated_at=now, **updates)
            if not changed:
                stock = self.get(sku)
                raise InsufficientStock(sku, qty, stock.available)
            stock = Stock.objects.get(sku=sku)
            self._record(stock, movement_type, qty, reference)
        if stock.is_low_stock:
            logger.info("stock low", extra={"sku": sku, "available": stock.available})
        return stock

    def _record(self, stock: Stock, movement_type: str, qty: int, reference: str, notes: str = ""):
        StockMovement.objects.create(
            stock=stock,
            type=movement_type,
            quantity=qty,
            reference=reference or "",
            notes=notes,
        )
