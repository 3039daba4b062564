import threading

import pytest
from django.db import DatabaseError, connection, transaction

from apps.common.errors import InsufficientStock, StockNotFound, ValidationFailed
from apps.inventory.ledger import StockLedger
from apps.inventory.models import Stock, StockMovement

pytestmark = pytest.mark.django_db


def test_decrement_takes_units_and_records_movement(make_stock):
    make_stock("A", 10, reserved=2)

    stock = StockLedger().decrement("A", 3, "ORD-1")

    assert (stock.quantity, stock.reserved, stock.available) == (7, 2, 5)
    mv = StockMovement.objects.get()
    assert (mv.type, mv.quantity, mv.reference) == ("out", 3, "ORD-1")


def test_decrement_refuses_reserved_units_and_leaves_row_untouched(make_stock):
    make_stock("A", 5, reserved=4)

    with pytest.raises(InsufficientStock) as e:
        StockLedger().decrement("A", 2, "ORD-1")

    assert (e.value.requested, e.value.available) == (2, 1)
    stock = Stock.objects.get(sku="A")
    assert (stock.quantity, stock.reserved, stock.available) == (5, 4, 1)
    assert not StockMovement.objects.exists()


def test_failed_line_rolls_back_earlier_lines_in_same_transaction(make_stock):
    make_stock("A", 5)
    make_stock("B", 1)
    ledger = StockLedger()

    with pytest.raises(InsufficientStock):
        with transaction.atomic():
            ledger.decrement("A", 2, "ORD-1")
            ledger.decrement("B", 2, "ORD-1")

    assert Stock.objects.get(sku="A").available == 5
    assert not StockMovement.objects.exists()


def test_unknown_sku(make_stock):
    with pytest.raises(StockNotFound):
        StockLedger().decrement("NOPE", 1, "ORD-1")


@pytest.mark.parametrize("qty", [0, -1, True])
def test_quantity_must_be_positive(make_stock, qty):
    make_stock("A", 5)
    with pytest.raises(ValidationFailed):
        StockLedger().reserve("A", qty, "ORD-1")


def test_reserve_then_unreserve_clamps_at_zero(make_stock):
    make_stock("A", 10)
    ledger = StockLedger()

    stock = ledger.reserve("A", 4, "ORD-1")
    assert (stock.reserved, stock.available) == (4, 6)

    stock = ledger.unreserve("A", 9, "ORD-1")
    assert (stock.reserved, stock.available) == (0, 10)
    assert StockMovement.objects.filter(type="unreserve").get().quantity == 4


def test_reserve_beyond_available_fails(make_stock):
    make_stock("A", 3, reserved=2)
    with pytest.raises(InsufficientStock):
        StockLedger().reserve("A", 2, "ORD-1")
    assert Stock.objects.get(sku="A").reserved == 2


def test_adjust_cannot_drop_below_reserved(make_stock):
    make_stock("A", 10, reserved=6)
    ledger = StockLedger()

    with pytest.raises(InsufficientStock):
        ledger.adjust("A", -5, "count-1")

    stock = ledger.adjust("A", -4, "count-1", notes="cycle count")
    assert (stock.quantity, stock.available) == (6, 0)
    mv = StockMovement.objects.get()
    assert (mv.type, mv.quantity, mv.notes) == ("adjustment", -4, "cycle count")


def test_check_availability_sums_repeated_skus(make_stock):
    make_stock("A", 3)
    ledger = StockLedger()

    ledger.check_availability([("A", 1), ("A", 2)])
    with pytest.raises(InsufficientStock) as e:
        ledger.check_availability([("A", 2), ("A", 2)])
    assert e.value.requested == 4
    with pytest.raises(StockNotFound):
        ledger.check_availability([("A", 1), ("Z", 1)])


def test_decrement_checks_stock_at_write_time_not_read_time(make_stock):
    make_stock("A", 3)
    first, second = StockLedger(), StockLedger()
    # Both checkouts pass the precheck against the same snapshot.
    first.check_availability([("A", 2)])
    second.check_availability([("A", 2)])

    first.decrement("A", 2, "ORD-1")
    with pytest.raises(InsufficientStock):
        second.decrement("A", 2, "ORD-2")

    stock = Stock.objects.get(sku="A")
    assert (stock.quantity, stock.available) == (1, 1)
    assert list(StockMovement.objects.values_list("reference", flat=True)) == ["ORD-1"]


@pytest.mark.django_db(transaction=True)
def test_concurrent_decrements_never_oversell(transactional_db, make_stock):
    make_stock("A", 3)
    barrier = threading.Barrier(2)
    results = []

    def take(reference):
        try:
            barrier.wait()
            StockLedger().decrement("A", 2, reference)
            results.append("ok")
        except (InsufficientStock, DatabaseError) as e:
            # SQLite may refuse the second writer outright instead of running it.
            results.append(e)
        finally:
            connection.close()

    threads = [threading.Thread(target=take, args=(f"ORD-{n}",)) for n in (1, 2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 1
    stock = Stock.objects.get(sku="A")
    assert (stock.quantity, stock.available) == (1, 1)
    assert StockMovement.objects.filter(type="out").count() == 1
