import pytest

from apps.common.errors import InvalidStatus, InvalidTransition
from apps.orders.domain import ALLOWED_TRANSITIONS, OrderStatus, check_transition, generate_order_number

CHAIN = ["pending", "confirmed", "processing", "shipped", "delivered"]


@pytest.mark.parametrize("src, dst", list(zip(CHAIN, CHAIN[1:])))
def test_forward_chain_is_allowed(src, dst):
    assert check_transition(src, dst) == OrderStatus(dst)


@pytest.mark.parametrize("src", ["pending", "confirmed", "processing", "shipped"])
@pytest.mark.parametrize("dst", ["cancelled", "returned"])
def test_cancel_and_return_from_any_pre_delivery_state(src, dst):
    assert check_transition(src, dst) == OrderStatus(dst)


@pytest.mark.parametrize(
    "src, dst",
    [
        ("pending", "shipped"),
        ("confirmed", "pending"),
        ("delivered", "cancelled"),
        ("cancelled", "confirmed"),
        ("returned", "pending"),
        ("shipped", "shipped"),
    ],
)
def test_invalid_moves_are_rejected(src, dst):
    with pytest.raises(InvalidTransition):
        check_transition(src, dst)


def test_unknown_target_is_rejected():
    with pytest.raises(InvalidStatus):
        check_transition("pending", "teleported")


def test_terminal_states_have_no_exits():
    for status in (OrderStatus.CANCELLED, OrderStatus.RETURNED):
        assert ALLOWED_TRANSITIONS[status] == frozenset()


def test_delivered_order_can_only_be_returned():
    assert ALLOWED_TRANSITIONS[OrderStatus.DELIVERED] == frozenset({OrderStatus.RETURNED})
    assert check_transition("delivered", "returned") == OrderStatus.RETURNED


def test_parse_is_case_insensitive():
    assert OrderStatus.parse(" Shipped ") == OrderStatus.SHIPPED


def test_order_number_format():
    from datetime import datetime

    number = generate_order_number(datetime(2024, 3, 9))
    assert number.startswith("ORD-20240309-")
    assert len(number.split("-")[-1]) == 6
