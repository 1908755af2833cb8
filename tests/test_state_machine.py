import pytest

from bazaar.common.db.models import Order
from bazaar.common.errors import InvalidTransitionError
from bazaar.domain.states import (
    TERMINAL_STATES,
    TRANSITIONS,
    OrderState,
    can_transition,
    open_order,
    transition,
)


def new_order() -> Order:
    order = Order(id="ORD-20260301-000001", delivery_method="standard", payment_method="card", subtotal=0, total=0)
    open_order(order, "customer")
    return order


def test_happy_path_records_full_history(clock):
    order = new_order()
    for target in (OrderState.PENDING_PAYMENT, OrderState.PAID, OrderState.FULFILLING, OrderState.COMPLETED):
        transition(order, target, "test", now=clock())

    assert order.state == "COMPLETED"
    assert [(h.from_state, h.to_state) for h in order.history] == [
        (None, "DRAFT"),
        ("DRAFT", "PENDING_PAYMENT"),
        ("PENDING_PAYMENT", "PAID"),
        ("PAID", "FULFILLING"),
        ("FULFILLING", "COMPLETED"),
    ]
    assert order.paid_at == clock()


def test_terminal_states_have_no_exits():
    for state in TERMINAL_STATES:
        assert TRANSITIONS[state] == frozenset()


@pytest.mark.parametrize("source, target", [
    (OrderState.DRAFT, OrderState.PAID),
    (OrderState.PENDING_PAYMENT, OrderState.RETURNED),
    (OrderState.PAID, OrderState.CANCELLED),
    (OrderState.PAID, OrderState.PAYMENT_FAILED),
    (OrderState.CANCELLED, OrderState.PAID),
    (OrderState.COMPLETED, OrderState.RETURNED),
    (OrderState.REFUNDED, OrderState.PAID),
])
def test_illegal_transitions_are_rejected(source, target):
    order = new_order()
    order.state = source.value
    history_len = len(order.history)

    with pytest.raises(InvalidTransitionError):
        transition(order, target, "test")

    assert order.state == source.value
    assert len(order.history) == history_len


def test_paid_is_only_reachable_from_pending_payment():
    sources = [s for s in OrderState if can_transition(s, OrderState.PAID)]
    assert sources == [OrderState.PENDING_PAYMENT]


def test_retry_paths():
    assert can_transition(OrderState.PAYMENT_FAILED, OrderState.PENDING_PAYMENT)
    assert can_transition(OrderState.EXPIRED, OrderState.PENDING_PAYMENT)
    assert can_transition(OrderState.EXPIRED, OrderState.PAYMENT_FAILED)
    assert not can_transition(OrderState.CANCELLED, OrderState.PENDING_PAYMENT)
