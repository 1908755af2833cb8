"""
Order lifecycle.

    DRAFT -> PENDING_PAYMENT -> PAID -> FULFILLING -> COMPLETED
    PENDING_PAYMENT -> PAYMENT_FAILED -> CANCELLED
    PENDING_PAYMENT -> EXPIRED -> CANCELLED
    PENDING_PAYMENT -> CANCELLED            (shopper cancels)
    PAYMENT_FAILED / EXPIRED -> PENDING_PAYMENT   (retry with a new attempt)
    EXPIRED -> PAYMENT_FAILED               (confirmation arrived after the sweep; refunded)
    PAID / FULFILLING -> RETURNED -> REFUNDED

COMPLETED, CANCELLED and REFUNDED are terminal.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from structlog import get_logger

from bazaar.common.db.models import Order, OrderStateChange, utcnow
from bazaar.common.errors import InvalidTransitionError

logger = get_logger()


class OrderState(str, Enum):
    DRAFT = "DRAFT"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    FULFILLING = "FULFILLING"
    COMPLETED = "COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"
    REFUNDED = "REFUNDED"


class ReservationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"


class AttemptStatus(str, Enum):
    INITIATED = "INITIATED"
    AWAITING_CALLBACK = "AWAITING_CALLBACK"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"  # initiation never reached the provider


class RefundStatus(str, Enum):
    REQUESTED = "REQUESTED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class RefundReason(str, Enum):
    RETURN = "RETURN"
    COMPENSATION = "COMPENSATION"


TERMINAL_STATES: FrozenSet[OrderState] = frozenset(
    {OrderState.COMPLETED, OrderState.CANCELLED, OrderState.REFUNDED}
)

# States in which money has been collected (or, for COD, promised) and stock committed
PAYMENT_CONFIRMED_STATES: FrozenSet[OrderState] = frozenset(
    {OrderState.PAID, OrderState.FULFILLING, OrderState.COMPLETED, OrderState.RETURNED, OrderState.REFUNDED}
)

RETRYABLE_STATES: FrozenSet[OrderState] = frozenset(
    {OrderState.DRAFT, OrderState.PAYMENT_FAILED, OrderState.EXPIRED}
)

TRANSITIONS: Dict[OrderState, FrozenSet[OrderState]] = {
    OrderState.DRAFT: frozenset({OrderState.PENDING_PAYMENT}),
    OrderState.PENDING_PAYMENT: frozenset({
        OrderState.PAID,
        OrderState.PAYMENT_FAILED,
        OrderState.EXPIRED,
        OrderState.CANCELLED,
    }),
    OrderState.PAYMENT_FAILED: frozenset({OrderState.CANCELLED, OrderState.PENDING_PAYMENT}),
    OrderState.EXPIRED: frozenset({
        OrderState.CANCELLED,
        OrderState.PAYMENT_FAILED,
        OrderState.PENDING_PAYMENT,
    }),
    OrderState.PAID: frozenset({OrderState.FULFILLING, OrderState.RETURNED}),
    OrderState.FULFILLING: frozenset({OrderState.COMPLETED, OrderState.RETURNED}),
    OrderState.RETURNED: frozenset({OrderState.REFUNDED}),
    OrderState.COMPLETED: frozenset(),
    OrderState.CANCELLED: frozenset(),
    OrderState.REFUNDED: frozenset(),
}


def can_transition(source: OrderState, target: OrderState) -> bool:
    return target in TRANSITIONS.get(source, frozenset())


def transition(
    order: Order,
    target: OrderState,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OrderStateChange:
    """
    Move `order` to `target`, recording who did it and why.
    The only code path that writes Order.state.
    """
    source = OrderState(order.state)
    if not can_transition(source, target):
        raise InvalidTransitionError(order.id, source.value, target.value)

    now = now or utcnow()
    change = OrderStateChange(
        order_id=order.id,
        from_state=source.value,
        to_state=target.value,
        actor=actor,
        reason=reason,
        ts=now,
    )
    order.history.append(change)
    order.state = target.value
    order.state_changed_at = now
    if target is OrderState.PAID:
        order.paid_at = now

    logger.info(
        "order_transitioned",
        order_id=order.id,
        from_state=source.value,
        to_state=target.value,
        actor=actor,
        reason=reason,
    )
    return change


def open_order(order: Order, actor: str, now: Optional[datetime] = None) -> OrderStateChange:
    """Record the creation of an order in DRAFT as the first history entry."""
    now = now or utcnow()
    order.state = OrderState.DRAFT.value
    order.state_changed_at = now
    change = OrderStateChange(
        order_id=order.id, from_state=None, to_state=OrderState.DRAFT.value, actor=actor, reason="checkout_submitted", ts=now
    )
    order.history.append(change)
    return change
