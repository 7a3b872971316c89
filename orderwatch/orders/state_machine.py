# orderwatch/orders/state_machine.py
from __future__ import annotations

from typing import Dict, FrozenSet

from orderwatch.core.errors import InvalidStateError
from orderwatch.orders.models import OrderStatus

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.TRIGGERED, OrderStatus.CANCELLED}),
    OrderStatus.TRIGGERED: frozenset({OrderStatus.EXECUTED, OrderStatus.FAILED}),
    OrderStatus.EXECUTED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

ACTIVE_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PENDING, OrderStatus.TRIGGERED}
)


def is_active(status: OrderStatus) -> bool:
    return status in ACTIVE_STATUSES


def is_terminal(status: OrderStatus) -> bool:
    return not ALLOWED_TRANSITIONS[status]


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateError(
            f"status transition {current.value} -> {target.value} is not allowed"
        )
