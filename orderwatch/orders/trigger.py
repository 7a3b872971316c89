# orderwatch/orders/trigger.py
from __future__ import annotations

from decimal import Decimal
from typing import Any

from orderwatch.orders.models import OrderSide, OrderType


def _d(x: Any) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def should_fire(
    order_type: OrderType,
    side: OrderSide,
    trigger_price: Any,
    current_price: Any,
) -> bool:
    """
    Decide whether a conditional order crosses its threshold at current_price.

    Stop-style orders (STOP_LOSS / STOP_MARKET / STOP_LIMIT) fire when the price
    moves against the side: SELL at or below the trigger, BUY at or above it.
    TAKE_PROFIT is the mirror image. Both boundaries are inclusive.

    A current_price <= 0 means the price feed failed; that is never a crossing.
    TRAILING_STOP has no local threshold rule and never fires here.

    Pure function: no clock, no I/O.
    """
    current = _d(current_price)
    trigger = _d(trigger_price)

    if current <= 0:
        return False

    if order_type in (OrderType.STOP_LOSS, OrderType.STOP_MARKET, OrderType.STOP_LIMIT):
        if side is OrderSide.SELL:
            return current <= trigger
        if side is OrderSide.BUY:
            return current >= trigger
        raise ValueError(f"unknown side: {side!r}")

    if order_type is OrderType.TAKE_PROFIT:
        if side is OrderSide.SELL:
            return current >= trigger
        if side is OrderSide.BUY:
            return current <= trigger
        raise ValueError(f"unknown side: {side!r}")

    if order_type is OrderType.TRAILING_STOP:
        return False

    raise ValueError(f"unknown order type: {order_type!r}")
