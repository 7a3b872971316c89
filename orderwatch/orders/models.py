# orderwatch/orders/models.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from orderwatch.core.errors import ValidationError


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_MARKET = "STOP_MARKET"
    STOP_LIMIT = "STOP_LIMIT"
    TRAILING_STOP = "TRAILING_STOP"

    @property
    def is_limit(self) -> bool:
        return self is OrderType.STOP_LIMIT

    @property
    def reduce_only(self) -> bool:
        return self in (OrderType.STOP_LOSS, OrderType.TAKE_PROFIT)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    TRIGGERED = "TRIGGERED"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


def to_decimal(value: Any, field_name: str = "value") -> Decimal:
    if isinstance(value, Decimal):
        d = value
    elif value is None or value == "":
        return Decimal("0")
    else:
        try:
            d = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"{field_name} is not a number: {value!r}") from e
    # NaN / Infinity cannot be compared or sent to the exchange
    if not d.is_finite():
        raise ValidationError(f"{field_name} must be a finite number, got {value!r}")
    return d


def parse_enum(enum_cls, value: Any, field_name: str):
    if isinstance(value, enum_cls):
        return value
    raw = str(value or "").strip().upper()
    try:
        return enum_cls(raw)
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{field_name} must be one of {allowed}, got {value!r}") from e


@dataclass
class OrderDraft:
    """User input for a new conditional order (before the store assigns id/status)."""

    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    trigger_price: Decimal
    order_price: Decimal = Decimal("0")
    remark: str = ""

    @classmethod
    def build(
        cls,
        *,
        symbol: str,
        side: Any,
        order_type: Any,
        quantity: Any,
        trigger_price: Any,
        order_price: Any = None,
        remark: str = "",
    ) -> "OrderDraft":
        draft = cls(
            symbol=(symbol or "").strip().upper(),
            side=parse_enum(OrderSide, side, "side"),
            order_type=parse_enum(OrderType, order_type, "type"),
            quantity=to_decimal(quantity, "quantity"),
            trigger_price=to_decimal(trigger_price, "triggerPrice"),
            order_price=to_decimal(order_price, "orderPrice"),
            remark=remark or "",
        )
        draft.validate()
        return draft

    def validate(self) -> None:
        if not self.symbol:
            raise ValidationError("symbol is required")
        if self.quantity <= 0:
            raise ValidationError(f"quantity must be > 0, got {self.quantity}")
        if self.trigger_price <= 0:
            raise ValidationError(f"triggerPrice must be > 0, got {self.trigger_price}")
        if self.order_price < 0:
            raise ValidationError(f"orderPrice must be >= 0, got {self.order_price}")
        if self.order_type.is_limit and self.order_price <= 0:
            raise ValidationError("orderPrice must be > 0 for STOP_LIMIT orders")


@dataclass
class ConditionalOrder:
    id: int
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    trigger_price: Decimal
    order_price: Decimal = Decimal("0")
    status: OrderStatus = OrderStatus.PENDING
    create_time: str = field(default_factory=utc_now_iso)
    trigger_time: Optional[str] = None
    execute_time: Optional[str] = None
    exchange_order_id: Optional[str] = None
    remark: str = ""
    fail_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in (OrderStatus.PENDING, OrderStatus.TRIGGERED)

    def copy(self) -> "ConditionalOrder":
        return replace(self)

    # ---------- JSON (stable camelCase schema) ----------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.order_type.value,
            "quantity": str(self.quantity),
            "triggerPrice": str(self.trigger_price),
            "orderPrice": str(self.order_price),
            "status": self.status.value,
            "createTime": self.create_time,
            "triggerTime": self.trigger_time,
            "executeTime": self.execute_time,
            "exchangeOrderId": self.exchange_order_id,
            "remark": self.remark,
            "failReason": self.fail_reason,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ConditionalOrder":
        # keys are matched case-insensitively (files written by older builds use PascalCase)
        d = {str(k).lower(): v for k, v in raw.items()}

        exchange_order_id = d.get("exchangeorderid")
        if exchange_order_id in (None, ""):
            exchange_order_id = d.get("orderid") or None

        return cls(
            id=int(d["id"]),
            symbol=str(d.get("symbol") or "").upper(),
            side=parse_enum(OrderSide, d.get("side"), "side"),
            order_type=parse_enum(OrderType, d.get("type"), "type"),
            quantity=to_decimal(d.get("quantity"), "quantity"),
            trigger_price=to_decimal(d.get("triggerprice"), "triggerPrice"),
            order_price=to_decimal(d.get("orderprice"), "orderPrice"),
            status=parse_enum(OrderStatus, d.get("status") or "PENDING", "status"),
            create_time=d.get("createtime") or utc_now_iso(),
            trigger_time=d.get("triggertime") or None,
            execute_time=d.get("executetime") or None,
            exchange_order_id=str(exchange_order_id) if exchange_order_id else None,
            remark=d.get("remark") or "",
            fail_reason=d.get("failreason") or None,
        )
