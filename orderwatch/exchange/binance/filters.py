from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Dict

ZERO = Decimal("0")


def _d(x: Any) -> Decimal:
    if isinstance(x, Decimal):
        return x
    if x is None or x == "":
        return ZERO
    return Decimal(str(x))


def next_local_midnight(now: datetime) -> datetime:
    """First local midnight strictly after `now` (keeps now's tzinfo)."""
    tomorrow = (now + timedelta(days=1)).date()
    return datetime.combine(tomorrow, datetime.min.time(), tzinfo=now.tzinfo)


@dataclass(frozen=True)
class SymbolRule:
    symbol: str
    price_precision: int
    quantity_precision: int
    min_qty: Decimal
    max_qty: Decimal
    step_size: Decimal
    min_price: Decimal
    max_price: Decimal
    tick_size: Decimal
    min_notional: Decimal
    fetched_at: datetime
    expires_at: datetime
    source: str = "exchange"  # exchange | cache | fallback

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def with_source(self, source: str) -> "SymbolRule":
        return replace(self, source=source)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "pricePrecision": self.price_precision,
            "quantityPrecision": self.quantity_precision,
            "minQty": str(self.min_qty),
            "maxQty": str(self.max_qty),
            "stepSize": str(self.step_size),
            "minPrice": str(self.min_price),
            "maxPrice": str(self.max_price),
            "tickSize": str(self.tick_size),
            "minNotional": str(self.min_notional),
            "fetchedAt": self.fetched_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SymbolRule":
        return cls(
            symbol=str(d["symbol"]).upper(),
            price_precision=int(d.get("pricePrecision", 0)),
            quantity_precision=int(d.get("quantityPrecision", 0)),
            min_qty=_d(d.get("minQty")),
            max_qty=_d(d.get("maxQty")),
            step_size=_d(d.get("stepSize")),
            min_price=_d(d.get("minPrice")),
            max_price=_d(d.get("maxPrice")),
            tick_size=_d(d.get("tickSize")),
            min_notional=_d(d.get("minNotional")),
            fetched_at=datetime.fromisoformat(d["fetchedAt"]),
            expires_at=datetime.fromisoformat(d["expiresAt"]),
            source="cache",
        )


def _get_filter(symbol_info: dict, filter_type: str) -> dict | None:
    for f in symbol_info.get("filters", []):
        if f.get("filterType") == filter_type:
            return f
    return None


def parse_symbol_rule(symbol_info: dict, now: datetime) -> SymbolRule:
    """
    Build a SymbolRule from one exchangeInfo `symbols[]` entry.
    LOT_SIZE -> qty rules, PRICE_FILTER -> price rules, MIN_NOTIONAL -> notional.
    """
    symbol = (symbol_info.get("symbol") or "").upper()
    if not symbol:
        raise ValueError("symbol info without symbol")

    lot = _get_filter(symbol_info, "LOT_SIZE")
    if not lot:
        raise ValueError(f"LOT_SIZE filter not found for {symbol}")

    price_filter = _get_filter(symbol_info, "PRICE_FILTER") or {}
    notional = _get_filter(symbol_info, "MIN_NOTIONAL") or {}

    rule = SymbolRule(
        symbol=symbol,
        price_precision=int(symbol_info.get("pricePrecision", 0) or 0),
        quantity_precision=int(symbol_info.get("quantityPrecision", 0) or 0),
        min_qty=_d(lot.get("minQty")),
        max_qty=_d(lot.get("maxQty")),
        step_size=_d(lot.get("stepSize")),
        min_price=_d(price_filter.get("minPrice")),
        max_price=_d(price_filter.get("maxPrice")),
        tick_size=_d(price_filter.get("tickSize")),
        # futures uses "notional", spot uses "minNotional"
        min_notional=_d(notional.get("notional", notional.get("minNotional"))),
        fetched_at=now,
        expires_at=next_local_midnight(now),
    )

    for name in ("min_qty", "max_qty", "step_size", "min_price", "max_price", "tick_size", "min_notional"):
        if getattr(rule, name) < 0:
            raise ValueError(f"{symbol}: negative {name}")
    return rule


def parse_exchange_info(exchange_info: dict, now: datetime) -> Dict[str, SymbolRule]:
    """
    All tradable perpetual symbols in an exchangeInfo payload.
    Entries without contractType/status are kept (spot-style payloads).
    Entries that fail to parse are skipped.
    """
    out: Dict[str, SymbolRule] = {}
    for s in exchange_info.get("symbols", []):
        contract_type = s.get("contractType")
        if contract_type is not None and contract_type != "PERPETUAL":
            continue
        status = s.get("status")
        if status is not None and status != "TRADING":
            continue
        try:
            rule = parse_symbol_rule(s, now)
        except (ValueError, ArithmeticError):
            continue
        out[rule.symbol] = rule
    return out


# =========================
# Precision adjustment
# =========================
def floor_to_step(value: Decimal, step: Decimal, anchor: Decimal = ZERO) -> Decimal:
    """Largest anchor + k*step <= value. step <= 0 disables rounding."""
    if step <= 0:
        return value
    steps = ((value - anchor) / step).to_integral_value(rounding=ROUND_DOWN)
    return anchor + steps * step


def nearest_step(value: Decimal, step: Decimal, anchor: Decimal = ZERO) -> Decimal:
    if step <= 0:
        return value
    steps = ((value - anchor) / step).to_integral_value(rounding=ROUND_HALF_UP)
    return anchor + steps * step


def adjust_quantity(qty: Any, rule: SymbolRule) -> Decimal:
    """
    Clamp into [minQty, maxQty] and floor onto the stepSize grid anchored at minQty.
    maxQty == 0 means no upper bound; stepSize == 0 means any precision.
    """
    q = _d(qty)
    if q < rule.min_qty:
        q = rule.min_qty
    if rule.max_qty > 0 and q > rule.max_qty:
        q = rule.max_qty

    q = floor_to_step(q, rule.step_size, rule.min_qty)
    if q < rule.min_qty:
        q = rule.min_qty
    return q


def adjust_price(price: Any, rule: SymbolRule) -> Decimal:
    """
    Clamp into [minPrice, maxPrice], round to the nearest tickSize (grid anchored
    at minPrice), then to pricePrecision decimals.
    """
    p = _d(price)
    if rule.min_price > 0 and p < rule.min_price:
        p = rule.min_price
    if rule.max_price > 0 and p > rule.max_price:
        p = rule.max_price

    p = nearest_step(p, rule.tick_size, rule.min_price)
    if rule.max_price > 0 and p > rule.max_price:
        p = floor_to_step(rule.max_price, rule.tick_size, rule.min_price)

    if rule.price_precision >= 0:
        p = p.quantize(Decimal(1).scaleb(-rule.price_precision), rounding=ROUND_HALF_UP)
    return p


def is_valid_quantity(qty: Any, rule: SymbolRule) -> bool:
    q = _d(qty)
    if q < rule.min_qty:
        return False
    if rule.max_qty > 0 and q > rule.max_qty:
        return False
    if rule.step_size <= 0:
        return True
    return (q - rule.min_qty) % rule.step_size == 0


def notional(qty: Any, price: Any) -> Decimal:
    return _d(qty) * _d(price)
