from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from orderwatch.core.config import settings as default_settings
from orderwatch.core.errors import (
    ExchangeRejected,
    NetworkError,
    OrderWatchError,
    SignatureError,
)
from orderwatch.exchange.binance.filters import (
    SymbolRule,
    adjust_price,
    adjust_quantity,
    notional,
)
from orderwatch.orders.models import ConditionalOrder

log = logging.getLogger("orderwatch.gateway")


# =========================
# Submission Result
# =========================
@dataclass
class SubmitResult:
    ok: bool
    exchange_order_id: Optional[str]
    reason: str
    request: Dict[str, Any] = field(default_factory=dict)


def client_order_id(order: ConditionalOrder) -> str:
    return f"ow-{order.id}"


# =========================
# Exchange Gateway
# =========================
class ExchangeGateway:
    """
    Turns a fired conditional order into exactly one exchange order.

    STOP_LIMIT becomes a GTC LIMIT at orderPrice; every other type becomes a
    MARKET order (the threshold was already crossed locally). STOP_LOSS and
    TAKE_PROFIT are sent reduce-only.
    """

    def __init__(
        self,
        client,
        *,
        settings=None,
        audit=None,
        clock_ms: Optional[Callable[[], int]] = None,
    ):
        self.client = client
        self.settings = settings or default_settings
        self.audit = audit
        self._clock_ms = clock_ms or client.now_ms
        self._configured_symbols: set[str] = set()

    # ---------------- precision ----------------

    @staticmethod
    def adjust_quantity(qty: Any, rule: SymbolRule) -> Decimal:
        return adjust_quantity(qty, rule)

    @staticmethod
    def adjust_price(price: Any, rule: SymbolRule) -> Decimal:
        return adjust_price(price, rule)

    def build_order_params(self, order: ConditionalOrder, rule: SymbolRule) -> Dict[str, Any]:
        # key order is the canonical order of the signed query string
        params: Dict[str, Any] = {
            "symbol": order.symbol.upper(),
            "side": order.side.value,
        }
        if order.order_type.is_limit:
            params["type"] = "LIMIT"
            params["timeInForce"] = "GTC"
            params["quantity"] = self.adjust_quantity(order.quantity, rule)
            params["price"] = self.adjust_price(order.order_price, rule)
        else:
            params["type"] = "MARKET"
            params["quantity"] = self.adjust_quantity(order.quantity, rule)

        if order.order_type.reduce_only:
            params["reduceOnly"] = True
        params["newClientOrderId"] = client_order_id(order)
        return params

    # ---------------- side channel ----------------

    def _ensure_position_config(self, symbol: str) -> None:
        """Leverage / margin type once per symbol per process. Failures are logged, not fatal."""
        sym = symbol.upper()
        if sym in self._configured_symbols:
            return

        lev = self.settings.leverage_for(sym)
        margin_type = self.settings.MARGIN_TYPE

        if margin_type:
            try:
                self.client.set_margin_type(sym, margin_type)
            except (ExchangeRejected, NetworkError) as e:
                self._warn(sym, "MARGIN_TYPE_FAILED", {"margin_type": margin_type, "error": str(e)})

        if lev > 0:
            try:
                self.client.set_leverage(sym, lev)
            except (ExchangeRejected, NetworkError) as e:
                self._warn(sym, "LEVERAGE_FAILED", {"leverage": lev, "error": str(e)})

        self._configured_symbols.add(sym)

    def _warn(self, symbol: str, action: str, details: dict) -> None:
        if self.audit is None:
            log.warning("%s %s %s", symbol, action, details)
            return
        self.audit.warn(action, symbol=symbol, **details)

    # ---------------- orders ----------------

    def submit(
        self,
        order: ConditionalOrder,
        rule: SymbolRule,
        reference_price: Any = None,
    ) -> SubmitResult:
        params = self.build_order_params(order, rule)

        if rule.min_notional > 0:
            ref = params.get("price") if order.order_type.is_limit else reference_price
            if ref is not None and Decimal(str(ref)) > 0:
                value = notional(params["quantity"], ref)
                if value < rule.min_notional:
                    reason = (
                        f"notional {value} below minimum {rule.min_notional} "
                        f"(qty={params['quantity']}, price={ref})"
                    )
                    return SubmitResult(False, None, reason, params)

        try:
            self._ensure_position_config(order.symbol)
            resp = self.client.place_order(params, timestamp_ms=self._clock_ms())
        except SignatureError as e:
            return SubmitResult(False, None, f"signature error: {e}", params)
        except NetworkError as e:
            return SubmitResult(False, None, f"network error: {e}", params)
        except ExchangeRejected as e:
            return SubmitResult(False, None, f"rejected by exchange: {e}", params)

        exchange_id = resp.get("orderId") if isinstance(resp, dict) else None
        if exchange_id is None:
            return SubmitResult(False, None, f"no orderId in exchange response: {resp!r}", params)

        log.info(
            "order placed %s %s %s qty=%s -> exchange id %s",
            params["symbol"], params["side"], params["type"], params["quantity"], exchange_id,
        )
        return SubmitResult(True, str(exchange_id), "ok", params)

    def cancel(self, symbol: str, exchange_order_id: str) -> bool:
        oid = str(exchange_order_id or "").strip()
        if not oid:
            return False
        try:
            if oid.isdigit():
                self.client.cancel_order(symbol, order_id=int(oid), timestamp_ms=self._clock_ms())
            else:
                self.client.cancel_order(symbol, orig_client_order_id=oid, timestamp_ms=self._clock_ms())
        except OrderWatchError as e:
            log.warning("cancel %s %s failed: %s", symbol, oid, e)
            return False
        log.info("cancelled exchange order %s %s", symbol, oid)
        return True

    def open_orders(self, symbol: str | None = None) -> list:
        return self.client.open_orders(symbol)

    def cancel_all(self, symbol: str) -> bool:
        try:
            self.client.cancel_all_orders(symbol)
        except OrderWatchError as e:
            log.warning("cancel all %s failed: %s", symbol, e)
            return False
        return True
