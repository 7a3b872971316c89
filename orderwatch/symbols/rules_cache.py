# orderwatch/symbols/rules_cache.py
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Optional

from orderwatch.core.errors import OrderWatchError
from orderwatch.exchange.binance.filters import (
    SymbolRule,
    next_local_midnight,
    parse_exchange_info,
)
from orderwatch.orders.models import utc_now_iso
from orderwatch.persistence.json_store import write_json_atomic

log = logging.getLogger("orderwatch.symbols")


def local_now() -> datetime:
    return datetime.now().astimezone()


# Last-resort precision classes, matched by substring in order.
# (patterns, pricePrecision, quantityPrecision)
_FALLBACK_CLASSES = (
    (("BTC", "ETH", "BNB"), 2, 3),
    (("DOGE", "SHIB"), 6, 0),
    (("ADA", "DOT", "LINK"), 4, 2),
)
_FALLBACK_GENERIC = (4, 1)
_FALLBACK_MIN_NOTIONAL = Decimal("5")


def fallback_rule(symbol: str, now: datetime) -> SymbolRule:
    """
    Heuristic rule from the symbol name only. Not authoritative: used when the
    exchange listing is unreachable and nothing was ever cached for the symbol.
    """
    sym = symbol.upper()
    price_precision, quantity_precision = _FALLBACK_GENERIC
    for patterns, pp, qp in _FALLBACK_CLASSES:
        if any(p in sym for p in patterns):
            price_precision, quantity_precision = pp, qp
            break

    step = Decimal(1).scaleb(-quantity_precision)
    tick = Decimal(1).scaleb(-price_precision)
    return SymbolRule(
        symbol=sym,
        price_precision=price_precision,
        quantity_precision=quantity_precision,
        min_qty=step,
        max_qty=Decimal("0"),
        step_size=step,
        min_price=tick,
        max_price=Decimal("0"),
        tick_size=tick,
        min_notional=_FALLBACK_MIN_NOTIONAL,
        fetched_at=now,
        expires_at=now,
        source="fallback",
    )


class SymbolRulesCache:
    """
    Per-symbol trading constraints from /exchangeInfo, refreshed once a day.

    The rules map is replaced wholesale on refresh (never edited in place), so
    readers can use it without holding the lock. The lock only serializes
    refreshes.
    """

    def __init__(
        self,
        client,
        cache_path: Optional[str] = None,
        *,
        now: Callable[[], datetime] = local_now,
    ):
        self.client = client
        self.cache_path = Path(cache_path) if cache_path else None
        self._now = now
        self._lock = threading.Lock()
        self._rules: Dict[str, SymbolRule] = {}
        self._last_update: Optional[str] = None

    @property
    def last_update(self) -> Optional[str]:
        return self._last_update

    def cached_symbols(self) -> list[str]:
        return sorted(self._rules)

    def get_rule(self, symbol: str) -> SymbolRule:
        sym = (symbol or "").strip().upper()
        if not sym:
            raise ValueError("symbol is required")

        rule = self._rules.get(sym)
        if rule is not None and not rule.is_expired(self._now()):
            return rule

        with self._lock:
            # another caller may have refreshed while we waited
            rule = self._rules.get(sym)
            now = self._now()
            if rule is not None and not rule.is_expired(now):
                return rule

            previous = rule
            try:
                self._refresh_locked(now)
            except (OrderWatchError, ValueError, KeyError, TypeError) as e:
                log.warning("exchangeInfo refresh failed: %s", e)

            rule = self._rules.get(sym)
            if rule is not None and not rule.is_expired(now):
                return rule

        if previous is not None:
            log.warning("using last cached rule for %s (fetched %s)", sym, previous.fetched_at)
            return previous.with_source("cache")

        log.warning("no exchange rule for %s; using built-in fallback precision", sym)
        return fallback_rule(sym, now)

    def refresh(self) -> int:
        """Force a refetch of the full listing. Raises on failure."""
        with self._lock:
            return self._refresh_locked(self._now())

    def _refresh_locked(self, now: datetime) -> int:
        info = self.client.exchange_info()
        if not isinstance(info, dict):
            raise ValueError("exchangeInfo response is not an object")

        rules = parse_exchange_info(info, now)
        if not rules:
            raise ValueError("exchangeInfo contained no tradable symbols")

        self._rules = rules
        self._last_update = now.isoformat()
        log.info("symbol rules refreshed: %d symbols, valid until %s", len(rules), next_local_midnight(now))
        self.save_to_disk()
        return len(rules)

    def clear_expired(self) -> int:
        now = self._now()
        with self._lock:
            keep = {k: v for k, v in self._rules.items() if not v.is_expired(now)}
            removed = len(self._rules) - len(keep)
            if removed:
                self._rules = keep
                self.save_to_disk()
        return removed

    # ---------------- disk mirror ----------------

    def load_from_disk(self) -> int:
        """Expired entries are kept: they are the last good values if a refresh fails."""
        if self.cache_path is None or not self.cache_path.exists():
            return 0
        try:
            raw = json.loads(self.cache_path.read_text(encoding="utf-8"))
            symbols = raw.get("symbols", {})
            rules = {}
            for sym, d in symbols.items():
                rule = SymbolRule.from_dict(d)
                rules[rule.symbol] = rule
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            log.warning("symbol cache %s unreadable, ignoring: %s", self.cache_path, e)
            return 0

        with self._lock:
            self._rules = rules
            self._last_update = raw.get("lastUpdate")
        log.info("loaded %d cached symbol rules from %s", len(rules), self.cache_path)
        return len(rules)

    def save_to_disk(self) -> None:
        if self.cache_path is None:
            return
        payload = {
            "lastUpdate": self._last_update or utc_now_iso(),
            "symbols": {k: v.to_dict() for k, v in self._rules.items()},
        }
        try:
            write_json_atomic(self.cache_path, payload)
        except OSError as e:
            log.error("symbol cache %s could not be written: %s", self.cache_path, e)
