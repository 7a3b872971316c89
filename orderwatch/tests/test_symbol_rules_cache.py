import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from orderwatch.core.errors import NetworkError
from orderwatch.symbols.rules_cache import SymbolRulesCache, fallback_rule


def _exchange_info(*symbols, step="0.001"):
    return {
        "symbols": [
            {
                "symbol": s,
                "contractType": "PERPETUAL",
                "status": "TRADING",
                "pricePrecision": 2,
                "quantityPrecision": 3,
                "filters": [
                    {"filterType": "PRICE_FILTER", "minPrice": "0.10", "maxPrice": "1000000", "tickSize": "0.10"},
                    {"filterType": "LOT_SIZE", "minQty": step, "maxQty": "1000", "stepSize": step},
                    {"filterType": "MIN_NOTIONAL", "notional": "5"},
                ],
            }
            for s in symbols
        ]
    }


class _FakeClient:
    def __init__(self, info=None):
        self.info = info
        self.calls = 0
        self.fail = False

    def exchange_info(self):
        self.calls += 1
        if self.fail:
            raise NetworkError("timeout after 15s: GET /fapi/v1/exchangeInfo")
        return self.info


class _Clock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return _Clock()


def test_first_lookup_fetches_then_serves_from_memory(clock):
    client = _FakeClient(_exchange_info("BTCUSDT", "ETHUSDT"))
    cache = SymbolRulesCache(client, now=clock)

    rule = cache.get_rule("btcusdt")
    assert rule.symbol == "BTCUSDT"
    assert rule.source == "exchange"
    assert rule.step_size == Decimal("0.001")

    cache.get_rule("ETHUSDT")
    cache.get_rule("BTCUSDT")
    assert client.calls == 1
    assert cache.cached_symbols() == ["BTCUSDT", "ETHUSDT"]


def test_rules_expire_at_next_midnight(clock):
    client = _FakeClient(_exchange_info("BTCUSDT"))
    cache = SymbolRulesCache(client, now=clock)
    cache.get_rule("BTCUSDT")

    clock.now += timedelta(hours=13, minutes=59)
    cache.get_rule("BTCUSDT")
    assert client.calls == 1

    clock.now += timedelta(minutes=1)  # 2024-03-02 00:00
    client.info = _exchange_info("BTCUSDT", step="0.01")
    rule = cache.get_rule("BTCUSDT")
    assert client.calls == 2
    assert rule.step_size == Decimal("0.01")


def test_failed_refresh_falls_back_to_previous_rule(clock):
    client = _FakeClient(_exchange_info("BTCUSDT"))
    cache = SymbolRulesCache(client, now=clock)
    first = cache.get_rule("BTCUSDT")

    clock.now += timedelta(days=1)
    client.fail = True
    rule = cache.get_rule("BTCUSDT")
    assert rule.source == "cache"
    assert rule.step_size == first.step_size


def test_unknown_symbol_with_no_exchange_uses_fallback(clock):
    client = _FakeClient()
    client.fail = True
    cache = SymbolRulesCache(client, now=clock)

    rule = cache.get_rule("DOGEUSDT")
    assert rule.source == "fallback"
    assert rule.quantity_precision == 0
    assert rule.price_precision == 6
    # fallback rules are never stored
    assert cache.cached_symbols() == []


def test_symbol_missing_from_listing_uses_fallback(clock):
    cache = SymbolRulesCache(_FakeClient(_exchange_info("BTCUSDT")), now=clock)
    assert cache.get_rule("NEWCOINUSDT").source == "fallback"


@pytest.mark.parametrize(
    "symbol,price_precision,quantity_precision",
    [
        ("BTCUSDT", 2, 3),
        ("ETHUSDT", 2, 3),
        ("BNBUSDT", 2, 3),
        ("DOGEUSDT", 6, 0),
        ("1000SHIBUSDT", 6, 0),
        ("ADAUSDT", 4, 2),
        ("LINKUSDT", 4, 2),
        ("XRPUSDT", 4, 1),
    ],
)
def test_fallback_table(symbol, price_precision, quantity_precision):
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    rule = fallback_rule(symbol, now)
    assert rule.price_precision == price_precision
    assert rule.quantity_precision == quantity_precision
    assert rule.step_size == Decimal(1).scaleb(-quantity_precision)
    assert rule.min_notional == Decimal("5")
    assert rule.is_expired(now)


def test_empty_symbol_is_rejected(clock):
    cache = SymbolRulesCache(_FakeClient(_exchange_info("BTCUSDT")), now=clock)
    with pytest.raises(ValueError):
        cache.get_rule("  ")


def test_forced_refresh_raises_on_failure(clock):
    client = _FakeClient()
    client.fail = True
    cache = SymbolRulesCache(client, now=clock)
    with pytest.raises(NetworkError):
        cache.refresh()


def test_disk_round_trip(tmp_path, clock):
    path = tmp_path / "symbol_cache.json"
    cache = SymbolRulesCache(_FakeClient(_exchange_info("BTCUSDT", "ETHUSDT")), str(path), now=clock)
    cache.refresh()

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert set(raw) == {"lastUpdate", "symbols"}
    assert raw["symbols"]["BTCUSDT"]["stepSize"] == "0.001"

    offline = _FakeClient()
    offline.fail = True
    reloaded = SymbolRulesCache(offline, str(path), now=clock)
    assert reloaded.load_from_disk() == 2
    rule = reloaded.get_rule("ETHUSDT")
    assert rule.source == "cache"
    assert rule.tick_size == Decimal("0.10")
    # still fresh, so nothing was fetched
    assert offline.calls == 0


def test_corrupt_disk_cache_is_ignored(tmp_path, clock):
    path = tmp_path / "symbol_cache.json"
    path.write_text("[1, 2", encoding="utf-8")
    cache = SymbolRulesCache(_FakeClient(_exchange_info("BTCUSDT")), str(path), now=clock)
    assert cache.load_from_disk() == 0
    assert cache.get_rule("BTCUSDT").source == "exchange"


def test_clear_expired(clock):
    cache = SymbolRulesCache(_FakeClient(_exchange_info("BTCUSDT")), now=clock)
    cache.refresh()
    assert cache.clear_expired() == 0
    clock.now += timedelta(days=1)
    assert cache.clear_expired() == 1
    assert cache.cached_symbols() == []
