from datetime import datetime, timezone
from decimal import Decimal

import pytest

from orderwatch.exchange.binance.filters import (
    SymbolRule,
    adjust_price,
    adjust_quantity,
    is_valid_quantity,
    next_local_midnight,
    parse_exchange_info,
    parse_symbol_rule,
)


def _is_multiple(value: Decimal, step: Decimal, anchor: Decimal = Decimal("0")) -> bool:
    """
    Check that value sits on the step grid using Decimal arithmetic.
    Float math is NOT reliable for this (e.g. 1.9 / 0.1 issues).
    """
    return ((value - anchor) / step) % 1 == 0


def _symbol_info(symbol="BTCUSDT", **extra):
    info = {
        "symbol": symbol,
        "contractType": "PERPETUAL",
        "status": "TRADING",
        "pricePrecision": 2,
        "quantityPrecision": 3,
        "filters": [
            {"filterType": "PRICE_FILTER", "minPrice": "556.80", "maxPrice": "4529764", "tickSize": "0.10"},
            {"filterType": "LOT_SIZE", "minQty": "0.001", "maxQty": "1000", "stepSize": "0.001"},
            {"filterType": "MIN_NOTIONAL", "notional": "100"},
        ],
    }
    info.update(extra)
    return info


@pytest.mark.parametrize(
    "qty,expected",
    [
        ("0.01234", "0.012"),
        ("0.01299", "0.012"),
        ("1.9999", "1.999"),
        ("10", "10"),
        ("0.0001", "0.001"),  # below minQty -> clamped up
        ("5000", "1000"),  # above maxQty -> clamped down
    ],
)
def test_adjust_quantity_floors_and_clamps(btc_rule, qty, expected):
    out = adjust_quantity(Decimal(qty), btc_rule)
    assert out == Decimal(expected)
    assert _is_multiple(out, btc_rule.step_size, btc_rule.min_qty)


@pytest.mark.parametrize("qty", ["0.0015", "0.123456789", "3.3333", "999.9999"])
def test_adjusted_quantity_is_valid_and_within_one_step(btc_rule, qty):
    q = Decimal(qty)
    out = adjust_quantity(q, btc_rule)
    assert is_valid_quantity(out, btc_rule)
    assert btc_rule.min_qty <= out <= btc_rule.max_qty
    assert q - out < btc_rule.step_size


def test_adjust_quantity_grid_is_anchored_at_min_qty(make_rule):
    rule = make_rule(min_qty=Decimal("0.5"), step_size=Decimal("0.2"), max_qty=Decimal("0"))
    assert adjust_quantity(Decimal("1.0"), rule) == Decimal("0.9")
    # maxQty 0 means no upper bound
    assert adjust_quantity(Decimal("100000.05"), rule) == Decimal("99999.9")


@pytest.mark.parametrize(
    "price,expected",
    [
        ("43210.12", "43210.10"),
        ("43210.15", "43210.20"),  # half rounds up
        ("43210.19", "43210.20"),
        ("0.01", "0.10"),  # clamped to minPrice
        ("2000000", "1000000.00"),
    ],
)
def test_adjust_price_rounds_to_nearest_tick(btc_rule, price, expected):
    out = adjust_price(Decimal(price), btc_rule)
    assert out == Decimal(expected)
    assert str(out) == expected
    assert _is_multiple(out, btc_rule.tick_size, btc_rule.min_price)


def test_adjust_price_respects_price_precision(make_rule):
    rule = make_rule(price_precision=4, tick_size=Decimal("0.0001"), min_price=Decimal("0.0001"))
    assert adjust_price(Decimal("0.123456"), rule) == Decimal("0.1235")


def test_parse_symbol_rule_reads_filters():
    now = datetime(2024, 3, 1, 15, 30, tzinfo=timezone.utc)
    rule = parse_symbol_rule(_symbol_info(), now)
    assert rule.symbol == "BTCUSDT"
    assert rule.step_size == Decimal("0.001")
    assert rule.tick_size == Decimal("0.10")
    assert rule.min_price == Decimal("556.80")
    assert rule.min_notional == Decimal("100")
    assert rule.fetched_at == now
    assert rule.expires_at == datetime(2024, 3, 2, tzinfo=timezone.utc)
    assert rule.source == "exchange"


def test_parse_symbol_rule_spot_style_min_notional():
    info = _symbol_info()
    info["filters"][2] = {"filterType": "MIN_NOTIONAL", "minNotional": "10"}
    rule = parse_symbol_rule(info, datetime.now(timezone.utc))
    assert rule.min_notional == Decimal("10")


def test_parse_symbol_rule_requires_lot_size():
    info = _symbol_info()
    info["filters"] = [f for f in info["filters"] if f["filterType"] != "LOT_SIZE"]
    with pytest.raises(ValueError):
        parse_symbol_rule(info, datetime.now(timezone.utc))


def test_parse_exchange_info_keeps_tradable_perpetuals_only():
    now = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
    bad = _symbol_info("BROKENUSDT")
    bad["filters"] = []
    info = {
        "symbols": [
            _symbol_info("BTCUSDT"),
            _symbol_info("ETHUSDT_240329", contractType="CURRENT_QUARTER"),
            _symbol_info("LUNAUSDT", status="SETTLING"),
            bad,
            _symbol_info("ethusdt"),
        ]
    }
    rules = parse_exchange_info(info, now)
    assert sorted(rules) == ["BTCUSDT", "ETHUSDT"]


def test_next_local_midnight_is_strictly_after_now():
    now = datetime(2024, 12, 31, 0, 0, tzinfo=timezone.utc)
    assert next_local_midnight(now) == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_rule_dict_round_trip_marks_source_cache(btc_rule):
    back = SymbolRule.from_dict(btc_rule.to_dict())
    assert back.source == "cache"
    assert back.with_source("exchange") == btc_rule
