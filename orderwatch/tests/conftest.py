from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from orderwatch.exchange.binance.filters import SymbolRule


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Ensure tests never hit mainnet or write into the working tree.
    """
    monkeypatch.setenv("BINANCE_ENV", "testnet")
    monkeypatch.setenv("BINANCE_FAPI_BASE_URL", "https://testnet.binancefuture.com")
    monkeypatch.setenv("BINANCE_API_KEY", "test-key")
    monkeypatch.setenv("BINANCE_API_SECRET", "test-secret")
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("AUDIT_JSONL_PATH", str(tmp_path / "logs" / "audit.jsonl"))
    monkeypatch.setenv("MONITOR_AUTOSTART", "false")


def _make_rule(symbol: str = "BTCUSDT", **overrides) -> SymbolRule:
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    fields = dict(
        symbol=symbol,
        price_precision=2,
        quantity_precision=3,
        min_qty=Decimal("0.001"),
        max_qty=Decimal("1000"),
        step_size=Decimal("0.001"),
        min_price=Decimal("0.10"),
        max_price=Decimal("1000000"),
        tick_size=Decimal("0.10"),
        min_notional=Decimal("5"),
        fetched_at=now,
        expires_at=now + timedelta(hours=12),
    )
    fields.update(overrides)
    return SymbolRule(**fields)


@pytest.fixture
def btc_rule() -> SymbolRule:
    return _make_rule()


@pytest.fixture
def make_rule():
    return _make_rule
