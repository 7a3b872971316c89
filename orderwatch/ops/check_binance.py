"""
Manual connectivity check: public ping, clock offset, then one signed call.

    python -m orderwatch.ops.check_binance [SYMBOL]

Reads credentials from .env / the environment. Places no orders.
"""
from __future__ import annotations

import os
import sys

from dotenv import load_dotenv

from orderwatch.core.errors import OrderWatchError
from orderwatch.exchange.binance.client import BinanceFuturesClient


def build_client_from_env() -> BinanceFuturesClient:
    key = os.getenv("BINANCE_API_KEY", "").strip()
    secret = os.getenv("BINANCE_API_SECRET", "").strip()
    base = os.getenv("BINANCE_FAPI_BASE_URL", "https://testnet.binancefuture.com").strip()
    recv = os.getenv("BINANCE_RECV_WINDOW", "5000").strip()
    return BinanceFuturesClient(key, secret, base, recv_window=int(recv), timeout=10)


def run_checks(client, symbol: str = "BTCUSDT") -> int:
    """Returns a process exit code: 0 all good, 1 public side failed, 2 signed side failed."""
    try:
        client.ping()
        offset = client.sync_time()
        price = client.ticker_price(symbol)["price"]
    except (OrderWatchError, KeyError, TypeError) as e:
        print(f"[FAIL] public endpoints: {e}")
        return 1
    print(f"[OK] ping, clock offset {offset} ms, {symbol} last price {price}")

    try:
        open_orders = client.open_orders(symbol)
    except OrderWatchError as e:
        print(f"[FAIL] signed request: {e}")
        return 2
    print(f"[OK] signed request, {len(open_orders)} open orders on {symbol}")
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = sys.argv[1:] if argv is None else argv
    symbol = (args[0] if args else "BTCUSDT").upper()
    return run_checks(build_client_from_env(), symbol)


if __name__ == "__main__":
    raise SystemExit(main())
