from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from orderwatch.core.errors import OrderWatchError
from orderwatch.orders.models import utc_now_iso

log = logging.getLogger("orderwatch.price")

ZERO = Decimal("0")


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: Decimal
    change_percent: Decimal
    fetched_at: str

    @property
    def ok(self) -> bool:
        return self.price > 0


class PriceOracle:
    """
    Latest price / 24h change via the public ticker endpoints.
    A failed lookup yields 0, never an exception: the trigger rule treats
    a non-positive price as "no decision".
    """

    def __init__(self, client):
        self.client = client

    def latest_price(self, symbol: str) -> Decimal:
        sym = symbol.upper()
        try:
            data = self.client.ticker_price(sym)
            return Decimal(str(data["price"]))
        except (OrderWatchError, KeyError, TypeError, InvalidOperation) as e:
            log.warning("price lookup failed for %s: %s", sym, e)
            return ZERO

    def change_24h(self, symbol: str) -> Decimal:
        sym = symbol.upper()
        try:
            data = self.client.ticker_24hr(sym)
            return Decimal(str(data["priceChangePercent"]))
        except (OrderWatchError, KeyError, TypeError, InvalidOperation) as e:
            log.warning("24h change lookup failed for %s: %s", sym, e)
            return ZERO

    def quote(self, symbol: str) -> PriceQuote:
        sym = symbol.upper()
        return PriceQuote(
            symbol=sym,
            price=self.latest_price(sym),
            change_percent=self.change_24h(sym),
            fetched_at=utc_now_iso(),
        )
