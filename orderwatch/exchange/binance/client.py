from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import requests

from orderwatch.core.errors import ExchangeRejected, NetworkError, SignatureError
from orderwatch.exchange.binance.signing import build_query, signed_query

log = logging.getLogger("orderwatch.binance")

# -1022 invalid signature, -2014 bad API-key format, -2015 invalid key/IP/permissions
SIGNATURE_ERROR_CODES = {-1022, -2014, -2015}

# -4046 "No need to change margin type."
NO_CHANGE_MARGIN_TYPE = -4046


class BinanceFuturesClient:
    """
    Thin USD-M futures REST client.

    No retries and no backoff: every failure surfaces once as NetworkError,
    SignatureError or ExchangeRejected and the caller decides what it means.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        recv_window: int = 5000,
        timeout: float = 15.0,
        session: Optional[Any] = None,
        clock_ms: Optional[Callable[[], int]] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self.timeout = timeout
        self.http = session or requests.Session()
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

        # server time offset (ms); positive means local clock is behind
        self._time_offset_ms: int = 0

    # ---------------- TRANSPORT ----------------

    def _send(self, method: str, url: str, headers: Optional[dict] = None) -> Any:
        try:
            r = self.http.request(method, url, headers=headers or {}, timeout=self.timeout)
        except requests.Timeout as e:
            raise NetworkError(f"timeout after {self.timeout}s: {method} {url.split('?')[0]}") from e
        except requests.RequestException as e:
            raise NetworkError(f"{type(e).__name__}: {method} {url.split('?')[0]}: {e}") from e

        return self._parse(r)

    @staticmethod
    def _parse(r) -> Any:
        data = None
        if r.content:
            try:
                data = r.json()
            except ValueError:
                data = None

        if r.status_code >= 400:
            code = data.get("code") if isinstance(data, dict) else None
            msg = data.get("msg") if isinstance(data, dict) else None
            msg = msg or (r.text or "")[:300] or f"HTTP {r.status_code}"
            if code in SIGNATURE_ERROR_CODES:
                raise SignatureError(f"[{code}] {msg}")
            raise ExchangeRejected(msg, code=code, status_code=r.status_code)

        if r.content and data is None:
            raise ExchangeRejected("invalid JSON in exchange response", status_code=r.status_code)
        return data

    # ---------------- PUBLIC ----------------

    def _public_get(self, path: str, params: Optional[dict] = None) -> Any:
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{build_query(params)}"
        return self._send("GET", url)

    def ping(self) -> dict:
        return self._public_get("/fapi/v1/ping") or {}

    def server_time_ms(self) -> int:
        data = self._public_get("/fapi/v1/time")
        return int(data["serverTime"])

    def sync_time(self) -> int:
        """
        Computes and stores local->server time offset.
        Positive offset means local clock is behind server.
        """
        local_ms = self._clock_ms()
        self._time_offset_ms = self.server_time_ms() - local_ms
        return self._time_offset_ms

    def now_ms(self) -> int:
        return self._clock_ms() + int(self._time_offset_ms)

    def exchange_info(self) -> dict:
        return self._public_get("/fapi/v1/exchangeInfo")

    def ticker_price(self, symbol: str) -> dict:
        return self._public_get("/fapi/v1/ticker/price", {"symbol": symbol.upper()})

    def ticker_24hr(self, symbol: str) -> dict:
        return self._public_get("/fapi/v1/ticker/24hr", {"symbol": symbol.upper()})

    # ---------------- SIGNED REQUESTS ----------------

    def _signed_request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        timestamp_ms: Optional[int] = None,
    ) -> Any:
        if not self.api_key or not self.api_secret:
            raise SignatureError("Missing BINANCE_API_KEY or BINANCE_API_SECRET")

        ts = int(timestamp_ms) if timestamp_ms is not None else self.now_ms()
        query = signed_query(self.api_secret, params or {}, ts, self.recv_window)

        url = f"{self.base_url}{path}?{query}"
        headers = {"X-MBX-APIKEY": self.api_key}
        return self._send(method, url, headers)

    # ---------------- ACCOUNT / TRADING ----------------

    def place_order(self, params: dict, timestamp_ms: Optional[int] = None) -> dict:
        return self._signed_request("POST", "/fapi/v1/order", params, timestamp_ms)

    def cancel_order(
        self,
        symbol: str,
        order_id: Optional[int] = None,
        orig_client_order_id: Optional[str] = None,
        timestamp_ms: Optional[int] = None,
    ) -> dict:
        if order_id is None and not orig_client_order_id:
            raise ValueError("cancel_order needs order_id or orig_client_order_id")
        params = {
            "symbol": symbol.upper(),
            "orderId": int(order_id) if order_id is not None else None,
            "origClientOrderId": orig_client_order_id,
        }
        return self._signed_request("DELETE", "/fapi/v1/order", params, timestamp_ms)

    def get_order(self, symbol: str, order_id: int) -> dict:
        return self._signed_request(
            "GET",
            "/fapi/v1/order",
            {"symbol": symbol.upper(), "orderId": int(order_id)},
        )

    def open_orders(self, symbol: str | None = None) -> list:
        params = {}
        if symbol:
            params["symbol"] = symbol.upper()
        data = self._signed_request("GET", "/fapi/v1/openOrders", params)
        return data if isinstance(data, list) else []

    def cancel_all_orders(self, symbol: str) -> dict:
        return self._signed_request(
            "DELETE",
            "/fapi/v1/allOpenOrders",
            {"symbol": symbol.upper()},
        )

    def set_leverage(self, symbol: str, leverage: int) -> dict:
        return self._signed_request(
            "POST",
            "/fapi/v1/leverage",
            {"symbol": symbol.upper(), "leverage": int(leverage)},
        )

    def set_margin_type(self, symbol: str, margin_type: str) -> dict:
        try:
            return self._signed_request(
                "POST",
                "/fapi/v1/marginType",
                {"symbol": symbol.upper(), "marginType": margin_type.upper()},
            )
        except ExchangeRejected as e:
            if e.code == NO_CHANGE_MARGIN_TYPE:
                return {"code": e.code, "msg": e.msg}
            raise
