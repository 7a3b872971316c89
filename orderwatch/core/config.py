# orderwatch/core/config.py
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("orderwatch.config")


def _parse_kv_int(v: Any) -> Dict[str, int]:
    """
    Accepts:
      - dict: {"BTCUSDT": 10}
      - csv:  "BTCUSDT:10,ETHUSDT:20"
      - json: '{"BTCUSDT":10,"ETHUSDT":20}'
    """
    if v is None:
        return {}
    if isinstance(v, dict):
        out: Dict[str, int] = {}
        for k, val in v.items():
            ks = str(k).strip().upper()
            if not ks:
                continue
            try:
                out[ks] = int(val)
            except (TypeError, ValueError):
                log.warning("ignoring leverage entry %s=%r", ks, val)
        return out

    s = str(v).strip()
    if not s:
        return {}

    if s.startswith("{"):
        try:
            raw = json.loads(s)
            if isinstance(raw, dict):
                return _parse_kv_int(raw)
        except json.JSONDecodeError:
            # fall back to csv parse
            pass

    out: Dict[str, int] = {}
    for part in s.split(","):
        part = part.strip()
        if not part or ":" not in part:
            continue
        k, val = part.split(":", 1)
        k = k.strip().upper()
        if not k:
            continue
        try:
            out[k] = int(val.strip())
        except ValueError:
            log.warning("ignoring leverage entry %s=%r", k, val)
    return out


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding the map field.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Exchange / API ---
    BINANCE_API_KEY: str = ""
    BINANCE_API_SECRET: str = ""

    BINANCE_ENV: str = "mainnet"  # mainnet/testnet
    BINANCE_FAPI_BASE_URL: str = "https://fapi.binance.com"
    BINANCE_RECV_WINDOW: int = 5000
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # --- Monitor ---
    MONITOR_INTERVAL_SECONDS: float = 10.0
    MONITOR_AUTOSTART: bool = False

    # --- Storage ---
    DATA_DIR: str = "data"
    CONDITIONAL_ORDERS_FILE: str = ""
    SYMBOL_CACHE_FILE: str = ""
    AUDIT_DB_PATH: str = ""
    AUDIT_JSONL_PATH: str = "logs/orderwatch_audit.jsonl"

    # --- Position side-channel (applied before submission when set) ---
    DEFAULT_LEVERAGE: int = 0  # 0 = leave exchange leverage untouched
    SYMBOL_LEVERAGE_MAP: Dict[str, int] = Field(default_factory=dict)
    MARGIN_TYPE: str = ""  # "" | ISOLATED | CROSSED

    @field_validator("SYMBOL_LEVERAGE_MAP", mode="before")
    @classmethod
    def parse_leverage_map(cls, v: Any) -> Dict[str, int]:
        return _parse_kv_int(v)

    def model_post_init(self, __context: Any) -> None:
        self.BINANCE_ENV = (self.BINANCE_ENV or "mainnet").lower().strip()
        self.MARGIN_TYPE = (self.MARGIN_TYPE or "").upper().strip()

        # Keep base URL consistent with BINANCE_ENV unless user explicitly overrides
        if self.BINANCE_ENV == "testnet":
            if self.BINANCE_FAPI_BASE_URL.strip() == "https://fapi.binance.com":
                self.BINANCE_FAPI_BASE_URL = "https://testnet.binancefuture.com"

        data_dir = self.DATA_DIR or "data"
        if not self.CONDITIONAL_ORDERS_FILE:
            self.CONDITIONAL_ORDERS_FILE = os.path.join(data_dir, "conditional_orders.json")
        if not self.SYMBOL_CACHE_FILE:
            self.SYMBOL_CACHE_FILE = os.path.join(data_dir, "symbol_cache.json")
        if not self.AUDIT_DB_PATH:
            self.AUDIT_DB_PATH = os.path.join(data_dir, "orderwatch.db")

    def leverage_for(self, symbol: str) -> int:
        sym = (symbol or "").strip().upper()
        return int(self.SYMBOL_LEVERAGE_MAP.get(sym, self.DEFAULT_LEVERAGE) or 0)

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.BINANCE_ENV not in {"mainnet", "testnet"}:
            errors.append("BINANCE_ENV must be 'mainnet' or 'testnet'.")

        if self.MONITOR_INTERVAL_SECONDS <= 0:
            errors.append("MONITOR_INTERVAL_SECONDS must be > 0.")

        if self.HTTP_TIMEOUT_SECONDS <= 0:
            errors.append("HTTP_TIMEOUT_SECONDS must be > 0.")
        elif self.HTTP_TIMEOUT_SECONDS > 30:
            warnings.append(
                f"HTTP_TIMEOUT_SECONDS={self.HTTP_TIMEOUT_SECONDS} is long; "
                "a slow exchange call delays every later record in the sweep."
            )

        if self.MARGIN_TYPE not in {"", "ISOLATED", "CROSSED"}:
            errors.append("MARGIN_TYPE must be empty, 'ISOLATED' or 'CROSSED'.")

        if self.DEFAULT_LEVERAGE < 0:
            errors.append("DEFAULT_LEVERAGE must be >= 0.")
        bad = sorted(k for k, v in self.SYMBOL_LEVERAGE_MAP.items() if v < 1)
        if bad:
            errors.append(f"SYMBOL_LEVERAGE_MAP has leverage < 1 for: {bad}")

        if not self.BINANCE_API_KEY or not self.BINANCE_API_SECRET:
            warnings.append(
                "BINANCE_API_KEY / BINANCE_API_SECRET not set. "
                "Triggered orders will fail with a signature error."
            )

        # Safety: mismatch guard
        if (
            self.BINANCE_FAPI_BASE_URL.strip() == "https://fapi.binance.com"
            and self.BINANCE_ENV != "mainnet"
        ):
            errors.append(
                "BINANCE_ENV mismatch: base URL is mainnet but BINANCE_ENV is not 'mainnet'."
            )

        if self.BINANCE_ENV == "mainnet" and self.BINANCE_API_KEY:
            warnings.append(
                "BINANCE_ENV=mainnet: triggered conditional orders will trade REAL money."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


Settings.model_rebuild()
settings = Settings()
