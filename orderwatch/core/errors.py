# orderwatch/core/errors.py
from __future__ import annotations

from typing import Optional


class OrderWatchError(Exception):
    pass


class ValidationError(OrderWatchError, ValueError):
    """Rejected input (non-positive quantity / trigger price, unknown enum, ...)."""


class InvalidStateError(OrderWatchError, ValueError):
    """Operation not allowed for the record's current status."""


class NetworkError(OrderWatchError):
    """Timeout or connection failure talking to the exchange."""


class SignatureError(OrderWatchError):
    """Missing/invalid API credentials or a rejected request signature."""


class ExchangeRejected(OrderWatchError):
    def __init__(self, msg: str, code: Optional[int] = None, status_code: Optional[int] = None):
        super().__init__(msg)
        self.msg = msg
        self.code = code
        self.status_code = status_code

    def __str__(self) -> str:
        if self.code is not None:
            return f"[{self.code}] {self.msg}"
        return self.msg


class PersistenceError(OrderWatchError):
    """Disk I/O failure while loading or saving durable state."""
