import hmac
import hashlib
from decimal import Decimal
from urllib.parse import urlencode


def _fmt(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        # never scientific notation on the wire ("1E-8" is rejected)
        return format(value.normalize(), "f")
    return str(value)


def build_query(params: dict) -> str:
    """
    Canonical query string: keys in insertion order, None values dropped.
    The signature covers exactly this string, so callers must not reorder.
    """
    clean = [(k, _fmt(v)) for k, v in params.items() if v is not None]
    return urlencode(clean, doseq=True)


def sign(secret: str, query_string: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        query_string.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def signed_query(secret: str, params: dict, timestamp_ms: int, recv_window: int | None = None) -> str:
    """params + recvWindow + timestamp, then &signature=<hex> over everything before it."""
    full = dict(params)
    if recv_window:
        full["recvWindow"] = int(recv_window)
    full["timestamp"] = int(timestamp_ms)
    query = build_query(full)
    return f"{query}&signature={sign(secret, query)}"
