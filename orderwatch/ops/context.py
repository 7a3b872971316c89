from __future__ import annotations
from contextvars import ContextVar
from typing import Optional

# Context-local (safe for async & threads)
_current_sweep_id: ContextVar[Optional[str]] = ContextVar(
    "current_sweep_id", default=None
)


def set_sweep_id(sweep_id: str) -> None:
    _current_sweep_id.set(sweep_id)


def get_sweep_id() -> Optional[str]:
    return _current_sweep_id.get()


def clear_sweep_id() -> None:
    _current_sweep_id.set(None)
