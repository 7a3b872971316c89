# orderwatch/persistence/json_store.py
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, List, Protocol

from orderwatch.core.errors import PersistenceError


class RecordRepository(Protocol):
    """Durable backing for the conditional-order list (one dict per record)."""

    def load(self) -> List[dict]: ...

    def save(self, records: List[dict]) -> None: ...


def write_json_atomic(path: Path, payload: Any) -> None:
    """Full rewrite through a temp file in the same folder + os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class JsonFileRepository:
    """
    Conditional orders as a JSON array in a single file.
    Missing file -> empty list. Unreadable/corrupt file -> PersistenceError.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> List[dict]:
        if not self.path.exists():
            return []
        try:
            text = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(f"cannot read {self.path}: {e}") from e

        if not text.strip():
            return []

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"corrupt JSON in {self.path}: {e}") from e

        if not isinstance(data, list):
            raise PersistenceError(f"{self.path} must contain a JSON array")
        return [r for r in data if isinstance(r, dict)]

    def save(self, records: List[dict]) -> None:
        try:
            write_json_atomic(self.path, records)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"cannot write {self.path}: {e}") from e


class InMemoryRepository:
    """Repository without a disk mirror (tests, dry runs)."""

    def __init__(self, records: List[dict] | None = None):
        self.records: List[dict] = [dict(r) for r in (records or [])]
        self.save_calls = 0

    def load(self) -> List[dict]:
        return [dict(r) for r in self.records]

    def save(self, records: List[dict]) -> None:
        self.save_calls += 1
        self.records = [dict(r) for r in records]
