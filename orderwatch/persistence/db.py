from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator


# =========================
# Time helpers
# =========================
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# Database class
# =========================
class DB:
    """
    SQLite access for the audit trail (sweeps + order events).
    Conditional orders themselves live in the JSON store, not here.
    Default path: data/orderwatch.db
    """

    def __init__(self, path: str = "data/orderwatch.db"):
        self.path = path

        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)

        self._init()

    # -------------------------
    # Connection manager
    # -------------------------
    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    # -------------------------
    # Init / migrations
    # -------------------------
    def _init(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            # =========================
            # Events (audit log)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp_utc TEXT NOT NULL,
                    sweep_id TEXT,
                    order_id INTEGER,
                    symbol TEXT,
                    event_type TEXT NOT NULL,
                    action TEXT,
                    details_json TEXT
                )
                """
            )

            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_time ON events(timestamp_utc)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_order ON events(order_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_sweep ON events(sweep_id)")

            conn.commit()

        finally:
            conn.close()
