# orderwatch/persistence/audit.py
from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from orderwatch.ops.context import get_sweep_id
from orderwatch.persistence.db import DB, utc_now_iso

log = logging.getLogger("orderwatch.audit")

_LEVELS = {"INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}


class Audit:
    """
    DB audit is the source of truth.
    Additionally mirrors events to a JSONL file so /audit/tail works without SQL.

    Also serves as the diagnostics sink (info / warn / error): every call goes
    to the stdlib logger and to the trail. Failures writing the trail are
    logged and never reach the monitor loop.
    """

    def __init__(self, db: Optional[DB] = None, jsonl_path: Optional[str] = None):
        self.db = db
        self.jsonl_path = Path(jsonl_path) if jsonl_path else None

        if self.jsonl_path is not None:
            try:
                self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
                self.jsonl_path.touch(exist_ok=True)
            except OSError as e:
                log.warning("audit jsonl unavailable (%s): %s", self.jsonl_path, e)

    # ---------------- diagnostics sink ----------------

    def info(self, action: str, message: str = "", **details: Any) -> None:
        self._sink("INFO", action, message, details)

    def warn(self, action: str, message: str = "", **details: Any) -> None:
        self._sink("WARN", action, message, details)

    def error(self, action: str, message: str = "", **details: Any) -> None:
        self._sink("ERROR", action, message, details)

    def _sink(self, level: str, action: str, message: str, details: Dict[str, Any]) -> None:
        log.log(_LEVELS[level], "%s %s %s", action, message, details or "")
        payload = dict(details)
        if message:
            payload["message"] = message
        self.event(
            event_type=level,
            action=action,
            order_id=payload.pop("order_id", None),
            symbol=payload.pop("symbol", None),
            details=payload,
        )

    # ---------------- events ----------------

    def event(
        self,
        event_type: str,
        action: Optional[str] = None,
        order_id: Optional[int] = None,
        symbol: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        sweep_id: Optional[str] = None,
    ) -> None:
        sweep_id = sweep_id or get_sweep_id()
        ts = utc_now_iso()
        payload = json.dumps(details or {}, ensure_ascii=False, default=str)

        # 1) DB (source of truth)
        if self.db is not None:
            try:
                with self.db.connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO events(timestamp_utc, sweep_id, order_id, symbol, event_type, action, details_json)
                        VALUES (?,?,?,?,?,?,?)
                        """,
                        (ts, sweep_id, order_id, symbol, event_type, action, payload),
                    )
            except sqlite3.Error as e:
                log.warning("audit db write failed (%s/%s): %s", event_type, action, e)

        # 2) JSONL mirror
        self._write_jsonl(
            {
                "timestamp_utc": ts,
                "event_type": event_type,
                "sweep_id": sweep_id,
                "order_id": order_id,
                "symbol": symbol,
                "action": action,
                "details": details or {},
            }
        )

    def tail(self, limit: int = 50) -> List[Dict[str, Any]]:
        if self.db is None:
            return []
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM events ORDER BY id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()

        out = []
        for r in rows:
            item = dict(r)
            try:
                item["details"] = json.loads(item.pop("details_json") or "{}")
            except json.JSONDecodeError:
                item["details"] = {}
            out.append(item)
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        if self.jsonl_path is None:
            return
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            log.warning("audit jsonl write failed: %s", e)
