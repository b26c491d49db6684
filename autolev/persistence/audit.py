# autolev/persistence/audit.py
from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from autolev.persistence.db import DB, utc_now_iso

log = logging.getLogger("autolev.audit")


class Audit:
    """
    DB audit is the source of truth.
    Additionally mirrors events to a JSONL file for tailing.
    """

    def __init__(self, db: DB, jsonl_path: str | None = "logs/audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path) if jsonl_path else None

        if self.jsonl_path is not None:
            try:
                self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
                self.jsonl_path.touch(exist_ok=True)
            except OSError as e:
                # never crash the agent due to audit file issues
                log.warning("audit mirror disabled: %s", e)
                self.jsonl_path = None

    def event(
        self,
        event_type: str,
        user_id: Optional[str] = None,
        cycle_id: Optional[str] = None,
        symbol: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = json.dumps(details or {}, ensure_ascii=False, default=str)
        ts = utc_now_iso()

        # 1) DB (source of truth)
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events(timestamp_utc, user_id, cycle_id, symbol, event_type, message, details_json)
                    VALUES (?,?,?,?,?,?,?)
                    """,
                    (ts, user_id, cycle_id, symbol, event_type, message, payload),
                )
        except sqlite3.Error as e:
            log.error("audit insert failed for %s: %s", event_type, e)

        # 2) JSONL mirror
        self._write_jsonl(
            {
                "timestamp_utc": ts,
                "event_type": event_type,
                "user_id": user_id,
                "cycle_id": cycle_id,
                "symbol": symbol,
                "message": message,
                "details": details or {},
            }
        )

    def recent(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT timestamp_utc, symbol, event_type, message, details_json
                FROM events WHERE user_id = ? ORDER BY id DESC LIMIT ?
                """,
                (user_id, int(limit)),
            ).fetchall()
        return [
            {
                "timestamp_utc": r["timestamp_utc"],
                "symbol": r["symbol"],
                "event_type": r["event_type"],
                "message": r["message"],
                "details": json.loads(r["details_json"] or "{}"),
            }
            for r in rows
        ]

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        if self.jsonl_path is None:
            return
        try:
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            # never crash the trading loop because the mirror write failed
            log.warning("audit mirror write failed: %s", e)
