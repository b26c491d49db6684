from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


SCHEMA = (
    # audit log
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp_utc TEXT NOT NULL,
        user_id TEXT,
        cycle_id TEXT,
        symbol TEXT,
        event_type TEXT NOT NULL,
        message TEXT,
        details_json TEXT
    )
    """,
    # per-user settings, one row per key
    """
    CREATE TABLE IF NOT EXISTS user_settings (
        user_id TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, key)
    )
    """,
    # closed trades, feeds the performance ratio
    """
    CREATE TABLE IF NOT EXISTS trades (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        symbol TEXT NOT NULL,
        side TEXT NOT NULL,
        entry_price REAL NOT NULL,
        exit_price REAL NOT NULL,
        quantity REAL NOT NULL,
        leverage INTEGER NOT NULL,
        realized_pnl REAL NOT NULL,
        return_pct REAL NOT NULL,
        reason TEXT NOT NULL,
        opened_at TEXT,
        closed_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_user ON events(user_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_trades_user ON trades(user_id, closed_at)",
)


class DB:
    """
    All sqlite access goes through here. The schema is created on
    construction; connections are short-lived and commit on clean exit.
    """

    def __init__(self, path: str = "data/agent.db"):
        self.path = path
        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        with self.connect() as conn:
            for stmt in SCHEMA:
                conn.execute(stmt)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()
