from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from autolev.persistence.db import DB, utc_now_iso


@dataclass(frozen=True)
class ClosedTrade:
    user_id: str
    symbol: str
    side: str  # LONG/SHORT
    entry_price: float
    exit_price: float
    quantity: float
    leverage: int
    realized_pnl: float
    return_pct: float  # realized pnl over initial margin
    reason: str
    opened_at: Optional[str] = None


class TradeLog:
    def __init__(self, db: DB):
        self.db = db

    def record(self, trade: ClosedTrade) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO trades(user_id, symbol, side, entry_price, exit_price, quantity,
                                   leverage, realized_pnl, return_pct, reason, opened_at, closed_at)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    trade.user_id,
                    trade.symbol,
                    trade.side,
                    float(trade.entry_price),
                    float(trade.exit_price),
                    float(trade.quantity),
                    int(trade.leverage),
                    float(trade.realized_pnl),
                    float(trade.return_pct),
                    trade.reason,
                    trade.opened_at,
                    utc_now_iso(),
                ),
            )

    def recent_returns(self, user_id: str, limit: int = 50) -> List[float]:
        """Most recent `limit` trade returns, oldest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT return_pct FROM trades WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, int(limit)),
            ).fetchall()
        return [float(r["return_pct"]) for r in reversed(rows)]

    def summary_since(self, user_id: str, hours: float = 24.0) -> dict:
        since = (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n,
                       COALESCE(SUM(realized_pnl), 0) AS pnl,
                       COALESCE(SUM(CASE WHEN realized_pnl > 0 THEN 1 ELSE 0 END), 0) AS wins
                FROM trades WHERE user_id = ? AND closed_at >= ?
                """,
                (user_id, since),
            ).fetchone()
        return {"trades": int(row["n"]), "realized_pnl": float(row["pnl"]), "wins": int(row["wins"])}
