from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, Optional

from autolev.persistence.trade_log import ClosedTrade, TradeLog
from autolev.strategy.scorer import risk_adjusted_ratio

log = logging.getLogger("autolev.performance")


class PerformanceTracker:
    """
    Trailing trade returns per user and the risk-adjusted ratio over them.
    Backed by the trade log so history survives restarts.
    """

    def __init__(self, trade_log: Optional[TradeLog] = None, *, window: int = 50):
        self.trade_log = trade_log
        self.window = int(window)
        self._returns: Dict[str, Deque[float]] = {}

    def _history(self, user_id: str) -> Deque[float]:
        hist = self._returns.get(user_id)
        if hist is None:
            loaded = self.trade_log.recent_returns(user_id, self.window) if self.trade_log else []
            hist = self._returns[user_id] = deque(loaded, maxlen=self.window)
        return hist

    def record(self, trade: ClosedTrade) -> None:
        self._history(trade.user_id).append(float(trade.return_pct))
        if self.trade_log is not None:
            self.trade_log.record(trade)
        log.info(
            "closed %s %s pnl=%.4f return=%.4f (%s)",
            trade.symbol, trade.side, trade.realized_pnl, trade.return_pct, trade.reason,
        )

    def ratio(self, user_id: str) -> float:
        return risk_adjusted_ratio(list(self._history(user_id)))

    def trade_count(self, user_id: str) -> int:
        return len(self._history(user_id))
