from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from autolev.exchange.binance.models import BalanceEntry


@dataclass
class CapitalDecision:
    allowed: bool
    reason: str
    available: float
    total: float
    available_fraction: float


class CapitalGate:
    """
    Single source of truth for whether new positions may be opened.

    Opening is allowed while the free share of the wallet stays at or above
    `min_available_fraction`. Closing is never gated.
    """

    def __init__(self, *, min_available_fraction: float):
        self.min_available_fraction = float(min_available_fraction)

    def can_open(self, balance: Optional[BalanceEntry]) -> CapitalDecision:
        if balance is None:
            return CapitalDecision(False, "no_quote_balance", 0.0, 0.0, 0.0)

        total = float(balance.balance)
        available = float(balance.available_balance)
        if total <= 0:
            return CapitalDecision(False, "empty_wallet", available, total, 0.0)

        frac = available / total
        if frac < self.min_available_fraction:
            return CapitalDecision(False, "insufficient_available_capital", available, total, frac)

        return CapitalDecision(True, "ok", available, total, frac)
