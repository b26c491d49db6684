from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set, Tuple

from autolev.execution.exit_rules import TrailUpdate, side_sign, tighter


class LifecycleState(str, Enum):
    NONE = "NONE"
    OPEN_UNMANAGED = "OPEN_UNMANAGED"
    MANAGED = "MANAGED"
    CLOSED = "CLOSED"


@dataclass
class HedgeRef:
    side: str
    quantity: float
    entry_price: float
    opened_at: float


@dataclass
class TrailingState:
    user_id: str
    symbol: str
    side: str  # LONG/SHORT
    entry_price: float
    quantity: float
    initial_quantity: float
    leverage: int
    stop_loss: float
    take_profit1: float
    take_profit2: float
    take_profit: float
    trailing_take_profit: float
    extreme_price: float
    opened_at: float
    partial_closed1: bool = False
    partial_closed2: bool = False
    hedge: Optional[HedgeRef] = None
    stop_order_id: Optional[int] = None
    take_profit_order_id: Optional[int] = None
    realized_pnl: float = 0.0
    reentries: int = 0

    @property
    def sign(self) -> int:
        return side_sign(self.side)

    @property
    def initial_margin(self) -> float:
        lev = max(1, int(self.leverage))
        return self.entry_price * self.initial_quantity / lev

    def pnl_for(self, quantity: float, price: float) -> float:
        return (price - self.entry_price) * quantity * self.sign

    def apply_trail(self, update: TrailUpdate) -> None:
        self.extreme_price = update.extreme_price
        self.stop_loss = tighter(self.side, self.stop_loss, update.stop_loss)
        self.trailing_take_profit = tighter(self.side, self.trailing_take_profit, update.trailing_take_profit)

    def mark_partial(self, level: int, closed_qty: float, price: float) -> None:
        """Flags only ever go False -> True."""
        if level == 1:
            self.partial_closed1 = True
        elif level == 2:
            self.partial_closed2 = True
        else:
            raise ValueError(f"unknown take-profit level {level}")
        if closed_qty > 0:
            self.realized_pnl += self.pnl_for(closed_qty, price)
            self.quantity = max(0.0, self.quantity - closed_qty)

    def return_pct(self) -> float:
        margin = self.initial_margin
        return self.realized_pnl / margin if margin > 0 else 0.0


class TrailingBook:
    """
    user -> symbol -> TrailingState, plus the per-(user, symbol) in-flight
    guard every mutation runs under.
    """

    def __init__(self):
        self._states: Dict[str, Dict[str, TrailingState]] = {}
        self._in_flight: Set[Tuple[str, str]] = set()

    def get(self, user_id: str, symbol: str) -> Optional[TrailingState]:
        return self._states.get(user_id, {}).get(symbol)

    def put(self, state: TrailingState) -> None:
        self._states.setdefault(state.user_id, {})[state.symbol] = state

    def pop(self, user_id: str, symbol: str) -> Optional[TrailingState]:
        per_user = self._states.get(user_id)
        if not per_user:
            return None
        state = per_user.pop(symbol, None)
        if not per_user:
            self._states.pop(user_id, None)
        return state

    def states(self, user_id: str) -> List[TrailingState]:
        return list(self._states.get(user_id, {}).values())

    def lifecycle(self, user_id: str, symbol: str, *, position_open: bool) -> LifecycleState:
        if self.get(user_id, symbol) is not None:
            return LifecycleState.MANAGED if position_open else LifecycleState.CLOSED
        return LifecycleState.OPEN_UNMANAGED if position_open else LifecycleState.NONE

    # ---------------- IN-FLIGHT GUARD ----------------

    def in_flight(self, user_id: str) -> Set[str]:
        return {sym for (uid, sym) in self._in_flight if uid == user_id}

    @contextmanager
    def hold(self, user_id: str, symbol: str) -> Iterator[bool]:
        """
        Claim (user, symbol) for the duration of the block. Yields False
        without waiting when another task already holds it.
        """
        key = (user_id, symbol)
        if key in self._in_flight:
            yield False
            return
        self._in_flight.add(key)
        try:
            yield True
        finally:
            self._in_flight.discard(key)
