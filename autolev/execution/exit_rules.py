"""
Pure level math for managed positions. No I/O here: the position manager
decides, these functions compute.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from autolev.core.errors import TradeValidationError
from autolev.core.user_settings import UserSettings
from autolev.exchange.binance.filters import floor_to_step


def side_sign(side: str) -> int:
    side_u = (side or "").upper()
    if side_u == "LONG":
        return 1
    if side_u == "SHORT":
        return -1
    raise ValueError(f"Invalid side: {side}")


def _shift(price: float, pct: float, direction: int) -> float:
    # Decimal keeps 110 * (1 - 0.02) at exactly 107.8
    p = Decimal(str(price))
    return float(p * (Decimal(1) + direction * Decimal(str(pct))))


@dataclass(frozen=True)
class Levels:
    stop_loss: float
    take_profit1: float
    take_profit2: float
    take_profit: float
    trailing_take_profit: float


def seed_levels(side: str, entry_price: float, user: UserSettings) -> Levels:
    s = side_sign(side)
    return Levels(
        stop_loss=_shift(entry_price, user.stop_loss_percent, -s),
        take_profit1=_shift(entry_price, user.take_profit1_percent, s),
        take_profit2=_shift(entry_price, user.take_profit2_percent, s),
        take_profit=_shift(entry_price, user.take_profit_percent, s),
        trailing_take_profit=_shift(entry_price, user.trailing_take_profit_percent, -s),
    )


def tighter(side: str, current: float, candidate: float) -> float:
    """The level more favourable to the position: stops only ratchet one way."""
    return max(current, candidate) if side_sign(side) > 0 else min(current, candidate)


@dataclass(frozen=True)
class TrailUpdate:
    extreme_price: float
    stop_loss: float
    trailing_take_profit: float
    stop_moved: bool


def trail(
    side: str,
    price: float,
    *,
    extreme_price: float,
    stop_loss: float,
    trailing_take_profit: float,
    user: UserSettings,
) -> Optional[TrailUpdate]:
    """
    New favourable extreme -> recompute stop and trailing take-profit from
    the current price, keeping whichever is tighter. None when the price did
    not advance past the extreme.
    """
    s = side_sign(side)
    if (price - extreme_price) * s <= 0:
        return None
    new_stop = tighter(side, stop_loss, _shift(price, user.stop_loss_percent, -s))
    new_ttp = tighter(side, trailing_take_profit, _shift(price, user.trailing_take_profit_percent, -s))
    return TrailUpdate(
        extreme_price=price,
        stop_loss=new_stop,
        trailing_take_profit=new_ttp,
        stop_moved=new_stop != stop_loss,
    )


def stop_crossed(side: str, price: float, stop_loss: float) -> bool:
    return price <= stop_loss if side_sign(side) > 0 else price >= stop_loss


def level_reached(side: str, price: float, level: float) -> bool:
    return price >= level if side_sign(side) > 0 else price <= level


def trailing_tp_crossed(side: str, price: float, trailing_take_profit: float, entry_price: float) -> bool:
    """Only fires once the trailing level has moved into profit."""
    if side_sign(side) > 0:
        return trailing_take_profit > entry_price and price <= trailing_take_profit
    return trailing_take_profit < entry_price and price >= trailing_take_profit


def is_stagnant(
    *,
    opened_at: float,
    now: float,
    entry_price: float,
    price: float,
    stagnation_seconds: float,
    idle_move: float,
) -> bool:
    if entry_price <= 0 or now - opened_at < stagnation_seconds:
        return False
    return abs(price - entry_price) / entry_price < idle_move


def adverse_excursion(side: str, entry_price: float, price: float) -> float:
    """Fractional move against the position; 0 when in profit."""
    if entry_price <= 0:
        return 0.0
    return max(0.0, -side_sign(side) * (price - entry_price) / entry_price)


def near_entry(entry_price: float, exit_price: float, threshold: float) -> bool:
    if entry_price <= 0:
        return False
    return abs(exit_price - entry_price) / entry_price <= threshold


def trigger_price(
    side: str,
    level: float,
    tick_size,
    *,
    current_price: Optional[float] = None,
    kind: str = "stop",
) -> Decimal:
    """
    Floor `level` to the tick grid. A trigger that would fire immediately
    (already on the wrong side of the current price) is moved one tick
    beyond the current price instead.
    """
    tick = Decimal(str(tick_size))
    px = floor_to_step(level, tick)
    if current_price is None:
        return px

    cur = floor_to_step(current_price, tick)
    s = side_sign(side)
    # stop sits against the position, take-profit in its favour
    against = -s if kind == "stop" else s
    if against < 0 and px >= cur:
        return cur - tick
    if against > 0 and px <= cur:
        return cur + tick
    return px


def validate_levels(
    side: str,
    entry_price: float,
    stop_loss: float,
    take_profit: float,
) -> None:
    """
    LONG: stop_loss < entry_price < take_profit
    SHORT: take_profit < entry_price < stop_loss
    """
    s = side_sign(side)
    if not (s * stop_loss < s * entry_price < s * take_profit):
        raise TradeValidationError(
            f"levels out of order for {side}: sl={stop_loss:g} entry={entry_price:g} tp={take_profit:g}"
        )
