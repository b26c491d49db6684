# autolev/symbols/leverage.py
from __future__ import annotations

import math


def effective_min_leverage(user_min: int, floor: int) -> int:
    return max(int(user_min), int(floor))


def is_leverage_eligible(symbol_max: int | None, floor: int) -> bool:
    """Symbols whose exchange maximum is below the floor are never traded."""
    return symbol_max is not None and int(symbol_max) >= int(floor)


def select_leverage(
    score: float,
    *,
    min_leverage: int,
    symbol_max: int,
    user_max: int | None = None,
) -> int | None:
    """
    minLev + (symbolMax - minLev) * score**2, floored to an integer.

    Quadratic in score so weak candidates stay close to the minimum. The
    result never exceeds the symbol or user maximum. Returns None when that
    maximum is below min_leverage: the symbol cannot be traded at the floor.
    """
    s = score if math.isfinite(score) else 0.0
    s = max(0.0, min(1.0, s))
    top = int(symbol_max)
    if user_max is not None:
        top = min(top, int(user_max))
    low = int(min_leverage)
    if top < low:
        return None
    return int(math.floor(low + (top - low) * s * s))
