from __future__ import annotations

from typing import List, Sequence, Tuple

from autolev.exchange.binance.models import Candle

LEVEL_COUNT = 3
LEVEL_TOLERANCE = 0.01
WICK_RATIO = 0.5


def support_resistance(candles: Sequence[Candle], count: int = LEVEL_COUNT) -> Tuple[List[float], List[float]]:
    """
    Supports are the lowest distinct lows, resistances the highest distinct
    highs, both taken from the bars before the last one so the last bar can
    be tested against them.
    """
    history = candles[:-1]
    supports = sorted({c.low for c in history})[:count]
    resistances = sorted({c.high for c in history}, reverse=True)[:count]
    return supports, resistances


def is_bounce_from_support(candle: Candle, supports: Sequence[float], tolerance: float = LEVEL_TOLERANCE) -> bool:
    """Bullish bar whose low tagged a support and left a long lower wick."""
    rng = candle.high - candle.low
    if rng <= 0 or not candle.is_bullish:
        return False
    lower_wick = min(candle.open, candle.close) - candle.low
    if lower_wick / rng <= WICK_RATIO:
        return False
    return any(level > 0 and abs(candle.low - level) / level <= tolerance for level in supports)


def is_bounce_from_resistance(candle: Candle, resistances: Sequence[float], tolerance: float = LEVEL_TOLERANCE) -> bool:
    rng = candle.high - candle.low
    if rng <= 0 or candle.close >= candle.open:
        return False
    upper_wick = candle.high - max(candle.open, candle.close)
    if upper_wick / rng <= WICK_RATIO:
        return False
    return any(level > 0 and abs(candle.high - level) / level <= tolerance for level in resistances)


def is_breakout(candle: Candle, resistances: Sequence[float]) -> bool:
    return bool(resistances) and candle.close > max(resistances)


def is_breakdown(candle: Candle, supports: Sequence[float]) -> bool:
    return bool(supports) and candle.close < min(supports)


def level_signal(candles: Sequence[Candle]) -> int:
    """+1 support bounce / breakout, -1 resistance bounce / breakdown, 0 otherwise."""
    if len(candles) < 2:
        return 0
    supports, resistances = support_resistance(candles)
    last = candles[-1]
    bullish = is_bounce_from_support(last, supports) or is_breakout(last, resistances)
    bearish = is_bounce_from_resistance(last, resistances) or is_breakdown(last, supports)
    if bullish and not bearish:
        return 1
    if bearish and not bullish:
        return -1
    return 0
