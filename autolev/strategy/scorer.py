"""
Opportunity scoring.

The score ranks and sizes candidates; it never opens a trade on its own.
Entries additionally need the AND-composed entry rules below, so one
strong signal cannot push a symbol into a position by itself.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np

from autolev.strategy.base import Bias

OVERSOLD = 30.0
OVERBOUGHT = 70.0
STRONG_VOLUME = 1.5
MIN_TRADES_FOR_RATIO = 10

# Reference scales for magnitude contributions
TARGET_ATR_PCT = 0.02
PREDICTION_SCALE = 0.02

# Every weight stays below the default entry score (0.4)
WEIGHTS: Dict[str, float] = {
    "oscillator": 0.15,
    "band": 0.15,
    "histogram": 0.05,
    "crossover": 0.10,
    "levels": 0.15,
    "volume": 0.10,
    "book": 0.05,
    "sentiment": 0.10,
    "volatility": 0.05,
    "prediction": 0.10,
    "performance": 0.05,
    "timeframes": 0.10,
}


@dataclass(frozen=True)
class SignalSnapshot:
    last_price: float
    rsi: float
    bb_upper: float
    bb_lower: float
    macd_histogram: float
    crossover: int
    level_signal: int
    volume_strength: float
    book_pressure: float
    sentiment: float
    atr: float
    predicted_price: float
    performance_ratio: float
    mtf_direction: float


def _f(x: float) -> float:
    """Non-finite inputs contribute nothing."""
    try:
        x = float(x)
    except (TypeError, ValueError):
        return 0.0
    return x if math.isfinite(x) else 0.0


def _unit(x: float) -> float:
    return max(0.0, min(1.0, _f(x)))


def _oversold(s: SignalSnapshot) -> bool:
    return math.isfinite(s.rsi) and s.rsi < OVERSOLD


def _overbought(s: SignalSnapshot) -> bool:
    return math.isfinite(s.rsi) and s.rsi > OVERBOUGHT


def _below_band(s: SignalSnapshot) -> bool:
    return math.isfinite(s.bb_lower) and s.last_price < s.bb_lower


def _above_band(s: SignalSnapshot) -> bool:
    return math.isfinite(s.bb_upper) and s.last_price > s.bb_upper


def _predicted_move(s: SignalSnapshot) -> float:
    if s.last_price <= 0 or not math.isfinite(s.predicted_price):
        return 0.0
    return (s.predicted_price - s.last_price) / s.last_price


def contributions(s: SignalSnapshot) -> Dict[str, float]:
    atr_pct = _f(s.atr) / s.last_price if s.last_price > 0 else 0.0
    return {
        "oscillator": WEIGHTS["oscillator"] if (_oversold(s) or _overbought(s)) else 0.0,
        "band": WEIGHTS["band"] if (_below_band(s) or _above_band(s)) else 0.0,
        "histogram": WEIGHTS["histogram"] if _f(s.macd_histogram) != 0 else 0.0,
        "crossover": WEIGHTS["crossover"] if s.crossover else 0.0,
        "levels": WEIGHTS["levels"] if s.level_signal else 0.0,
        "volume": WEIGHTS["volume"] * _unit(_f(s.volume_strength) / (2 * STRONG_VOLUME)),
        "book": WEIGHTS["book"] * _unit(abs(_f(s.book_pressure))),
        "sentiment": WEIGHTS["sentiment"] * _unit(abs(_f(s.sentiment))),
        "volatility": WEIGHTS["volatility"] * _unit(atr_pct / TARGET_ATR_PCT),
        "prediction": WEIGHTS["prediction"] * _unit(abs(_predicted_move(s)) / PREDICTION_SCALE),
        "performance": WEIGHTS["performance"] * _unit(_f(s.performance_ratio) / 2.0),
        "timeframes": WEIGHTS["timeframes"] * _unit(abs(_f(s.mtf_direction))),
    }


def score(s: SignalSnapshot) -> float:
    """Weighted sum of independent contributions, clamped to [0, 1]."""
    total = sum(contributions(s).values())
    return max(0.0, min(1.0, total))


def bias(s: SignalSnapshot) -> Bias:
    long_votes = sum(
        [
            _oversold(s),
            _below_band(s),
            _f(s.macd_histogram) > 0,
            s.crossover > 0,
            s.level_signal > 0,
            _predicted_move(s) > 0,
            _f(s.mtf_direction) > 0,
            _f(s.sentiment) > 0,
        ]
    )
    short_votes = sum(
        [
            _overbought(s),
            _above_band(s),
            _f(s.macd_histogram) < 0,
            s.crossover < 0,
            s.level_signal < 0,
            _predicted_move(s) < 0,
            _f(s.mtf_direction) < 0,
            _f(s.sentiment) < 0,
        ]
    )
    if long_votes > short_votes:
        return Bias.LONG
    if short_votes > long_votes:
        return Bias.SHORT
    return Bias.NEUTRAL


def entry_rules(s: SignalSnapshot, sentiment_threshold: float) -> Tuple[Bias, List[str]]:
    """
    Returns the direction the entry rules allow (NEUTRAL if none) and the
    reasons that fired.
      LONG:  oversold AND below lower band AND (strong volume OR support bounce/breakout)
      SHORT: overbought AND above upper band AND (strong volume OR resistance bounce/breakdown)
    Sentiment must not oppose the direction by more than the threshold.
    """
    strong_volume = _f(s.volume_strength) >= STRONG_VOLUME
    sent = _f(s.sentiment)

    if _oversold(s) and _below_band(s) and (strong_volume or s.level_signal > 0):
        if sent >= -sentiment_threshold:
            return Bias.LONG, ["oversold", "below_lower_band", "volume" if strong_volume else "support"]
        return Bias.NEUTRAL, ["long_blocked_by_sentiment"]

    if _overbought(s) and _above_band(s) and (strong_volume or s.level_signal < 0):
        if sent <= sentiment_threshold:
            return Bias.SHORT, ["overbought", "above_upper_band", "volume" if strong_volume else "resistance"]
        return Bias.NEUTRAL, ["short_blocked_by_sentiment"]

    return Bias.NEUTRAL, []


def risk_adjusted_ratio(returns: Sequence[float]) -> float:
    """
    mean / std of trade returns. Exactly 1.0 with fewer than ten trades or
    zero dispersion.
    """
    values = np.asarray([r for r in returns if math.isfinite(r)], dtype=float)
    if len(values) < MIN_TRADES_FOR_RATIO:
        return 1.0
    std = float(np.std(values, ddof=1))
    if std == 0 or not math.isfinite(std):
        return 1.0
    return float(np.mean(values)) / std
