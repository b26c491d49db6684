from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd
import ta

from autolev.exchange.binance.models import CandleSeries
from autolev.strategy.indicators import EMA_FAST, EMA_SLOW

PREDICT_LOOKBACK = 20


def predict_next_close(closes: Sequence[float], lookback: int = PREDICT_LOOKBACK) -> float:
    """Least-squares line through the last `lookback` closes, one bar ahead."""
    window = np.asarray(list(closes)[-lookback:], dtype=float)
    if len(window) == 0:
        return float("nan")
    if len(window) == 1:
        return float(window[0])
    x = np.arange(len(window), dtype=float)
    slope, intercept = np.polyfit(x, window, 1)
    return float(slope * len(window) + intercept)


def series_direction(series: CandleSeries) -> int:
    if len(series) < EMA_SLOW:
        return 0
    close = pd.Series(series.closes, dtype=float)
    fast = ta.trend.ema_indicator(close, window=EMA_FAST, fillna=False).iloc[-1]
    slow = ta.trend.ema_indicator(close, window=EMA_SLOW, fillna=False).iloc[-1]
    if pd.isna(fast) or pd.isna(slow):
        return 0
    if fast > slow:
        return 1
    if fast < slow:
        return -1
    return 0


def multi_timeframe_direction(series: Sequence[CandleSeries]) -> float:
    """Average EMA-trend direction across timeframes, in [-1, 1]."""
    if not series:
        return 0.0
    return float(sum(series_direction(s) for s in series)) / len(series)
