from __future__ import annotations

from dataclasses import dataclass

import pandas as pd
import ta

from autolev.core.errors import TradeValidationError
from autolev.exchange.binance.models import CandleSeries, OrderBook

RSI_WINDOW = 7
MACD_FAST, MACD_SLOW, MACD_SIGNAL = 12, 26, 9
BB_WINDOW, BB_DEV = 20, 2
EMA_FAST, EMA_SLOW = 9, 21
ATR_WINDOW = 14
SMA_WINDOW = 20
VOLUME_WINDOW = 20

MIN_CANDLES = MACD_SLOW + MACD_SIGNAL


@dataclass(frozen=True)
class IndicatorSnapshot:
    last_close: float
    rsi: float
    macd: float
    macd_signal: float
    macd_histogram: float
    bb_upper: float
    bb_middle: float
    bb_lower: float
    ema_fast: float
    ema_slow: float
    crossover: int  # +1 bullish cross on the last bar, -1 bearish, 0 none
    atr: float
    sma: float
    volume_strength: float


def _last(s: pd.Series) -> float:
    v = s.iloc[-1]
    return float(v) if pd.notna(v) else float("nan")


def _crossover(fast: pd.Series, slow: pd.Series) -> int:
    if len(fast) < 2:
        return 0
    prev = fast.iloc[-2] - slow.iloc[-2]
    now = fast.iloc[-1] - slow.iloc[-1]
    if pd.isna(prev) or pd.isna(now):
        return 0
    if prev <= 0 < now:
        return 1
    if prev >= 0 > now:
        return -1
    return 0


def volume_strength(volume: pd.Series, window: int = VOLUME_WINDOW) -> float:
    """Last bar's volume relative to the mean of the `window` bars before it."""
    if len(volume) < 2:
        return 0.0
    base = volume.iloc[-(window + 1):-1].mean()
    if not base or pd.isna(base):
        return 0.0
    return float(volume.iloc[-1] / base)


def compute_indicators(series: CandleSeries) -> IndicatorSnapshot:
    if len(series) < MIN_CANDLES:
        raise TradeValidationError(
            f"{series.symbol} {series.timeframe}: need {MIN_CANDLES} candles, got {len(series)}"
        )

    df = series.to_frame()
    close, high, low = df["close"], df["high"], df["low"]

    ema_fast = ta.trend.ema_indicator(close, window=EMA_FAST, fillna=False)
    ema_slow = ta.trend.ema_indicator(close, window=EMA_SLOW, fillna=False)

    return IndicatorSnapshot(
        last_close=float(close.iloc[-1]),
        rsi=_last(ta.momentum.rsi(close, window=RSI_WINDOW, fillna=False)),
        macd=_last(ta.trend.macd(close, window_slow=MACD_SLOW, window_fast=MACD_FAST, fillna=False)),
        macd_signal=_last(
            ta.trend.macd_signal(
                close, window_slow=MACD_SLOW, window_fast=MACD_FAST, window_sign=MACD_SIGNAL, fillna=False
            )
        ),
        macd_histogram=_last(
            ta.trend.macd_diff(
                close, window_slow=MACD_SLOW, window_fast=MACD_FAST, window_sign=MACD_SIGNAL, fillna=False
            )
        ),
        bb_upper=_last(ta.volatility.bollinger_hband(close, window=BB_WINDOW, window_dev=BB_DEV, fillna=False)),
        bb_middle=_last(ta.volatility.bollinger_mavg(close, window=BB_WINDOW, fillna=False)),
        bb_lower=_last(ta.volatility.bollinger_lband(close, window=BB_WINDOW, window_dev=BB_DEV, fillna=False)),
        ema_fast=_last(ema_fast),
        ema_slow=_last(ema_slow),
        crossover=_crossover(ema_fast, ema_slow),
        atr=_last(ta.volatility.average_true_range(high, low, close, window=ATR_WINDOW, fillna=False)),
        sma=_last(ta.trend.sma_indicator(close, window=SMA_WINDOW, fillna=False)),
        volume_strength=volume_strength(df["volume"]),
    )


def book_pressure(book: OrderBook) -> float:
    """(bid qty - ask qty) / (bid qty + ask qty); 0 for an empty book."""
    bids = sum(level.qty for level in book.bids)
    asks = sum(level.qty for level in book.asks)
    total = bids + asks
    if total <= 0:
        return 0.0
    return (bids - asks) / total
