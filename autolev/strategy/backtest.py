"""
Quick replay of the entry rules over one candle series.

Not a backtesting framework: no fees, no slippage, one position at a time,
fixed stop / take-profit taken from the user settings. Useful to sanity
check a settings change against recent history.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from autolev.core.user_settings import UserSettings
from autolev.exchange.binance.models import CandleSeries
from autolev.strategy import scorer
from autolev.strategy.base import Bias
from autolev.strategy.indicators import MIN_CANDLES, compute_indicators
from autolev.strategy.levels import level_signal
from autolev.strategy.predictor import predict_next_close


@dataclass
class BacktestResult:
    trades: int = 0
    wins: int = 0
    returns: List[float] = field(default_factory=list)

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0

    @property
    def ratio(self) -> float:
        return scorer.risk_adjusted_ratio(self.returns)


def run_backtest(series: CandleSeries, user: UserSettings) -> BacktestResult:
    result = BacktestResult()
    candles = series.candles
    i = MIN_CANDLES
    while i < len(candles):
        window = CandleSeries(series.symbol, series.timeframe, candles[: i + 1])
        ind = compute_indicators(window)
        snap = scorer.SignalSnapshot(
            last_price=ind.last_close,
            rsi=ind.rsi,
            bb_upper=ind.bb_upper,
            bb_lower=ind.bb_lower,
            macd_histogram=ind.macd_histogram,
            crossover=ind.crossover,
            level_signal=level_signal(window.candles),
            volume_strength=ind.volume_strength,
            book_pressure=0.0,
            sentiment=0.0,
            atr=ind.atr,
            predicted_price=predict_next_close(window.closes),
            performance_ratio=1.0,
            mtf_direction=0.0,
        )
        side, _ = scorer.entry_rules(snap, user.sentiment_threshold)
        if side is Bias.NEUTRAL:
            i += 1
            continue

        entry = ind.last_close
        sign = side.sign
        stop = entry * (1 - sign * user.stop_loss_percent)
        target = entry * (1 + sign * user.take_profit_percent)

        exit_price = None
        j = i + 1
        while j < len(candles) and exit_price is None:
            c = candles[j]
            hit_stop = c.low <= stop if sign > 0 else c.high >= stop
            hit_target = c.high >= target if sign > 0 else c.low <= target
            # both touched inside one bar: assume the stop came first
            if hit_stop:
                exit_price = stop
            elif hit_target:
                exit_price = target
            j += 1
        if exit_price is None:
            exit_price = candles[-1].close

        ret = sign * (exit_price - entry) / entry
        result.trades += 1
        result.wins += int(ret > 0)
        result.returns.append(ret)
        i = j
    return result
