import math
import random

import pytest

from autolev.core.errors import MalformedPayload, TradeValidationError
from autolev.exchange.binance.models import Candle, CandleSeries, OrderBook, OrderParams, parse_record, PositionEntry
from autolev.strategy import scorer
from autolev.strategy.backtest import run_backtest
from autolev.strategy.base import Bias
from autolev.strategy.indicators import MIN_CANDLES, book_pressure, compute_indicators
from autolev.strategy.levels import level_signal
from autolev.strategy.predictor import multi_timeframe_direction, predict_next_close
from autolev.core.user_settings import UserSettings


def _snap(**kw):
    base = dict(
        last_price=100.0,
        rsi=50.0,
        bb_upper=105.0,
        bb_lower=95.0,
        macd_histogram=0.0,
        crossover=0,
        level_signal=0,
        volume_strength=1.0,
        book_pressure=0.0,
        sentiment=0.0,
        atr=1.0,
        predicted_price=100.0,
        performance_ratio=1.0,
        mtf_direction=0.0,
    )
    base.update(kw)
    return scorer.SignalSnapshot(**base)


def _series(closes, volumes=None, symbol="BTCUSDT"):
    rows = []
    volumes = volumes or [10.0] * len(closes)
    prev = closes[0]
    for i, (c, v) in enumerate(zip(closes, volumes)):
        o = prev
        rows.append([i * 3_600_000, o, max(o, c) * 1.001, min(o, c) * 0.999, c, v, i * 3_600_000 + 3_599_999])
        prev = c
    return CandleSeries.from_klines(symbol, "1h", rows)


def test_score_is_bounded_for_extreme_inputs():
    rnd = random.Random(7)
    extremes = [0.0, -1e12, 1e12, float("nan"), float("inf"), -float("inf")]
    for _ in range(200):
        snap = _snap(
            rsi=rnd.choice(extremes + [10.0, 90.0]),
            macd_histogram=rnd.choice(extremes),
            volume_strength=rnd.choice(extremes),
            book_pressure=rnd.choice(extremes),
            sentiment=rnd.choice(extremes),
            atr=rnd.choice(extremes),
            predicted_price=rnd.choice(extremes),
            performance_ratio=rnd.choice(extremes),
            mtf_direction=rnd.choice(extremes),
            crossover=rnd.choice([-1, 0, 1]),
            level_signal=rnd.choice([-1, 0, 1]),
        )
        s = scorer.score(snap)
        assert 0.0 <= s <= 1.0
        assert math.isfinite(s)


def test_no_single_signal_reaches_default_entry_score():
    assert max(scorer.WEIGHTS.values()) < UserSettings().min_score


def test_long_entry_rules():
    snap = _snap(rsi=20.0, last_price=94.0, volume_strength=2.0)
    side, reasons = scorer.entry_rules(snap, 0.3)
    assert side is Bias.LONG
    assert "oversold" in reasons


def test_long_entry_needs_volume_or_level():
    snap = _snap(rsi=20.0, last_price=94.0, volume_strength=1.0, level_signal=0)
    assert scorer.entry_rules(snap, 0.3)[0] is Bias.NEUTRAL
    snap = _snap(rsi=20.0, last_price=94.0, volume_strength=1.0, level_signal=1)
    assert scorer.entry_rules(snap, 0.3)[0] is Bias.LONG


def test_short_entry_blocked_by_bullish_sentiment():
    snap = _snap(rsi=80.0, last_price=106.0, volume_strength=2.0, sentiment=0.9)
    side, reasons = scorer.entry_rules(snap, 0.3)
    assert side is Bias.NEUTRAL
    assert reasons == ["short_blocked_by_sentiment"]
    assert scorer.entry_rules(_snap(rsi=80.0, last_price=106.0, volume_strength=2.0), 0.3)[0] is Bias.SHORT


def test_ratio_is_one_for_short_or_flat_history():
    assert scorer.risk_adjusted_ratio([]) == 1.0
    assert scorer.risk_adjusted_ratio([0.1] * 9) == 1.0
    assert scorer.risk_adjusted_ratio([0.05] * 20) == 1.0


def test_ratio_is_mean_over_std():
    returns = [0.1, -0.05] * 5
    mean = sum(returns) / len(returns)
    std = (sum((r - mean) ** 2 for r in returns) / (len(returns) - 1)) ** 0.5
    assert scorer.risk_adjusted_ratio(returns) == pytest.approx(mean / std)


def test_candle_rejects_nan_and_bad_shapes():
    with pytest.raises(MalformedPayload):
        Candle.from_kline([0, "nan", "1", "1", "1", "1", 1])
    with pytest.raises(MalformedPayload):
        Candle.from_kline([0, "1", "1"])
    with pytest.raises(MalformedPayload):
        Candle.from_kline([0, "1", "1", "2", "1", "1", 1])


def test_position_entry_parsing():
    pos = parse_record(
        PositionEntry,
        {"symbol": "ETHUSDT", "positionAmt": "-2", "entryPrice": "2000", "markPrice": "1990", "positionSide": "BOTH"},
    )
    assert pos.side == "SHORT" and pos.quantity == 2.0
    with pytest.raises(MalformedPayload):
        parse_record(PositionEntry, {"symbol": "ETHUSDT", "positionAmt": "1", "entryPrice": "0", "markPrice": "1"})


def test_order_params_payload():
    stop = OrderParams("btcusdt", "SELL", "STOP_MARKET", stop_price=98, close_position=True, reduce_only=True)
    payload = stop.to_payload()
    assert payload["closePosition"] is True
    assert "reduceOnly" not in payload and "quantity" not in payload
    hedge_close = OrderParams("BTCUSDT", "BUY", "MARKET", quantity=1, reduce_only=True, position_side="SHORT")
    assert "reduceOnly" not in hedge_close.to_payload()
    assert hedge_close.to_payload()["positionSide"] == "SHORT"


def test_book_pressure():
    book = OrderBook.from_depth("BTCUSDT", {"bids": [["100", "3"]], "asks": [["101", "1"]]})
    assert book_pressure(book) == pytest.approx(0.5)
    assert book_pressure(OrderBook.from_depth("BTCUSDT", {"bids": [], "asks": []})) == 0.0


def test_indicators_need_enough_candles():
    with pytest.raises(TradeValidationError):
        compute_indicators(_series([100.0] * (MIN_CANDLES - 1)))


def test_indicators_on_falling_series():
    closes = [100.0 - i * 0.5 for i in range(60)]
    volumes = [10.0] * 59 + [40.0]
    ind = compute_indicators(_series(closes, volumes))
    assert ind.rsi < 30
    assert ind.ema_fast < ind.ema_slow
    assert ind.volume_strength == pytest.approx(4.0)
    assert ind.atr > 0


def test_prediction_follows_the_line():
    assert predict_next_close([1.0, 2.0, 3.0, 4.0]) == pytest.approx(5.0)
    assert math.isnan(predict_next_close([]))


def test_multi_timeframe_direction():
    up = _series([100.0 + i for i in range(40)])
    down = _series([200.0 - i for i in range(40)])
    assert multi_timeframe_direction([up, up]) == 1.0
    assert multi_timeframe_direction([up, down]) == 0.0
    assert multi_timeframe_direction([]) == 0.0


def test_breakout_is_a_bullish_level_signal():
    closes = [100.0, 101.0, 100.5, 101.5, 100.8, 110.0]
    assert level_signal(_series(closes).candles) == 1
    closes = [100.0, 101.0, 100.5, 101.5, 100.8, 90.0]
    assert level_signal(_series(closes).candles) == -1


def test_backtest_counts_trades():
    rnd = random.Random(3)
    closes, px = [], 100.0
    for i in range(200):
        px *= 1 + rnd.uniform(-0.03, 0.03)
        closes.append(px)
    volumes = [rnd.uniform(5, 40) for _ in closes]
    result = run_backtest(_series(closes, volumes), UserSettings())
    assert result.trades == len(result.returns)
    assert 0 <= result.wins <= result.trades
    assert 0.0 <= result.win_rate <= 1.0
