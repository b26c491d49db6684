import asyncio

import pytest

from autolev.core.errors import ExchangeError
from autolev.core.user_settings import UserSettings
from autolev.exchange.binance.models import (
    AccountSnapshot,
    BalanceEntry,
    CandleSeries,
    OrderBook,
    PositionEntry,
)
from autolev.ops.report import build_daily_report, report_headline
from autolev.strategy.base import Bias
from autolev.strategy.evaluator import OpportunityEvaluator
from autolev.strategy.sentiment import CachedSentiment, NeutralSentiment


def _falling(symbol, n=60):
    rows = []
    for i in range(n):
        o = 100.0 - i * 0.5
        c = o - 0.5
        v = 40.0 if i == n - 1 else 10.0
        rows.append([i * 3_600_000, o, o * 1.001, c * 0.999, c, v, i * 3_600_000 + 3_599_999])
    return CandleSeries.from_klines(symbol, "1h", rows)


class _MarketData:
    def __init__(self):
        self.broken = set()
        self.timeframes = []

    async def fetch_candles(self, symbol, timeframe, limit=None):
        if symbol in self.broken:
            raise ExchangeError(f"{symbol} unavailable", status=400)
        self.timeframes.append(timeframe)
        return _falling(symbol)

    async def fetch_order_book(self, symbol, limit=20):
        return OrderBook.from_depth(symbol, {"bids": [["70", "1"]], "asks": [["70.1", "3"]]})


class _Sentiment:
    def __init__(self, values):
        self.values = list(values)
        self.calls = 0

    async def get_sentiment(self, symbol):
        self.calls += 1
        v = self.values.pop(0)
        if isinstance(v, Exception):
            raise v
        return v


def test_evaluate_builds_an_opportunity(cfg):
    data = _MarketData()
    ev = OpportunityEvaluator(data, NeutralSentiment(), cfg=cfg)

    opp = asyncio.run(ev.evaluate("BTCUSDT", UserSettings(), 1.0))
    assert opp.symbol == "BTCUSDT"
    assert 0.0 <= opp.score <= 1.0
    assert opp.bias in (Bias.LONG, Bias.SHORT, Bias.NEUTRAL)
    assert opp.meta["volume_strength"] == pytest.approx(4.0)
    assert opp.meta["last_move"] < 0
    # base timeframe is not fetched twice
    assert data.timeframes.count("1h") == 1
    assert set(data.timeframes) == {"1h", "4h", "1d"}


def test_evaluate_many_drops_failing_symbols(cfg):
    data = _MarketData()
    data.broken = {"ETHUSDT"}
    ev = OpportunityEvaluator(data, NeutralSentiment(), cfg=cfg)

    opps = asyncio.run(ev.evaluate_many(["BTCUSDT", "ETHUSDT", "SOLUSDT"], UserSettings(), 1.0))
    assert sorted(o.symbol for o in opps) == ["BTCUSDT", "SOLUSDT"]


def test_unexpected_error_only_drops_that_symbol(cfg):
    data = _MarketData()
    real_book = data.fetch_order_book

    async def flaky_book(symbol, limit=20):
        if symbol == "BADUSDT":
            raise RuntimeError("unexpected")
        return await real_book(symbol, limit)

    data.fetch_order_book = flaky_book
    ev = OpportunityEvaluator(data, NeutralSentiment(), cfg=cfg)

    opps = asyncio.run(ev.evaluate_many(["BTCUSDT", "BADUSDT"], UserSettings(), 1.0))
    assert [o.symbol for o in opps] == ["BTCUSDT"]


def test_sentiment_is_clamped_and_cached():
    now = [0.0]
    provider = _Sentiment([5.0, -0.2])
    cached = CachedSentiment(provider, ttl_seconds=60.0, timer=lambda: now[0])

    assert asyncio.run(cached.get_sentiment("btcusdt")) == 1.0
    assert asyncio.run(cached.get_sentiment("BTCUSDT")) == 1.0
    assert provider.calls == 1

    now[0] = 61.0
    assert asyncio.run(cached.get_sentiment("BTCUSDT")) == -0.2


def test_sentiment_failure_reads_neutral():
    provider = _Sentiment([RuntimeError("feed down"), float("nan"), 0.4])
    cached = CachedSentiment(provider)

    assert asyncio.run(cached.get_sentiment("ETHUSDT")) == 0.0
    # nothing cached on failure, nan reads as neutral
    assert asyncio.run(cached.get_sentiment("ETHUSDT")) == 0.0
    assert provider.calls == 2


def test_daily_report():
    account = AccountSnapshot(
        balances=(BalanceEntry(asset="USDT", balance=1000, availableBalance=750),),
        positions=(
            PositionEntry(symbol="BTCUSDT", positionAmt=0.01, entryPrice=30000, markPrice=30500,
                          leverage=25, unRealizedProfit=5.0),
        ),
    )
    report = build_daily_report(
        account,
        quote_asset="USDT",
        performance_ratio=1.0,
        day_summary={"trades": 4, "wins": 3, "realized_pnl": 12.5},
    )
    assert report["available"] == 750.0
    assert report["unrealized_pnl"] == 5.0
    assert report["open_positions"][0]["side"] == "LONG"
    headline = report_headline(report, "USDT")
    assert "1 open" in headline and "+12.50" in headline
