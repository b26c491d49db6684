from __future__ import annotations

import asyncio
import logging
import math
from typing import Iterable, List, Optional

from autolev.core.config import Settings, settings as default_settings
from autolev.core.errors import ExchangeError, TradeValidationError
from autolev.core.user_settings import UserSettings
from autolev.exchange.binance.models import CandleSeries
from autolev.strategy import scorer
from autolev.strategy.base import Bias, Opportunity
from autolev.strategy.indicators import book_pressure, compute_indicators
from autolev.strategy.levels import level_signal
from autolev.strategy.predictor import multi_timeframe_direction, predict_next_close
from autolev.strategy.sentiment import SentimentProvider

log = logging.getLogger("autolev.evaluator")


class OpportunityEvaluator:
    """Pulls market data through the gateway and scores one symbol at a time."""

    def __init__(self, gateway, sentiment: SentimentProvider, *, cfg: Settings | None = None):
        self.gateway = gateway
        self.sentiment = sentiment
        self.cfg = cfg or default_settings

    async def _timeframes(self, symbol: str, base: str) -> List[CandleSeries]:
        out = []
        for tf in self.cfg.MTF_TIMEFRAMES:
            if tf == base:
                continue
            try:
                out.append(await self.gateway.fetch_candles(symbol, tf))
            except (ExchangeError, TradeValidationError) as e:
                log.debug("skipping %s %s for multi-timeframe view: %s", symbol, tf, e)
        return out

    async def evaluate(self, symbol: str, user: UserSettings, performance_ratio: float) -> Opportunity:
        series = await self.gateway.fetch_candles(symbol, user.timeframe)
        ind = compute_indicators(series)
        book = await self.gateway.fetch_order_book(symbol)
        sentiment = await self.sentiment.get_sentiment(symbol)
        others = await self._timeframes(symbol, user.timeframe)

        snap = scorer.SignalSnapshot(
            last_price=ind.last_close,
            rsi=ind.rsi,
            bb_upper=ind.bb_upper,
            bb_lower=ind.bb_lower,
            macd_histogram=ind.macd_histogram,
            crossover=ind.crossover,
            level_signal=level_signal(series.candles),
            volume_strength=ind.volume_strength,
            book_pressure=book_pressure(book),
            sentiment=sentiment,
            atr=ind.atr,
            predicted_price=predict_next_close(series.closes),
            performance_ratio=performance_ratio,
            mtf_direction=multi_timeframe_direction([series, *others]),
        )

        entry_bias, reasons = scorer.entry_rules(snap, user.sentiment_threshold)
        direction = entry_bias if entry_bias is not Bias.NEUTRAL else scorer.bias(snap)
        last = series.last

        return Opportunity(
            symbol=symbol,
            score=scorer.score(snap),
            bias=direction,
            entry_ok=entry_bias is not Bias.NEUTRAL,
            last_price=ind.last_close,
            atr=ind.atr if math.isfinite(ind.atr) else 0.0,
            sentiment=sentiment,
            reasons=reasons,
            meta={
                "rsi": ind.rsi,
                "volume_strength": ind.volume_strength,
                "last_move": (last.close - last.open) / last.open,
                "mtf_direction": snap.mtf_direction,
            },
        )

    async def evaluate_many(
        self,
        symbols: Iterable[str],
        user: UserSettings,
        performance_ratio: float,
    ) -> List[Opportunity]:
        """Evaluate concurrently; a symbol that fails is logged and dropped."""
        sem = asyncio.Semaphore(max(1, self.cfg.SCAN_CONCURRENCY))

        async def one(sym: str) -> Optional[Opportunity]:
            async with sem:
                try:
                    return await self.evaluate(sym, user, performance_ratio)
                except (ExchangeError, TradeValidationError) as e:
                    log.info("skip %s: %s", sym, e)
                    return None
                except Exception:
                    log.exception("evaluation failed for %s", sym)
                    return None

        results = await asyncio.gather(*(one(s) for s in symbols))
        return [r for r in results if r is not None]
