from __future__ import annotations

import logging
import math
import time
from typing import Callable, Protocol

from cachetools import TTLCache

log = logging.getLogger("autolev.sentiment")


class SentimentProvider(Protocol):
    async def get_sentiment(self, symbol: str) -> float: ...


class NeutralSentiment:
    """Stand-in provider: no news source configured."""

    async def get_sentiment(self, symbol: str) -> float:
        return 0.0


def clamp_sentiment(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(-1.0, min(1.0, float(value)))


class CachedSentiment:
    """
    Wraps a provider: results are clamped to [-1, 1] and cached per symbol.
    A failing provider reads as neutral.
    """

    def __init__(
        self,
        provider: SentimentProvider,
        *,
        ttl_seconds: float = 900.0,
        maxsize: int = 500,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)

    async def get_sentiment(self, symbol: str) -> float:
        sym = symbol.upper()
        cached = self._cache.get(sym)
        if cached is not None:
            return cached
        try:
            value = clamp_sentiment(await self.provider.get_sentiment(sym))
        except Exception as e:
            log.warning("sentiment lookup failed for %s: %s", sym, e)
            return 0.0
        self._cache[sym] = value
        return value
