from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import websockets
from websockets.exceptions import WebSocketException

log = logging.getLogger("autolev.stream")


class PriceBook:
    """Latest traded price per symbol, stamped with the time it arrived."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._prices: Dict[str, Tuple[float, float]] = {}

    def update(self, symbol: str, price: float) -> None:
        if price > 0:
            self._prices[symbol.upper()] = (float(price), self._clock())

    def get(self, symbol: str, max_age: float | None = None) -> Optional[float]:
        entry = self._prices.get(symbol.upper())
        if entry is None:
            return None
        price, ts = entry
        if max_age is not None and self._clock() - ts > max_age:
            return None
        return price

    def __len__(self) -> int:
        return len(self._prices)


def apply_ticker_message(book: PriceBook, raw: str | bytes) -> int:
    """
    Feed one `!ticker@arr` frame into the book. Returns how many symbols
    were updated; frames that are not ticker arrays are ignored.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        log.debug("dropping non-json frame")
        return 0
    if not isinstance(data, list):
        return 0

    updated = 0
    for t in data:
        if not isinstance(t, dict):
            continue
        try:
            symbol = str(t["s"])
            price = float(t["c"])
        except (KeyError, TypeError, ValueError):
            continue
        if price > 0:
            book.update(symbol, price)
            updated += 1
    return updated


class TickerStream:
    """All-market ticker stream feeding a PriceBook; reconnects with backoff."""

    def __init__(self, url: str, book: PriceBook, *, max_backoff: float = 60.0):
        self.url = url.rstrip("/")
        self.book = book
        self.max_backoff = max_backoff

    async def run(self) -> None:
        backoff = 1.0
        while True:
            try:
                async with websockets.connect(f"{self.url}/!ticker@arr", ping_interval=20) as ws:
                    log.info("price stream connected")
                    backoff = 1.0
                    async for message in ws:
                        apply_ticker_message(self.book, message)
            except asyncio.CancelledError:
                raise
            except (WebSocketException, OSError) as e:
                log.warning("price stream dropped (%s); reconnecting in %.0fs", e, backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.max_backoff)
