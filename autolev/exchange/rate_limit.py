from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

log = logging.getLogger("autolev.ratelimit")


@dataclass
class _Window:
    started_at: float
    count: int = 0


class RateLimiter:
    """
    Rolling call budget per credential.

    At most `max_calls` acquisitions per key within a window of
    `window_seconds`. When the budget is spent, acquire() suspends until
    the window resets instead of failing.
    """

    def __init__(
        self,
        max_calls: int,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_calls <= 0:
            raise ValueError("max_calls must be > 0")
        self.max_calls = int(max_calls)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._sleep = sleep
        self._windows: Dict[str, _Window] = {}

    def used(self, key: str) -> int:
        w = self._windows.get(key)
        if w is None or self._clock() - w.started_at >= self.window_seconds:
            return 0
        return w.count

    async def acquire(self, key: str) -> None:
        while True:
            now = self._clock()
            w = self._windows.get(key)
            if w is None or now - w.started_at >= self.window_seconds:
                w = self._windows[key] = _Window(started_at=now)

            if w.count < self.max_calls:
                w.count += 1
                return

            wait_s = max(0.0, self.window_seconds - (now - w.started_at))
            log.info("rate budget spent for %s; waiting %.2fs for window reset", _mask(key), wait_s)
            await self._sleep(wait_s)


def _mask(key: str) -> str:
    return key if len(key) <= 8 else f"{key[:4]}…{key[-2:]}"
