from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Tuple

from autolev.ops.context import clear_cycle_id, set_cycle_id, set_user_id

log = logging.getLogger("autolev.scheduler")

Key = Tuple[str, str]  # (user_id, purpose)
Job = Callable[[], Awaitable[None]]


class Scheduler:
    """
    Periodic and one-shot asyncio tasks keyed by (user, purpose).

    Scheduling a key that is already running replaces it. A run that raises
    is logged and the loop goes on; cancellation is the only way out.
    """

    def __init__(self, *, sleep=asyncio.sleep):
        self._tasks: Dict[Key, asyncio.Task] = {}
        self._sleep = sleep

    async def _run_once(self, key: Key, fn: Job) -> None:
        user_id, purpose = key
        set_user_id(user_id)
        set_cycle_id(str(uuid.uuid4()))
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("%s run failed for user %s", purpose, user_id)
        finally:
            clear_cycle_id()

    async def _loop(self, key: Key, interval: float, fn: Job, run_immediately: bool) -> None:
        if not run_immediately:
            await self._sleep(interval)
        while True:
            await self._run_once(key, fn)
            await self._sleep(interval)

    async def _delayed(self, key: Key, delay: float, fn: Job) -> None:
        try:
            await self._sleep(delay)
            await self._run_once(key, fn)
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                self._tasks.pop(key, None)

    def _install(self, key: Key, coro) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(coro, name=f"{key[0]}:{key[1]}")
        self._tasks[key] = task
        return task

    def every(self, key: Key, interval: float, fn: Job, *, run_immediately: bool = True) -> asyncio.Task:
        return self._install(key, self._loop(key, interval, fn, run_immediately))

    def later(self, key: Key, delay: float, fn: Job) -> asyncio.Task:
        """One-shot run after `delay`; rescheduling the key pushes it back."""
        return self._install(key, self._delayed(key, delay, fn))

    def cancel(self, key: Key) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_user(self, user_id: str) -> int:
        """Synchronous: nothing scheduled for the user runs again after this returns."""
        keys = [k for k in self._tasks if k[0] == user_id]
        return sum(1 for k in keys if self.cancel(k))

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def active_keys(self, user_id: str | None = None) -> List[Key]:
        return sorted(
            k for k, t in self._tasks.items()
            if not t.done() and (user_id is None or k[0] == user_id)
        )
