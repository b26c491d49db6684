from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from autolev.core.errors import TransientExchangeError

log = logging.getLogger("autolev.retry")


class Outcome(str, Enum):
    SUCCESS = "SUCCESS"
    RETRYABLE = "RETRYABLE"
    FATAL = "FATAL"


@dataclass(frozen=True)
class CallResult:
    outcome: Outcome
    value: Any = None
    error: Optional[BaseException] = None

    def unwrap(self) -> Any:
        if self.outcome is Outcome.SUCCESS:
            return self.value
        assert self.error is not None
        raise self.error


def classify(exc: BaseException) -> Outcome:
    if isinstance(exc, (TransientExchangeError, TimeoutError, ConnectionError)):
        return Outcome.RETRYABLE
    return Outcome.FATAL


async def attempt(fn: Callable[[], Awaitable[Any]]) -> CallResult:
    try:
        value = await fn()
    except Exception as e:
        return CallResult(classify(e), error=e)
    return CallResult(Outcome.SUCCESS, value=value)


def _is_retryable(result: CallResult) -> bool:
    return result.outcome is Outcome.RETRYABLE


async def call_with_retry(
    fn: Callable[[], Awaitable[Any]],
    *,
    attempts: int = 3,
    delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> CallResult:
    """
    Run `fn` until it succeeds, fails fatally, or `attempts` retryable
    failures have been seen. Always returns the last CallResult.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=retry_if_result(_is_retryable),
        retry_error_callback=lambda state: state.outcome.result(),
        before_sleep=before_sleep_log(log, logging.WARNING),
        sleep=sleep,
    )
    return await retrying(attempt, fn)
