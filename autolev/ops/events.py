from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set

from autolev.ops.context import get_cycle_id

log = logging.getLogger("autolev.events")


class EventType(str, Enum):
    POSITION_OPENED = "POSITION_OPENED"
    POSITION_CLOSED = "POSITION_CLOSED"
    PARTIAL_TAKE_PROFIT = "PARTIAL_TAKE_PROFIT"
    TRAILING_STOP_UPDATED = "TRAILING_STOP_UPDATED"
    STAGNATION_CLOSE = "STAGNATION_CLOSE"
    HEDGE_OPENED = "HEDGE_OPENED"
    REENTRY = "REENTRY"
    ANOMALY_DETECTED = "ANOMALY_DETECTED"
    DAILY_REPORT = "DAILY_REPORT"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Event:
    type: EventType
    user_id: str
    message: str
    symbol: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def notify(self, event: Event) -> None: ...


class LogNotifier:
    """Writes every event to the log; the default sink when no chat front-end is wired."""

    async def notify(self, event: Event) -> None:
        log.info("[%s] %s %s", event.user_id, event.type.value, event.message)


class EventBus:
    """
    Fan-out of trading events. emit() never waits for delivery: each
    notifier runs as its own task and a failing notifier is only logged.
    """

    def __init__(self, *, audit=None, notifiers: Optional[List[Notifier]] = None):
        self.audit = audit
        self.notifiers: List[Notifier] = list(notifiers or [])
        self._pending: Set[asyncio.Task] = set()
        self.history: List[Event] = []

    def subscribe(self, notifier: Notifier) -> None:
        self.notifiers.append(notifier)

    def emit(self, event: Event) -> None:
        self.history.append(event)
        if len(self.history) > 1000:
            del self.history[:-1000]

        if self.audit is not None:
            self.audit.event(
                event_type=event.type.value,
                user_id=event.user_id,
                cycle_id=get_cycle_id(),
                symbol=event.symbol,
                message=event.message,
                details=event.details,
            )

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("no running loop; %s not delivered", event.type.value)
            return

        for n in self.notifiers:
            task = loop.create_task(self._deliver(n, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, notifier: Notifier, event: Event) -> None:
        try:
            await notifier.notify(event)
        except Exception:
            log.exception("notifier %s failed on %s", type(notifier).__name__, event.type.value)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown / tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
