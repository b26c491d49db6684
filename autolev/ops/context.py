from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Optional

# Context-local (safe for async tasks & threads)
_current_user_id: ContextVar[Optional[str]] = ContextVar("current_user_id", default=None)
_current_cycle_id: ContextVar[Optional[str]] = ContextVar(
    "current_cycle_id", default=None
)


def set_user_id(user_id: str) -> None:
    _current_user_id.set(user_id)


def get_user_id() -> Optional[str]:
    return _current_user_id.get()


def set_cycle_id(cycle_id: str) -> None:
    _current_cycle_id.set(cycle_id)


def get_cycle_id() -> Optional[str]:
    return _current_cycle_id.get()


def clear_cycle_id() -> None:
    _current_cycle_id.set(None)


class ContextFilter(logging.Filter):
    """Stamps every record with the user / cycle of the task that emitted it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.user_id = get_user_id() or "-"
        record.cycle_id = get_cycle_id() or "-"
        return True
