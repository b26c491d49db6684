from __future__ import annotations

import logging

from autolev.ops.context import ContextFilter

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [user=%(user_id)s cycle=%(cycle_id)s] %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Install one stream handler on the `autolev` logger tree."""
    root = logging.getLogger("autolev")
    root.setLevel(level)
    if any(getattr(h, "_autolev", False) for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(ContextFilter())
    handler._autolev = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.propagate = False
