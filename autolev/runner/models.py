from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from autolev.core.user_settings import UserSettings
from autolev.exchange.gateway import Credentials


@dataclass
class UserSession:
    user_id: str
    credentials: Credentials
    settings: UserSettings
    active: bool = False
    dual_side: bool = False  # account in hedge (dual-side) position mode
    started_at: Optional[float] = None
    last_scan_at: Optional[float] = None
    last_monitor_at: Optional[float] = None

    @property
    def hedging_ready(self) -> bool:
        return self.settings.hedging_enabled and self.dual_side
