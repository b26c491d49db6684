from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


class Bias(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NEUTRAL = "NEUTRAL"

    @property
    def sign(self) -> int:
        return {"LONG": 1, "SHORT": -1}.get(self.value, 0)


@dataclass
class Opportunity:
    symbol: str
    score: float
    bias: Bias
    entry_ok: bool
    last_price: float
    atr: float
    sentiment: float
    reasons: list[str] = field(default_factory=list)
    meta: Optional[Dict] = None

    @property
    def atr_pct(self) -> float:
        return self.atr / self.last_price if self.last_price > 0 else 0.0
