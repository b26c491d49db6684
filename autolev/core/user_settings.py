from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from autolev.core.config import VALID_TIMEFRAMES, _parse_list
from autolev.core.errors import UnknownSettingError


class UserSettings(BaseModel):
    """
    Per-user trading preferences, persisted as a flat key-value document.

    Percentages are fractions (0.02 == 2%). Unknown keys are rejected.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    timeframe: str = "1h"
    min_leverage: int = Field(default=25, ge=1)
    max_leverage: int = Field(default=125, ge=1)
    position_size_fraction: float = Field(default=0.05, gt=0, le=1)
    max_positions: int = Field(default=3, ge=1)

    stop_loss_percent: float = Field(default=0.02, gt=0, lt=1)
    take_profit1_percent: float = Field(default=0.02, gt=0, lt=1)
    take_profit2_percent: float = Field(default=0.04, gt=0, lt=1)
    take_profit_percent: float = Field(default=0.08, gt=0, lt=1)
    trailing_take_profit_percent: float = Field(default=0.01, gt=0, lt=1)

    min_score: float = Field(default=0.4, ge=0, le=1)
    sentiment_threshold: float = Field(default=0.3, ge=0, le=1)
    min_available_fraction: float = Field(default=0.5, ge=0, le=1)

    hedging_enabled: bool = False
    reentry_threshold: float = Field(default=0.005, ge=0, lt=1)
    max_reentries: int = Field(default=1, ge=0)

    stagnation_minutes: float = Field(default=240.0, gt=0)
    idle_move_percent: float = Field(default=0.01, gt=0, lt=1)

    favorite_symbols: List[str] = Field(default_factory=list)

    @field_validator("timeframe")
    @classmethod
    def check_timeframe(cls, v: str) -> str:
        v = (v or "").strip()
        if v not in VALID_TIMEFRAMES:
            raise ValueError(f"unsupported timeframe {v!r}")
        return v

    @field_validator("favorite_symbols", mode="before")
    @classmethod
    def parse_favorites(cls, v: Any) -> List[str]:
        return _parse_list(v)

    @model_validator(mode="after")
    def check_ordering(self) -> "UserSettings":
        if self.max_leverage < self.min_leverage:
            raise ValueError("max_leverage must be >= min_leverage")
        if not self.take_profit1_percent < self.take_profit2_percent < self.take_profit_percent:
            raise ValueError(
                "take-profit levels must satisfy take_profit1 < take_profit2 < take_profit"
            )
        return self

    # ---------------- DOCUMENT (flat key/value) ----------------

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "UserSettings":
        unknown = set(doc) - set(cls.model_fields)
        if unknown:
            raise UnknownSettingError(unknown)
        return cls(**_decode_values(doc))

    def to_document(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for key, value in self.model_dump().items():
            if isinstance(value, list):
                out[key] = ",".join(value)
            elif isinstance(value, bool):
                out[key] = "true" if value else "false"
            else:
                out[key] = str(value)
        return out

    def merged(self, patch: Mapping[str, Any]) -> "UserSettings":
        """Return a copy with `patch` applied; unknown keys rejected."""
        unknown = set(patch) - set(type(self).model_fields)
        if unknown:
            raise UnknownSettingError(unknown)
        data = self.model_dump()
        data.update(_decode_values(patch))
        return type(self)(**data)


def _decode_values(doc: Mapping[str, Any]) -> Dict[str, Any]:
    # stored values are strings; json-looking lists are accepted too
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, str) and v.strip().startswith("["):
            try:
                v = json.loads(v)
            except json.JSONDecodeError:
                pass
        out[k] = v
    return out
