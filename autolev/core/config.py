# autolev/core/config.py
from __future__ import annotations

import json
import logging
from typing import Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("autolev.config")

DEFAULT_BLACKLIST = [
    "CRVUSDT",
    "MKRUSDT",
    "RSRUSDT",
    "CETUSUSDT",
    "BNXUSDT",
    "CKBUSDT",
]

VALID_TIMEFRAMES = {"1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w"}


def _parse_list(v: Any, *, upper: bool = True) -> List[str]:
    """
    Accepts:
      - list: ["BTCUSDT","ETHUSDT"]
      - csv:  "BTCUSDT,ETHUSDT"
      - json: '["BTCUSDT","ETHUSDT"]'
    Returns trimmed items (uppercased unless upper=False).
    """
    if v is None:
        return []

    def norm(x: Any) -> str:
        s = str(x).strip()
        return s.upper() if upper else s

    if isinstance(v, (list, tuple, set)):
        return [norm(x) for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [norm(x) for x in arr if str(x).strip()]
        except json.JSONDecodeError:
            # fall back to csv parse
            pass
    return [norm(p) for p in s.split(",") if p.strip()]


class Settings(BaseSettings):
    """Process configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding List fields.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Exchange / API ---
    BINANCE_ENV: str = "mainnet"  # mainnet/testnet
    BINANCE_FAPI_BASE_URL: str = "https://fapi.binance.com"
    BINANCE_WS_URL: str = "wss://fstream.binance.com/ws"
    BINANCE_RECV_WINDOW: int = 5000
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # --- Gateway ---
    RATE_LIMIT_CALLS_PER_WINDOW: int = 1000
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    RETRY_ATTEMPTS: int = 3
    RETRY_DELAY_SECONDS: float = 1.0
    CACHE_TTL_SECONDS: float = 3600.0
    CACHE_MAX_ENTRIES: int = 1000
    SENTIMENT_TTL_SECONDS: float = 900.0

    # --- Timers ---
    SCAN_INTERVAL_SECONDS: float = 300.0
    MONITOR_INTERVAL_SECONDS: float = 5.0
    REPORT_INTERVAL_SECONDS: float = 86400.0
    INSUFFICIENT_FUNDS_COOLDOWN_SECONDS: float = 300.0

    # --- Universe / scanning ---
    QUOTE_ASSET: str = "USDT"
    TRADE_SYMBOLS: List[str] = Field(
        default_factory=lambda: ["BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT", "XRPUSDT"]
    )
    BLACKLIST: List[str] = Field(default_factory=lambda: list(DEFAULT_BLACKLIST))
    MTF_TIMEFRAMES: List[str] = Field(default_factory=lambda: ["1h", "4h", "1d"])
    CANDLE_LIMIT: int = 100
    SCAN_CONCURRENCY: int = 5

    # --- Risk ---
    MIN_LEVERAGE_FLOOR: int = 25
    HEDGE_TRIGGER_PCT: float = 0.10
    PERFORMANCE_WINDOW: int = 50
    PRICE_STALE_SECONDS: float = 15.0

    # --- Anomalies ---
    ANOMALY_VOLUME_RATIO: float = 3.0
    ANOMALY_MOVE_PCT: float = 0.05

    # --- Runtime ---
    STREAM_ENABLED: bool = True
    DB_PATH: str = "data/agent.db"
    AUDIT_JSONL_PATH: str = "logs/audit.jsonl"
    LOG_LEVEL: str = "INFO"

    @field_validator("TRADE_SYMBOLS", "BLACKLIST", mode="before")
    @classmethod
    def parse_symbol_lists(cls, v: Any) -> List[str]:
        return _parse_list(v)

    @field_validator("MTF_TIMEFRAMES", mode="before")
    @classmethod
    def parse_timeframes(cls, v: Any) -> List[str]:
        return _parse_list(v, upper=False)

    def model_post_init(self, __context: Any) -> None:
        self.BINANCE_ENV = (self.BINANCE_ENV or "mainnet").lower().strip()
        self.QUOTE_ASSET = (self.QUOTE_ASSET or "USDT").upper().strip()
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()

        # Keep base URLs consistent with BINANCE_ENV unless explicitly overridden
        if self.BINANCE_ENV == "testnet":
            if self.BINANCE_FAPI_BASE_URL.strip() == "https://fapi.binance.com":
                self.BINANCE_FAPI_BASE_URL = "https://testnet.binancefuture.com"
            if self.BINANCE_WS_URL.strip() == "wss://fstream.binance.com/ws":
                self.BINANCE_WS_URL = "wss://stream.binancefuture.com/ws"

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.BINANCE_ENV not in {"mainnet", "testnet"}:
            errors.append("BINANCE_ENV must be 'mainnet' or 'testnet'.")

        if self.RATE_LIMIT_CALLS_PER_WINDOW <= 0:
            errors.append("RATE_LIMIT_CALLS_PER_WINDOW must be > 0.")
        if self.RATE_LIMIT_WINDOW_SECONDS <= 0:
            errors.append("RATE_LIMIT_WINDOW_SECONDS must be > 0.")
        if self.RETRY_ATTEMPTS < 1:
            errors.append("RETRY_ATTEMPTS must be >= 1.")
        if self.CACHE_MAX_ENTRIES <= 0:
            errors.append("CACHE_MAX_ENTRIES must be > 0.")
        if self.CACHE_TTL_SECONDS <= 0:
            errors.append("CACHE_TTL_SECONDS must be > 0.")

        for name in ("SCAN_INTERVAL_SECONDS", "MONITOR_INTERVAL_SECONDS", "REPORT_INTERVAL_SECONDS"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be > 0.")

        if self.MONITOR_INTERVAL_SECONDS > self.SCAN_INTERVAL_SECONDS:
            warnings.append(
                "MONITOR_INTERVAL_SECONDS is longer than SCAN_INTERVAL_SECONDS; "
                "new positions may wait a full monitor cycle for management."
            )

        bad_tf = [tf for tf in self.MTF_TIMEFRAMES if tf not in VALID_TIMEFRAMES]
        if bad_tf:
            errors.append(f"MTF_TIMEFRAMES contains unsupported intervals: {bad_tf}")

        if self.MIN_LEVERAGE_FLOOR < 1:
            errors.append("MIN_LEVERAGE_FLOOR must be >= 1.")

        if not 0 < self.HEDGE_TRIGGER_PCT < 1:
            errors.append("HEDGE_TRIGGER_PCT must be between 0 and 1.")

        if not self.TRADE_SYMBOLS:
            warnings.append("TRADE_SYMBOLS is empty. Only user favorites will be scanned.")

        overlap = set(self.TRADE_SYMBOLS) & set(self.BLACKLIST)
        if overlap:
            warnings.append(f"TRADE_SYMBOLS contains blacklisted symbols: {sorted(overlap)}")

        if self.CANDLE_LIMIT < 30:
            errors.append("CANDLE_LIMIT must be >= 30 for indicator warm-up.")

        if (
            self.BINANCE_FAPI_BASE_URL.strip() == "https://fapi.binance.com"
            and self.BINANCE_ENV != "mainnet"
        ):
            errors.append(
                "BINANCE_ENV mismatch: base URL is mainnet but BINANCE_ENV is not 'mainnet'."
            )

        if self.BINANCE_ENV == "mainnet":
            warnings.append(
                "BINANCE_ENV=mainnet will trade REAL money for every started user session."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
