from __future__ import annotations


class ExchangeError(Exception):
    """Exchange rejected the request. Not retried."""

    def __init__(self, message: str, *, status: int | None = None, code: int | None = None):
        super().__init__(message)
        self.status = status
        self.code = code


class TransientExchangeError(ExchangeError):
    """Network failure, timeout, rate-limit ban or 5xx. Safe to retry."""


class InsufficientFunds(ExchangeError):
    """Margin is insufficient. Skip and reschedule, never retry."""


class TradeValidationError(Exception):
    """
    The operation cannot proceed with the data at hand:
      - symbol info missing
      - stale / invalid price
      - quantity below step or off-grid price/quantity
    Aborts the single operation.
    """


class MalformedPayload(TradeValidationError):
    """Exchange response did not match the expected record shape."""


class UnknownSettingError(ValueError):
    def __init__(self, keys):
        self.keys = sorted(keys)
        super().__init__(f"Unknown setting(s): {', '.join(self.keys)}")
