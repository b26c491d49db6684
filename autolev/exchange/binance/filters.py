from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN

from autolev.core.errors import TradeValidationError


@dataclass(frozen=True)
class SymbolInfo:
    symbol: str
    step_size: Decimal
    min_qty: Decimal
    tick_size: Decimal
    min_notional: Decimal = Decimal("0")
    quote_asset: str = "USDT"
    status: str = "TRADING"
    max_leverage: int | None = None


def _get_filter(symbol_info: dict, filter_type: str) -> dict | None:
    for f in symbol_info.get("filters", []):
        if f.get("filterType") == filter_type:
            return f
    return None


def parse_symbol_info(raw: dict) -> SymbolInfo:
    """Build SymbolInfo from one entry of exchangeInfo["symbols"]."""
    symbol = str(raw.get("symbol") or "").upper()
    if not symbol:
        raise TradeValidationError("symbol entry without a name")

    # LOT_SIZE -> qty rules
    lot = _get_filter(raw, "LOT_SIZE")
    if not lot:
        raise TradeValidationError(f"LOT_SIZE filter not found for {symbol}")

    # PRICE_FILTER -> price tick rules
    price_filter = _get_filter(raw, "PRICE_FILTER")
    if not price_filter:
        raise TradeValidationError(f"PRICE_FILTER not found for {symbol}")

    min_notional = _get_filter(raw, "MIN_NOTIONAL") or {}

    try:
        step = Decimal(str(lot["stepSize"]))
        min_qty = Decimal(str(lot["minQty"]))
        tick = Decimal(str(price_filter["tickSize"]))
        notional = Decimal(str(min_notional.get("notional", "0")))
    except (KeyError, ArithmeticError) as e:
        raise TradeValidationError(f"bad filters for {symbol}: {e}") from e

    if step <= 0 or tick <= 0:
        raise TradeValidationError(f"non-positive step/tick for {symbol}")

    return SymbolInfo(
        symbol=symbol,
        step_size=step,
        min_qty=min_qty,
        tick_size=tick,
        min_notional=notional,
        quote_asset=str(raw.get("quoteAsset") or "USDT"),
        status=str(raw.get("status") or "TRADING"),
    )


def extract_symbol_info(exchange_info: dict, symbol: str) -> SymbolInfo:
    symbol = symbol.upper()
    for s in exchange_info.get("symbols", []):
        if s.get("symbol") == symbol:
            return parse_symbol_info(s)
    raise TradeValidationError(f"Symbol not found in exchangeInfo: {symbol}")


def _to_decimal(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def floor_to_step(value, step) -> Decimal:
    """
    Largest multiple of `step` that is <= value.
    Idempotent: floor_to_step(floor_to_step(x, s), s) == floor_to_step(x, s).
    """
    v = _to_decimal(value)
    s = _to_decimal(step)
    if s <= 0:
        raise TradeValidationError(f"step must be positive, got {step}")
    return (v / s).to_integral_value(rounding=ROUND_DOWN) * s


def is_on_grid(value, step) -> bool:
    v = _to_decimal(value)
    s = _to_decimal(step)
    return s > 0 and (v % s) == 0
