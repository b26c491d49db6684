# autolev/symbols/sizing.py
from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict

from autolev.exchange.binance.filters import SymbolInfo, floor_to_step

# ATR-normalised volatility factor bounds
TARGET_ATR_PCT = 0.02
VOL_FACTOR_MIN = 0.5
VOL_FACTOR_MAX = 1.5

# the performance ratio may scale size by at most this much either way
RATIO_MIN = 0.5
RATIO_MAX = 1.5


def _d(x: Any) -> Decimal:
    return Decimal(str(x))


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def volatility_factor(atr_pct: float) -> float:
    """Calmer symbols get a larger allocation, wild ones a smaller one."""
    if not math.isfinite(atr_pct) or atr_pct <= 0:
        return 1.0
    return _clamp(TARGET_ATR_PCT / atr_pct, VOL_FACTOR_MIN, VOL_FACTOR_MAX)


def position_fraction(base_fraction: float, performance_ratio: float, atr_pct: float) -> float:
    """Share of available capital committed as margin to one position."""
    ratio = performance_ratio if math.isfinite(performance_ratio) else 1.0
    frac = base_fraction * _clamp(ratio, RATIO_MIN, RATIO_MAX) * volatility_factor(atr_pct)
    return _clamp(frac, 0.0, 1.0)


@dataclass
class SizeResult:
    qty: Decimal
    notional: float
    min_margin_required: float
    reason: str
    details: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.reason == "ok"


def size_from_budget(
    *,
    price: float,
    usdt_margin: float,
    leverage: int,
    info: SymbolInfo,
) -> SizeResult:
    """
    Input budget is MARGIN (USDT); notional = margin * leverage.
    Quantity is floored to the symbol's step size.
    """
    px = _d(price)
    lev = max(1, int(leverage))
    budget = _d(usdt_margin)
    min_notional = info.min_notional
    details: Dict[str, Any] = {
        "symbol": info.symbol,
        "price": float(price),
        "usdt_margin": float(usdt_margin),
        "leverage": lev,
    }

    if not math.isfinite(float(price)) or px <= 0:
        return SizeResult(Decimal("0"), 0.0, 0.0, "invalid_price", details)

    raw_qty = budget * _d(lev) / px
    qty = floor_to_step(raw_qty, info.step_size)
    details.update({"raw_qty": str(raw_qty), "qty_rounded": str(qty), "step_size": str(info.step_size)})

    if qty <= 0 or qty < info.min_qty:
        min_margin = info.min_qty * px / _d(lev)
        details["min_qty"] = str(info.min_qty)
        return SizeResult(Decimal("0"), 0.0, float(min_margin), "qty_below_min_qty", details)

    notional = qty * px
    if min_notional > 0 and notional < min_notional:
        details["min_notional_required"] = float(min_notional)
        return SizeResult(
            Decimal("0"), float(notional), float(min_notional / _d(lev)), "below_min_notional", details
        )

    details["notional"] = float(notional)
    return SizeResult(qty, float(notional), float(min_notional / _d(lev)), "ok", details)
