"""
Typed records for every exchange payload the agent consumes.

Raw Binance JSON is parsed here, at the boundary; anything missing or
non-finite raises MalformedPayload instead of leaking NaN into the core.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Tuple, Type, TypeVar

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from autolev.core.errors import MalformedPayload

M = TypeVar("M", bound=BaseModel)


class _Record(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
        allow_inf_nan=False,
    )


def parse_record(model: Type[M], payload: Any) -> M:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayload(f"{model.__name__}: {e.errors()[:3]}") from e


def parse_records(model: Type[M], payload: Any) -> List[M]:
    if not isinstance(payload, list):
        raise MalformedPayload(f"{model.__name__}: expected a list, got {type(payload).__name__}")
    return [parse_record(model, item) for item in payload]


# ---------------- MARKET DATA ----------------


class Candle(_Record):
    open_time: int
    open: float = Field(gt=0)
    high: float = Field(gt=0)
    low: float = Field(gt=0)
    close: float = Field(gt=0)
    volume: float = Field(ge=0)
    close_time: int

    @model_validator(mode="after")
    def _check_range(self) -> "Candle":
        if self.low > self.high:
            raise ValueError("low above high")
        return self

    @classmethod
    def from_kline(cls, row: Any) -> "Candle":
        """
        Binance kline format:
        [openTime, open, high, low, close, volume, closeTime, ...]
        """
        if not isinstance(row, (list, tuple)) or len(row) < 7:
            raise MalformedPayload(f"kline row has unexpected shape: {row!r}")
        return parse_record(
            cls,
            {
                "open_time": row[0],
                "open": row[1],
                "high": row[2],
                "low": row[3],
                "close": row[4],
                "volume": row[5],
                "close_time": row[6],
            },
        )

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open


@dataclass(frozen=True)
class CandleSeries:
    symbol: str
    timeframe: str
    candles: Tuple[Candle, ...]

    @classmethod
    def from_klines(cls, symbol: str, timeframe: str, rows: Any) -> "CandleSeries":
        if not isinstance(rows, list):
            raise MalformedPayload(f"klines for {symbol}: expected a list")
        return cls(symbol, timeframe, tuple(Candle.from_kline(r) for r in rows))

    def __len__(self) -> int:
        return len(self.candles)

    @property
    def last(self) -> Candle:
        if not self.candles:
            raise MalformedPayload(f"empty candle series for {self.symbol}")
        return self.candles[-1]

    @property
    def closes(self) -> List[float]:
        return [c.close for c in self.candles]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "open": [c.open for c in self.candles],
                "high": [c.high for c in self.candles],
                "low": [c.low for c in self.candles],
                "close": [c.close for c in self.candles],
                "volume": [c.volume for c in self.candles],
            },
            index=pd.to_datetime([c.open_time for c in self.candles], unit="ms"),
        )


class BookLevel(_Record):
    price: float = Field(gt=0)
    qty: float = Field(ge=0)


class OrderBook(_Record):
    symbol: str
    bids: Tuple[BookLevel, ...]
    asks: Tuple[BookLevel, ...]

    @classmethod
    def from_depth(cls, symbol: str, payload: Any) -> "OrderBook":
        if not isinstance(payload, dict):
            raise MalformedPayload(f"depth for {symbol}: expected an object")

        def levels(rows):
            return [{"price": r[0], "qty": r[1]} for r in rows or [] if len(r) >= 2]

        return parse_record(
            cls,
            {
                "symbol": symbol,
                "bids": levels(payload.get("bids")),
                "asks": levels(payload.get("asks")),
            },
        )


# ---------------- ACCOUNT ----------------


class BalanceEntry(_Record):
    asset: str
    balance: float
    available_balance: float = Field(alias="availableBalance")
    cross_unrealized_pnl: float = Field(default=0.0, alias="crossUnPnl")


class PositionEntry(_Record):
    symbol: str
    position_amt: float = Field(alias="positionAmt")
    entry_price: float = Field(alias="entryPrice", ge=0)
    mark_price: float = Field(alias="markPrice", ge=0)
    leverage: int = 1
    position_side: str = Field(default="BOTH", alias="positionSide")
    unrealized_profit: float = Field(default=0.0, alias="unRealizedProfit")

    @model_validator(mode="after")
    def _check_open(self) -> "PositionEntry":
        if self.position_amt != 0 and self.entry_price <= 0:
            raise ValueError("open position without entry price")
        return self

    @property
    def is_open(self) -> bool:
        return abs(self.position_amt) > 1e-12

    @property
    def side(self) -> str:
        if self.position_side in ("LONG", "SHORT"):
            return self.position_side
        return "LONG" if self.position_amt > 0 else "SHORT"

    @property
    def quantity(self) -> float:
        return abs(self.position_amt)


@dataclass(frozen=True)
class AccountSnapshot:
    balances: Tuple[BalanceEntry, ...]
    positions: Tuple[PositionEntry, ...]

    def balance_for(self, asset: str) -> Optional[BalanceEntry]:
        for b in self.balances:
            if b.asset == asset:
                return b
        return None

    def positions_for(self, symbol: str) -> List[PositionEntry]:
        return [p for p in self.positions if p.symbol == symbol]

    @property
    def open_symbols(self) -> set[str]:
        return {p.symbol for p in self.positions}


class OrderResult(_Record):
    order_id: int = Field(alias="orderId")
    symbol: str
    status: str = "NEW"
    side: str = ""
    type: str = ""
    avg_price: float = Field(default=0.0, alias="avgPrice")
    executed_qty: float = Field(default=0.0, alias="executedQty")
    orig_qty: float = Field(default=0.0, alias="origQty")
    stop_price: float = Field(default=0.0, alias="stopPrice")


@dataclass(frozen=True)
class OrderParams:
    """Outgoing order; quantities and prices are already on the exchange grid."""

    symbol: str
    side: str  # BUY/SELL
    type: str  # MARKET/STOP_MARKET/TAKE_PROFIT_MARKET
    quantity: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    reduce_only: bool = False
    close_position: bool = False
    position_side: Optional[str] = None  # LONG/SHORT in dual-side mode

    def to_payload(self) -> dict:
        payload: dict = {
            "symbol": self.symbol.upper(),
            "side": self.side,
            "type": self.type,
        }
        if self.quantity is not None and not self.close_position:
            payload["quantity"] = self.quantity
        if self.stop_price is not None:
            payload["stopPrice"] = self.stop_price
            payload["workingType"] = "CONTRACT_PRICE"
        if self.close_position:
            payload["closePosition"] = True
        # reduceOnly is rejected in dual-side mode and alongside closePosition
        if self.reduce_only and not self.position_side and not self.close_position:
            payload["reduceOnly"] = True
        if self.position_side:
            payload["positionSide"] = self.position_side
        return payload
