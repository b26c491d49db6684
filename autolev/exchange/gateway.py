from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from cachetools import TTLCache

from autolev.core.config import Settings, settings as default_settings
from autolev.core.errors import MalformedPayload, TradeValidationError
from autolev.exchange.binance.client import BinanceFuturesClient
from autolev.exchange.binance.filters import SymbolInfo, extract_symbol_info, is_on_grid
from autolev.exchange.binance.models import (
    AccountSnapshot,
    BalanceEntry,
    CandleSeries,
    OrderBook,
    OrderParams,
    OrderResult,
    PositionEntry,
    parse_record,
    parse_records,
)
from autolev.exchange.rate_limit import RateLimiter
from autolev.exchange.retry import Outcome, call_with_retry

log = logging.getLogger("autolev.gateway")

T = TypeVar("T")

PUBLIC_KEY = "public"
_EXCHANGE_INFO = "__exchange_info__"


@dataclass(frozen=True)
class Credentials:
    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        return f"Credentials(api_key={self.api_key[:4]}…)"


class MarketGateway:
    """
    Single entry point for everything that talks to the exchange.

    - every call spends one unit of the caller's rate budget (public calls
      share one budget), retried on transient failures
    - candle series and symbol metadata are served from TTL+LRU caches
    - responses are parsed into typed records before they leave this class
    """

    def __init__(
        self,
        *,
        cfg: Settings | None = None,
        client_factory: Callable[[Optional[Credentials]], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cfg = cfg or default_settings
        self._client_factory = client_factory or self._default_client
        self._clients: Dict[str, Any] = {}
        self._sleep = sleep

        self.limiter = RateLimiter(
            self.cfg.RATE_LIMIT_CALLS_PER_WINDOW,
            self.cfg.RATE_LIMIT_WINDOW_SECONDS,
            clock=clock,
            sleep=sleep,
        )

        cap, ttl = self.cfg.CACHE_MAX_ENTRIES, self.cfg.CACHE_TTL_SECONDS
        self._candles: TTLCache = TTLCache(maxsize=cap, ttl=ttl, timer=clock)
        self._symbols: TTLCache = TTLCache(maxsize=cap, ttl=ttl, timer=clock)
        self._brackets: TTLCache = TTLCache(maxsize=cap, ttl=ttl, timer=clock)

    # ---------------- INTERNAL HELPERS ----------------

    def _default_client(self, creds: Optional[Credentials]) -> BinanceFuturesClient:
        return BinanceFuturesClient(
            api_key=creds.api_key if creds else "",
            api_secret=creds.api_secret if creds else "",
            base_url=self.cfg.BINANCE_FAPI_BASE_URL,
            recv_window=self.cfg.BINANCE_RECV_WINDOW,
            timeout=self.cfg.HTTP_TIMEOUT_SECONDS,
        )

    def _client(self, creds: Optional[Credentials]):
        key = creds.api_key if creds else PUBLIC_KEY
        client = self._clients.get(key)
        if client is None:
            client = self._clients[key] = self._client_factory(creds)
        return client

    def forget(self, creds: Credentials) -> None:
        """Drop the client bound to these credentials (e.g. on re-registration)."""
        self._clients.pop(creds.api_key, None)

    async def _call(self, creds: Optional[Credentials], fn: Callable[[Any], T], what: str) -> T:
        client = self._client(creds)
        budget_key = creds.api_key if creds else PUBLIC_KEY

        async def once():
            await self.limiter.acquire(budget_key)
            return await asyncio.to_thread(fn, client)

        result = await call_with_retry(
            once,
            attempts=self.cfg.RETRY_ATTEMPTS,
            delay=self.cfg.RETRY_DELAY_SECONDS,
            sleep=self._sleep,
        )
        if result.outcome is not Outcome.SUCCESS:
            log.warning("%s failed (%s): %s", what, result.outcome.value, result.error)
        return result.unwrap()

    # ---------------- MARKET DATA (cached) ----------------

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int | None = None) -> CandleSeries:
        limit = int(limit or self.cfg.CANDLE_LIMIT)
        key = (symbol.upper(), timeframe, limit)
        cached = self._candles.get(key)
        if cached is not None:
            return cached

        rows = await self._call(None, lambda c: c.klines(symbol, timeframe, limit), f"klines {symbol} {timeframe}")
        series = CandleSeries.from_klines(symbol.upper(), timeframe, rows)
        self._candles[key] = series
        return series

    async def fetch_exchange_info(self) -> dict:
        cached = self._symbols.get(_EXCHANGE_INFO)
        if cached is not None:
            return cached
        info = await self._call(None, lambda c: c.exchange_info(), "exchangeInfo")
        if not isinstance(info, dict) or not isinstance(info.get("symbols"), list):
            raise MalformedPayload("exchangeInfo without symbols list")
        self._symbols[_EXCHANGE_INFO] = info
        return info

    async def list_symbols(self) -> List[str]:
        """Tradable perpetual contracts quoted in the configured asset."""
        info = await self.fetch_exchange_info()
        out = []
        for s in info["symbols"]:
            if s.get("status") != "TRADING":
                continue
            if s.get("quoteAsset") != self.cfg.QUOTE_ASSET:
                continue
            if s.get("contractType", "PERPETUAL") != "PERPETUAL":
                continue
            out.append(str(s.get("symbol")))
        return out

    async def fetch_symbol_info(self, symbol: str, credentials: Credentials | None = None) -> SymbolInfo:
        sym = symbol.upper()
        info = self._symbols.get(sym)
        if info is None:
            info = extract_symbol_info(await self.fetch_exchange_info(), sym)
            self._symbols[sym] = info
        if credentials is not None:
            info = replace(info, max_leverage=await self.fetch_max_leverage(credentials, sym))
        return info

    async def fetch_max_leverage(self, credentials: Credentials, symbol: str) -> int:
        sym = symbol.upper()
        key = (credentials.api_key, sym)
        cached = self._brackets.get(key)
        if cached is not None:
            return cached

        payload = await self._call(credentials, lambda c: c.leverage_bracket(sym), f"leverageBracket {sym}")
        entries = payload if isinstance(payload, list) else [payload]
        for entry in entries:
            if not isinstance(entry, dict) or entry.get("symbol", sym) != sym:
                continue
            brackets = entry.get("brackets") or []
            try:
                max_lev = max(int(b["initialLeverage"]) for b in brackets)
            except (KeyError, TypeError, ValueError) as e:
                raise MalformedPayload(f"leverage brackets for {sym}: {e}") from e
            self._brackets[key] = max_lev
            return max_lev
        raise MalformedPayload(f"no leverage brackets returned for {sym}")

    async def fetch_order_book(self, symbol: str, limit: int = 20) -> OrderBook:
        payload = await self._call(None, lambda c: c.depth(symbol, limit), f"depth {symbol}")
        return OrderBook.from_depth(symbol.upper(), payload)

    async def fetch_price(self, symbol: str) -> float:
        price = await self._call(None, lambda c: c.last_price(symbol), f"price {symbol}")
        if not price or price <= 0:
            raise TradeValidationError(f"invalid price for {symbol}: {price}")
        return float(price)

    # ---------------- ACCOUNT ----------------

    async def get_account(self, credentials: Credentials) -> AccountSnapshot:
        balances = parse_records(
            BalanceEntry,
            await self._call(credentials, lambda c: c.account_balance(), "balance"),
        )
        positions = parse_records(
            PositionEntry,
            await self._call(credentials, lambda c: c.position_risk_all(), "positionRisk"),
        )
        return AccountSnapshot(
            balances=tuple(balances),
            positions=tuple(p for p in positions if p.is_open),
        )

    async def get_position_mode(self, credentials: Credentials) -> bool:
        return await self._call(credentials, lambda c: c.position_mode(), "positionSide/dual")

    async def set_position_mode(self, credentials: Credentials, dual_side: bool) -> None:
        await self._call(credentials, lambda c: c.set_position_mode(dual_side), "set positionSide/dual")

    async def set_leverage(self, credentials: Credentials, symbol: str, leverage: int) -> None:
        await self._call(credentials, lambda c: c.set_leverage(symbol, leverage), f"leverage {symbol}")

    # ---------------- ORDERS ----------------

    async def submit_order(self, credentials: Credentials, params: OrderParams) -> OrderResult:
        info = await self.fetch_symbol_info(params.symbol)
        validate_order(params, info)
        payload = params.to_payload()
        raw = await self._call(credentials, lambda c: c.place_order(payload), f"order {params.type} {params.symbol}")
        result = parse_record(OrderResult, raw)
        log.info(
            "order %s %s %s qty=%s stop=%s -> id=%s status=%s",
            params.symbol, params.side, params.type, params.quantity, params.stop_price,
            result.order_id, result.status,
        )
        return result

    async def cancel_order(self, credentials: Credentials, symbol: str, order_id: int) -> None:
        await self._call(credentials, lambda c: c.cancel_order(symbol, order_id), f"cancel {symbol}#{order_id}")

    async def cancel_all_orders(self, credentials: Credentials, symbol: str) -> None:
        await self._call(credentials, lambda c: c.cancel_all_orders(symbol), f"cancelAll {symbol}")


def validate_order(params: OrderParams, info: SymbolInfo) -> None:
    """Off-grid or below-minimum values are rejected, never silently fixed."""
    if params.quantity is not None and not params.close_position:
        if params.quantity <= 0:
            raise TradeValidationError(f"{params.symbol}: quantity must be positive")
        if not is_on_grid(params.quantity, info.step_size):
            raise TradeValidationError(
                f"{params.symbol}: quantity {params.quantity} not a multiple of step {info.step_size}"
            )
        if params.quantity < info.min_qty:
            raise TradeValidationError(
                f"{params.symbol}: quantity {params.quantity} below min {info.min_qty}"
            )
    elif params.type == "MARKET":
        raise TradeValidationError(f"{params.symbol}: market order without quantity")

    if params.stop_price is not None:
        if params.stop_price <= 0:
            raise TradeValidationError(f"{params.symbol}: stop price must be positive")
        if not is_on_grid(params.stop_price, info.tick_size):
            raise TradeValidationError(
                f"{params.symbol}: stop price {params.stop_price} not a multiple of tick {info.tick_size}"
            )
