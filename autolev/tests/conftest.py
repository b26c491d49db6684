import itertools
from dataclasses import replace
from decimal import Decimal

import pytest

from autolev.core.config import Settings
from autolev.core.errors import ExchangeError, InsufficientFunds
from autolev.exchange.binance.filters import SymbolInfo
from autolev.exchange.binance.models import AccountSnapshot, BalanceEntry, OrderResult, PositionEntry


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    """
    Ensure tests never hit live trading accidentally.
    """
    monkeypatch.setenv("BINANCE_ENV", "testnet")
    monkeypatch.setenv("TRADE_SYMBOLS", "BTCUSDT,ETHUSDT")
    monkeypatch.setenv("STREAM_ENABLED", "false")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        DB_PATH=str(tmp_path / "agent.db"),
        AUDIT_JSONL_PATH="",
        STREAM_ENABLED=False,
        RETRY_DELAY_SECONDS=0.0,
    )


class FakeExchange:
    """
    In-memory stand-in for MarketGateway. Market orders fill instantly at
    the current mark price; protective orders only get recorded.
    """

    def __init__(self, *, balance=1000.0, available=1000.0, dual_side=False):
        self.info = SymbolInfo(
            symbol="BTCUSDT",
            step_size=Decimal("0.001"),
            min_qty=Decimal("0.001"),
            tick_size=Decimal("0.1"),
            min_notional=Decimal("5"),
        )
        self.balance = balance
        self.available = available
        self.dual_side = dual_side
        self.mark = {}
        self.legs = {}  # (symbol, side) -> [qty, entry, leverage]
        self.orders = []
        self.cancelled = []
        self.fail_symbols = set()
        self.insufficient = False
        self.tradable = ["BTCUSDT", "ETHUSDT", "SOLUSDT"]
        self.max_leverage = {"BTCUSDT": 125, "ETHUSDT": 100, "SOLUSDT": 20}
        self._ids = itertools.count(1)

    # test helpers

    def open(self, symbol, side, qty, entry, leverage=25):
        self.legs[(symbol, side)] = [float(qty), float(entry), leverage]
        self.mark.setdefault(symbol, float(entry))

    def qty(self, symbol, side):
        leg = self.legs.get((symbol, side))
        return leg[0] if leg else 0.0

    def orders_of(self, type_, symbol=None):
        return [o for o in self.orders if o.type == type_ and (symbol is None or o.symbol == symbol)]

    # gateway surface

    async def fetch_symbol_info(self, symbol, credentials=None):
        info = replace(self.info, symbol=symbol)
        if credentials is not None:
            info = replace(info, max_leverage=self.max_leverage.get(symbol))
        return info

    async def fetch_max_leverage(self, credentials, symbol):
        if symbol not in self.max_leverage:
            raise ExchangeError(f"no brackets for {symbol}")
        return self.max_leverage[symbol]

    async def list_symbols(self):
        return list(self.tradable)

    async def get_account(self, credentials):
        positions = []
        for (symbol, side), (qty, entry, lev) in self.legs.items():
            positions.append(
                PositionEntry(
                    symbol=symbol,
                    positionAmt=qty if side == "LONG" else -qty,
                    entryPrice=entry,
                    markPrice=self.mark.get(symbol, entry),
                    leverage=lev,
                    positionSide=side if self.dual_side else "BOTH",
                )
            )
        balances = (BalanceEntry(asset="USDT", balance=self.balance, availableBalance=self.available),)
        return AccountSnapshot(balances=balances, positions=tuple(positions))

    async def get_position_mode(self, credentials):
        return self.dual_side

    async def set_position_mode(self, credentials, dual_side):
        self.dual_side = dual_side

    async def set_leverage(self, credentials, symbol, leverage):
        self.last_leverage = (symbol, leverage)

    async def submit_order(self, credentials, params):
        if params.symbol in self.fail_symbols:
            raise ExchangeError(f"{params.symbol} rejected", status=400, code=-1111)
        if self.insufficient and params.type == "MARKET" and not params.reduce_only:
            raise InsufficientFunds("Margin is insufficient.", status=400, code=-2019)

        self.orders.append(params)
        if params.type == "MARKET":
            self._fill(params)
        return OrderResult(orderId=next(self._ids), symbol=params.symbol, status="NEW", type=params.type)

    def _fill(self, params):
        if params.position_side:
            side = params.position_side
        else:
            buying = params.side == "BUY"
            side = "LONG" if buying != params.reduce_only else "SHORT"
        key = (params.symbol, side)
        qty = float(params.quantity)
        price = self.mark.get(params.symbol, 100.0)
        if params.reduce_only:
            leg = self.legs.get(key)
            if leg is None:
                return
            leg[0] -= qty
            if leg[0] <= 1e-9:
                del self.legs[key]
        else:
            lev = getattr(self, "last_leverage", (None, 25))[1]
            self.legs[key] = [qty, price, lev]

    async def cancel_order(self, credentials, symbol, order_id):
        self.cancelled.append((symbol, order_id))

    async def cancel_all_orders(self, credentials, symbol):
        self.cancelled.append((symbol, "ALL"))


@pytest.fixture
def exchange():
    return FakeExchange()
