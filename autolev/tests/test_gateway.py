import asyncio
from decimal import Decimal

import pytest

from autolev.core.errors import ExchangeError, MalformedPayload, TradeValidationError, TransientExchangeError
from autolev.exchange.binance.models import OrderParams
from autolev.exchange.gateway import Credentials, MarketGateway, validate_order
from autolev.exchange.rate_limit import RateLimiter
from autolev.exchange.retry import Outcome, call_with_retry


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class _FakeClient:
    def __init__(self):
        self.calls = []
        self.failures = []

    def _hit(self, name):
        self.calls.append(name)
        if self.failures:
            raise self.failures.pop(0)

    def klines(self, symbol, interval, limit):
        self._hit("klines")
        return [
            [i * 60_000, "100", "101", "99", str(100 + i), "10", i * 60_000 + 59_999]
            for i in range(limit)
        ]

    def exchange_info(self):
        self._hit("exchange_info")
        return {
            "symbols": [
                {
                    "symbol": "BTCUSDT",
                    "status": "TRADING",
                    "quoteAsset": "USDT",
                    "contractType": "PERPETUAL",
                    "filters": [
                        {"filterType": "PRICE_FILTER", "tickSize": "0.1"},
                        {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
                    ],
                },
                {"symbol": "ETHBTC", "status": "TRADING", "quoteAsset": "BTC", "filters": []},
                {"symbol": "OLDUSDT", "status": "SETTLING", "quoteAsset": "USDT", "filters": []},
            ]
        }

    def leverage_bracket(self, symbol):
        self._hit("leverage_bracket")
        return [{"symbol": symbol, "brackets": [{"initialLeverage": 125}, {"initialLeverage": 50}]}]

    def account_balance(self):
        self._hit("balance")
        return [{"asset": "USDT", "balance": "100", "availableBalance": "80"}]

    def position_risk_all(self):
        self._hit("positions")
        return [
            {"symbol": "BTCUSDT", "positionAmt": "0.010", "entryPrice": "30000", "markPrice": "30100", "leverage": "25"},
            {"symbol": "ETHUSDT", "positionAmt": "0", "entryPrice": "0", "markPrice": "2000"},
        ]


def _gateway(cfg, client, clock=None):
    clock = clock or _Clock()

    async def no_sleep(_):
        return None

    gw = MarketGateway(cfg=cfg, client_factory=lambda creds: client, clock=clock, sleep=no_sleep)
    return gw, clock


def test_candles_are_cached_until_ttl(cfg):
    client = _FakeClient()
    gw, clock = _gateway(cfg, client)

    first = asyncio.run(gw.fetch_candles("BTCUSDT", "1h", limit=40))
    again = asyncio.run(gw.fetch_candles("btcusdt", "1h", limit=40))
    assert again is first
    assert client.calls == ["klines"]

    clock.now += cfg.CACHE_TTL_SECONDS + 1
    asyncio.run(gw.fetch_candles("BTCUSDT", "1h", limit=40))
    assert client.calls == ["klines", "klines"]


def test_cache_evicts_least_recently_used(cfg):
    cfg = cfg.model_copy(update={"CACHE_MAX_ENTRIES": 2})
    client = _FakeClient()
    gw, _ = _gateway(cfg, client)

    asyncio.run(gw.fetch_candles("BTCUSDT", "1h", limit=40))
    asyncio.run(gw.fetch_candles("BTCUSDT", "4h", limit=40))
    # touch 1h so 4h becomes the oldest
    asyncio.run(gw.fetch_candles("BTCUSDT", "1h", limit=40))
    asyncio.run(gw.fetch_candles("BTCUSDT", "1d", limit=40))
    assert len(client.calls) == 3

    asyncio.run(gw.fetch_candles("BTCUSDT", "1h", limit=40))
    assert len(client.calls) == 3
    asyncio.run(gw.fetch_candles("BTCUSDT", "4h", limit=40))
    assert len(client.calls) == 4


def test_list_symbols_and_symbol_info(cfg):
    client = _FakeClient()
    gw, _ = _gateway(cfg, client)

    assert asyncio.run(gw.list_symbols()) == ["BTCUSDT"]
    info = asyncio.run(gw.fetch_symbol_info("BTCUSDT", Credentials("k", "s")))
    assert info.max_leverage == 125
    assert client.calls.count("exchange_info") == 1


def test_account_snapshot_is_typed(cfg):
    client = _FakeClient()
    gw, _ = _gateway(cfg, client)

    account = asyncio.run(gw.get_account(Credentials("k", "s")))
    assert account.balance_for("USDT").available_balance == 80.0
    assert account.open_symbols == {"BTCUSDT"}
    pos = account.positions_for("BTCUSDT")[0]
    assert pos.side == "LONG" and pos.quantity == pytest.approx(0.01)


def test_transient_failures_are_retried(cfg):
    client = _FakeClient()
    client.failures = [TransientExchangeError("503"), TransientExchangeError("503")]
    gw, _ = _gateway(cfg, client)

    asyncio.run(gw.fetch_candles("BTCUSDT", "1h", limit=40))
    assert client.calls == ["klines"] * 3


def test_gives_up_after_three_attempts(cfg):
    client = _FakeClient()
    client.failures = [TransientExchangeError("timeout")] * 3
    gw, _ = _gateway(cfg, client)

    with pytest.raises(TransientExchangeError):
        asyncio.run(gw.fetch_candles("BTCUSDT", "1h", limit=40))
    assert len(client.calls) == 3


def test_fatal_error_is_not_retried(cfg):
    client = _FakeClient()
    client.failures = [ExchangeError("bad symbol", status=400, code=-1121)]
    gw, _ = _gateway(cfg, client)

    with pytest.raises(ExchangeError):
        asyncio.run(gw.fetch_candles("BTCUSDT", "1h", limit=40))
    assert client.calls == ["klines"]


def test_calls_spend_the_rate_budget(cfg):
    client = _FakeClient()
    gw, _ = _gateway(cfg, client)
    creds = Credentials("key-1", "s")

    asyncio.run(gw.get_account(creds))
    assert gw.limiter.used("key-1") == 2
    assert gw.limiter.used("public") == 0


def test_call_with_retry_returns_result_type():
    async def no_sleep(_):
        return None

    async def boom():
        raise TransientExchangeError("again")

    result = asyncio.run(call_with_retry(boom, attempts=2, delay=0, sleep=no_sleep))
    assert result.outcome is Outcome.RETRYABLE
    with pytest.raises(TransientExchangeError):
        result.unwrap()


def test_rate_limiter_suspends_the_extra_call():
    clock = _Clock()
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)
        clock.now += seconds

    limiter = RateLimiter(3, 60.0, clock=clock, sleep=fake_sleep)

    async def run():
        for _ in range(3):
            await limiter.acquire("k")
        assert slept == []
        clock.now = 10.0
        await limiter.acquire("k")

    asyncio.run(run())
    assert slept == [50.0]
    assert limiter.used("k") == 1


def test_rate_limiter_keys_are_independent():
    clock = _Clock()

    async def fail_sleep(seconds):
        raise AssertionError("should not wait")

    limiter = RateLimiter(1, 60.0, clock=clock, sleep=fail_sleep)

    async def run():
        await limiter.acquire("a")
        await limiter.acquire("b")

    asyncio.run(run())


def test_validate_order_rejects_off_grid_values(cfg):
    client = _FakeClient()
    gw, _ = _gateway(cfg, client)
    info = asyncio.run(gw.fetch_symbol_info("BTCUSDT"))

    with pytest.raises(TradeValidationError):
        validate_order(OrderParams("BTCUSDT", "BUY", "MARKET", quantity=Decimal("0.0015")), info)
    with pytest.raises(TradeValidationError):
        validate_order(
            OrderParams("BTCUSDT", "SELL", "STOP_MARKET", stop_price=Decimal("100.05"), close_position=True),
            info,
        )
    validate_order(OrderParams("BTCUSDT", "BUY", "MARKET", quantity=Decimal("0.002")), info)


def test_malformed_payload_is_rejected(cfg):
    client = _FakeClient()
    client.klines = lambda symbol, interval, limit: [[0, "NaN", "1", "1", "1", "1", 1]]
    gw, _ = _gateway(cfg, client)

    with pytest.raises(MalformedPayload):
        asyncio.run(gw.fetch_candles("BTCUSDT", "1h", limit=1))
