from decimal import Decimal

import pytest

from autolev.exchange.binance.filters import SymbolInfo
from autolev.symbols.leverage import is_leverage_eligible, select_leverage
from autolev.symbols.sizing import position_fraction, size_from_budget, volatility_factor
from autolev.symbols.universe import eligible_symbols, parse_symbols


def _info(**kw):
    base = dict(
        symbol="BTCUSDT",
        step_size=Decimal("0.001"),
        min_qty=Decimal("0.001"),
        tick_size=Decimal("0.1"),
        min_notional=Decimal("5"),
    )
    base.update(kw)
    return SymbolInfo(**base)


def test_size_from_budget_floors_to_step():
    res = size_from_budget(price=30000.0, usdt_margin=10.0, leverage=25, info=_info())
    assert res.ok
    # 10 * 25 / 30000 = 0.008333..
    assert res.qty == Decimal("0.008")
    assert res.notional == pytest.approx(240.0)


def test_size_below_min_qty():
    res = size_from_budget(price=30000.0, usdt_margin=1.0, leverage=1, info=_info())
    assert not res.ok
    assert res.reason == "qty_below_min_qty"
    assert res.qty == 0
    assert res.min_margin_required == pytest.approx(30.0)


def test_size_below_min_notional():
    res = size_from_budget(price=1.0, usdt_margin=0.1, leverage=10, info=_info())
    assert res.reason == "below_min_notional"


def test_size_invalid_price():
    assert size_from_budget(price=0.0, usdt_margin=10.0, leverage=10, info=_info()).reason == "invalid_price"


def test_volatility_factor_is_bounded():
    assert volatility_factor(0.02) == pytest.approx(1.0)
    assert volatility_factor(0.001) == 1.5
    assert volatility_factor(0.5) == 0.5
    assert volatility_factor(0.0) == 1.0
    assert volatility_factor(float("nan")) == 1.0


def test_position_fraction_scales_with_ratio():
    assert position_fraction(0.05, 1.0, 0.02) == pytest.approx(0.05)
    assert position_fraction(0.05, 10.0, 0.02) == pytest.approx(0.075)
    assert position_fraction(0.05, -3.0, 0.02) == pytest.approx(0.025)
    assert position_fraction(0.05, float("inf"), 0.02) == pytest.approx(0.05)


@pytest.mark.parametrize(
    "score,expected",
    [(0.0, 25), (0.5, 50), (1.0, 125), (2.0, 125), (float("nan"), 25)],
)
def test_select_leverage_quadratic(score, expected):
    assert select_leverage(score, min_leverage=25, symbol_max=125) == expected


def test_select_leverage_caps():
    assert select_leverage(1.0, min_leverage=25, symbol_max=125, user_max=50) == 50
    assert select_leverage(1.0, min_leverage=25, symbol_max=20) is None
    assert select_leverage(1.0, min_leverage=25, symbol_max=125, user_max=20) is None
    assert select_leverage(0.0, min_leverage=25, symbol_max=125, user_max=25) == 25


def test_leverage_floor_eligibility():
    assert is_leverage_eligible(25, 25)
    assert not is_leverage_eligible(20, 25)
    assert not is_leverage_eligible(None, 25)


def test_parse_symbols_dedupes_and_uppercases():
    assert parse_symbols(" btcusdt, ETHUSDT,btcusdt ,,") == ["BTCUSDT", "ETHUSDT"]
    assert parse_symbols(["a", "b", "c"], max_symbols=2) == ["A", "B"]


def test_eligible_symbols_filters():
    out = eligible_symbols(
        candidates=["BTCUSDT", "ETHUSDT", "CRVUSDT", "SOLUSDT", "NOPEUSDT"],
        tradable=["BTCUSDT", "ETHUSDT", "CRVUSDT", "SOLUSDT"],
        held={"ETHUSDT"},
        blacklist=["CRVUSDT"],
        in_flight={"SOLUSDT"},
    )
    assert out == ["BTCUSDT"]
