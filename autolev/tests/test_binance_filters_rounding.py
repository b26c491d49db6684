from decimal import Decimal
import pytest

from autolev.core.errors import TradeValidationError
from autolev.exchange.binance.filters import (
    extract_symbol_info,
    floor_to_step,
    is_on_grid,
)


@pytest.mark.parametrize(
    "qty,step,expected",
    [
        (0.01234, "0.001", "0.012"),
        (0.01299, "0.001", "0.012"),
        (1.999, "0.1", "1.9"),
        (10.0, "0.01", "10"),
        (12.345, "0.01", "12.34"),
    ],
)
def test_quantity_floors_to_step(qty, step, expected):
    out = floor_to_step(qty, step)
    assert out == Decimal(expected)
    assert is_on_grid(out, step)


@pytest.mark.parametrize(
    "price,tick,expected",
    [
        (43210.12, "0.1", "43210.1"),
        (43210.19, "0.1", "43210.1"),
        (123.4567, "0.01", "123.45"),
        (0.123456, "0.0001", "0.1234"),
    ],
)
def test_price_floors_to_tick(price, tick, expected):
    out = floor_to_step(price, tick)
    assert out == Decimal(expected)
    assert is_on_grid(out, tick)


@pytest.mark.parametrize("value", ["12.345", "0.00099", "7", "98765.4321"])
@pytest.mark.parametrize("step", ["0.01", "0.001", "1", "0.5"])
def test_floor_is_idempotent_and_never_rounds_up(value, step):
    once = floor_to_step(value, step)
    assert floor_to_step(once, step) == once
    assert once <= Decimal(value)
    assert is_on_grid(once, step)


def test_floor_rejects_non_positive_step():
    with pytest.raises(TradeValidationError):
        floor_to_step("1.0", "0")


def _exchange_info():
    return {
        "symbols": [
            {
                "symbol": "BTCUSDT",
                "status": "TRADING",
                "quoteAsset": "USDT",
                "filters": [
                    {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                    {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
                    {"filterType": "MIN_NOTIONAL", "notional": "100"},
                ],
            },
            {"symbol": "BROKENUSDT", "filters": [{"filterType": "PRICE_FILTER", "tickSize": "0.1"}]},
        ]
    }


def test_extract_symbol_info():
    info = extract_symbol_info(_exchange_info(), "btcusdt")
    assert info.symbol == "BTCUSDT"
    assert info.step_size == Decimal("0.001")
    assert info.tick_size == Decimal("0.10")
    assert info.min_notional == Decimal("100")


def test_missing_symbol_or_filter_is_a_validation_error():
    with pytest.raises(TradeValidationError):
        extract_symbol_info(_exchange_info(), "ETHUSDT")
    with pytest.raises(TradeValidationError):
        extract_symbol_info(_exchange_info(), "BROKENUSDT")
