import pytest
from pydantic import ValidationError

from autolev.core.config import Settings
from autolev.core.errors import UnknownSettingError
from autolev.core.user_settings import UserSettings
from autolev.persistence.audit import Audit
from autolev.persistence.db import DB
from autolev.persistence.settings_store import SettingsStore
from autolev.persistence.trade_log import ClosedTrade, TradeLog
from autolev.risk.gate import CapitalGate
from autolev.risk.performance import PerformanceTracker
from autolev.exchange.binance.models import BalanceEntry


def test_settings_parse_lists_from_env(monkeypatch):
    monkeypatch.setenv("TRADE_SYMBOLS", "btcusdt, ethusdt")
    monkeypatch.setenv("BLACKLIST", '["xrpusdt"]')
    monkeypatch.setenv("MTF_TIMEFRAMES", "1h,4h")
    s = Settings()
    assert s.TRADE_SYMBOLS == ["BTCUSDT", "ETHUSDT"]
    assert s.BLACKLIST == ["XRPUSDT"]
    assert s.MTF_TIMEFRAMES == ["1h", "4h"]


def test_testnet_swaps_default_urls():
    s = Settings(BINANCE_ENV="testnet")
    assert "testnet" in s.BINANCE_FAPI_BASE_URL
    assert s.BINANCE_WS_URL.startswith("wss://stream.binancefuture.com")


def test_validate_runtime_collects_errors():
    s = Settings(BINANCE_ENV="testnet", RETRY_ATTEMPTS=0, MTF_TIMEFRAMES=["7m"], CANDLE_LIMIT=10)
    with pytest.raises(ValueError) as err:
        s.validate_runtime()
    msg = str(err.value)
    assert msg.startswith("Config validation failed:")
    assert "RETRY_ATTEMPTS" in msg and "MTF_TIMEFRAMES" in msg and "CANDLE_LIMIT" in msg


def test_validate_runtime_warns_on_mainnet():
    s = Settings(BINANCE_ENV="mainnet")
    assert any("REAL money" in w for w in s.validate_runtime())


def test_user_settings_defaults_and_validation():
    u = UserSettings()
    assert u.min_leverage == 25 and u.stop_loss_percent == 0.02
    with pytest.raises(ValidationError):
        UserSettings(timeframe="7m")
    with pytest.raises(ValidationError):
        UserSettings(min_leverage=50, max_leverage=20)
    with pytest.raises(ValidationError):
        UserSettings(take_profit1_percent=0.05, take_profit2_percent=0.04)
    with pytest.raises(ValidationError):
        UserSettings(leverage_boost=3)


def test_unknown_keys_in_document_are_rejected():
    with pytest.raises(UnknownSettingError) as err:
        UserSettings.from_document({"timeframe": "4h", "moon_mode": "true"})
    assert err.value.keys == ["moon_mode"]
    with pytest.raises(UnknownSettingError):
        UserSettings().merged({"bogus": 1})


def test_document_round_trip_keeps_types():
    u = UserSettings(hedging_enabled=True, favorite_symbols=["BTCUSDT", "ETHUSDT"], max_positions=5)
    doc = u.to_document()
    assert doc["hedging_enabled"] == "true"
    assert doc["favorite_symbols"] == "BTCUSDT,ETHUSDT"
    assert UserSettings.from_document(doc) == u


def test_settings_store(tmp_path):
    store = SettingsStore(DB(str(tmp_path / "a.db")))
    assert store.load("u1") == UserSettings()

    store.save("u1", UserSettings(timeframe="4h", max_positions=2))
    loaded = store.load("u1")
    assert loaded.timeframe == "4h" and loaded.max_positions == 2
    assert store.load("u2") == UserSettings()


def test_trade_log_feeds_performance(tmp_path):
    log = TradeLog(DB(str(tmp_path / "a.db")))
    returns = [0.1, -0.05] * 6
    for r in returns:
        log.record(ClosedTrade("u1", "BTCUSDT", "LONG", 100.0, 101.0, 1.0, 25, r * 4, r, "stop_loss"))

    assert log.recent_returns("u1", 5) == returns[-5:]
    summary = log.summary_since("u1", hours=1)
    assert summary["trades"] == 12 and summary["wins"] == 6

    # a fresh tracker picks the history up from the log
    tracker = PerformanceTracker(log, window=50)
    assert tracker.trade_count("u1") == 12
    assert tracker.ratio("u1") != 1.0
    assert PerformanceTracker(log).ratio("someone-else") == 1.0


def test_audit_writes_db_and_mirror(tmp_path):
    mirror = tmp_path / "logs" / "audit.jsonl"
    audit = Audit(DB(str(tmp_path / "a.db")), str(mirror))
    audit.event(event_type="POSITION_OPENED", user_id="u1", symbol="BTCUSDT", message="opened", details={"qty": 1})

    rows = audit.recent("u1")
    assert rows[0]["event_type"] == "POSITION_OPENED"
    assert rows[0]["details"] == {"qty": 1}
    assert "POSITION_OPENED" in mirror.read_text()


def test_capital_gate():
    gate = CapitalGate(min_available_fraction=0.5)
    ok = gate.can_open(BalanceEntry(asset="USDT", balance=100, availableBalance=60))
    assert ok.allowed and ok.available_fraction == pytest.approx(0.6)
    assert gate.can_open(BalanceEntry(asset="USDT", balance=100, availableBalance=40)).reason == "insufficient_available_capital"
    assert gate.can_open(BalanceEntry(asset="USDT", balance=0, availableBalance=0)).reason == "empty_wallet"
    assert gate.can_open(None).reason == "no_quote_balance"
