"""
Tests for the risk manager: gate, sizing, recording, VaR and persistence.
"""
from unittest.mock import MagicMock

import pytest

from sniperdesk.services.persistence.state_store import RISK_STATE_KEY, JsonFileStateStore
from sniperdesk.services.risk.risk_manager import (
    PositionRequest,
    RiskConfig,
    RiskManager,
    TradeRecord,
    migrate_risk_state,
)


@pytest.fixture
def risk(clock):
    return RiskManager(RiskConfig(), clock=clock)


def _trade(pnl_percent, result=None, **kwargs):
    result = result or ("win" if pnl_percent > 0 else "loss")
    return TradeRecord(symbol="BTCUSDT", direction="long", pnl_percent=pnl_percent,
                       result=result, **kwargs)


def test_fresh_state_allows_trading(risk):
    gate = risk.check_trading_allowed()
    assert gate.allowed
    assert gate.reason is None


def test_kelly_clamped(risk):
    # full Kelly 0.4, quarter 0.1, capped at 2%
    assert risk.calculate_kelly_size(0.6, 2.0, 1.0) == pytest.approx(0.02)
    assert risk.calculate_kelly_size(0.3, 1.0, 1.0) == 0.0
    # no edge at even odds
    assert risk.calculate_kelly_size(0.5, 1.0, 1.0) == 0.0
    assert risk.calculate_kelly_size(0.6, 2.0, 0.0) == 0.0


def test_kelly_inside_cap():
    risk = RiskManager(RiskConfig(max_risk_per_trade=10))
    # (0.55*1 - 0.45) / 1 * 0.25
    assert risk.calculate_kelly_size(0.55, 1.0, 1.0) == pytest.approx(0.025)


def test_position_size_capped_at_quarter_balance(risk):
    size = risk.calculate_position_size(PositionRequest(
        account_balance=10000, entry_price=100, stop_loss_price=98, confidence=1.0))

    assert size.allowed
    assert size.risk_percent == 2.0
    assert size.risk_amount == 200.0
    assert size.position_value == 2500.0
    assert size.quantity == 25.0
    assert size.leverage == 4
    assert size.adjustments["confidence"] == 1.0


def test_position_size_volatility_adjustment(risk):
    size = risk.calculate_position_size(PositionRequest(
        account_balance=10000, entry_price=100, stop_loss_price=90,
        confidence=1.0, current_volatility=4.0))
    assert size.adjustments["volatility"] == 0.5
    assert size.risk_percent == 1.0


def test_position_size_rejects_zero_stop(risk):
    size = risk.calculate_position_size(PositionRequest(
        account_balance=10000, entry_price=100, stop_loss_price=100))
    assert not size.allowed
    assert "Stop loss" in size.reason


def test_position_size_with_explicit_kelly_inputs(risk):
    size = risk.calculate_position_size(PositionRequest(
        account_balance=10000, entry_price=100, stop_loss_price=90, confidence=1.0,
        win_rate=0.55, avg_win=1.0, avg_loss=1.0))
    # quarter Kelly 2.5% is clamped to the 2% per-trade cap
    assert size.adjustments["kelly"] == 2.0
    assert size.risk_percent == 2.0


def test_position_size_kelly_below_cap():
    risk = RiskManager(RiskConfig(max_risk_per_trade=10))
    size = risk.calculate_position_size(PositionRequest(
        account_balance=10000, entry_price=100, stop_loss_price=90, confidence=1.0,
        win_rate=0.55, avg_win=1.0, avg_loss=1.0))
    assert size.adjustments["kelly"] == 2.5
    assert size.risk_percent == pytest.approx(2.5)


def test_drawdown_gate(risk):
    risk.record_trade(_trade(-1.0, pnl=-1600.0, account_balance=8400.0))

    assert risk.state.current_drawdown == pytest.approx(16.0)
    gate = risk.check_trading_allowed()
    assert not gate.allowed
    assert "Max drawdown" in gate.reason

    size = risk.calculate_position_size(PositionRequest(
        account_balance=8400, entry_price=100, stop_loss_price=98))
    assert not size.allowed


def test_drawdown_reduces_size(risk, clock):
    risk.record_trade(_trade(-1.0, account_balance=9000.0))
    clock.advance(120)
    size = risk.calculate_position_size(PositionRequest(
        account_balance=9000, entry_price=100, stop_loss_price=90, confidence=1.0))
    # 1 - 10/15
    assert size.adjustments["drawdown"] == pytest.approx(0.33)


def test_daily_loss_gate(risk, clock):
    risk.record_trade(_trade(-3.0))
    clock.advance(120)
    risk.record_trade(_trade(-2.5))
    clock.advance(120)

    gate = risk.check_trading_allowed()
    assert not gate.allowed
    assert gate.reason == "Daily loss limit reached"


def test_min_time_between_trades(risk, clock):
    risk.record_trade(_trade(1.0))
    assert risk.check_trading_allowed().reason == "Minimum time between trades not met"
    clock.advance(61)
    assert risk.check_trading_allowed().allowed


def test_consecutive_loss_cooldown(risk, clock):
    for _ in range(5):
        risk.record_trade(_trade(-0.5))
        clock.advance(120)

    gate = risk.check_trading_allowed()
    assert not gate.allowed
    assert "consecutive losses" in gate.reason
    assert risk.get_risk_status()["risk_level"] == "STOPPED"


def test_win_resets_loss_streak(risk, clock):
    for pnl in (-0.5, -0.5, 1.0):
        risk.record_trade(_trade(pnl))
        clock.advance(120)
    assert risk.state.consecutive_losses == 0
    assert risk.state.consecutive_wins == 1
    assert risk.state.winning_trades == 1
    assert risk.state.losing_trades == 2


def test_calendar_roll_resets_daily(risk, clock):
    risk.record_trade(_trade(-3.0))
    assert risk.state.daily_pnl == -3.0

    clock.advance(24 * 3600)
    assert risk.check_trading_allowed().allowed
    assert risk.state.daily_pnl == 0.0
    assert risk.state.today_trades == 0
    # same ISO week
    assert risk.state.weekly_pnl == -3.0


def test_equity_from_pnl_without_balance(risk):
    risk.record_trade(_trade(2.0, pnl=500.0))
    assert risk.state.current_equity == 10500.0
    assert risk.state.peak_equity == 10500.0
    assert risk.state.current_drawdown == 0.0


def test_trade_history_bounded(risk, clock):
    for _ in range(120):
        risk.record_trade(_trade(0.1))
        clock.advance(3600)
    assert len(risk.state.trade_history) == 100
    assert risk.state.total_trades == 120


def test_var_needs_twenty_samples(risk):
    result = risk.calculate_var(1000.0, returns=[0.01] * 19)
    assert result.insufficient
    assert result.sample_size == 19


def test_var_historical(risk):
    returns = [i / 100 for i in range(-10, 10)]
    result = risk.calculate_var(1000.0, 0.95, returns=returns)

    assert not result.insufficient
    assert result.var == pytest.approx(90.0)
    assert result.cvar == pytest.approx(100.0)
    assert result.var_percent == pytest.approx(9.0)
    assert result.confidence_level == pytest.approx(95.0)


def test_correlation_limit(risk):
    blocked = risk.check_correlation("ETHUSDC", ["BTCUSDT", "ETHUSDT", "BTCUSDC"])
    assert not blocked.allowed
    assert blocked.correlation == "high"
    assert blocked.group == "majors"

    some = risk.check_correlation("SOLUSDT", ["BNBUSDT"])
    assert some.allowed and some.correlation == "medium"

    unknown = risk.check_correlation("XYZUSDT", ["BTCUSDT"])
    assert unknown.allowed and unknown.correlation == "low"


def test_risk_multiplier_clamped(risk):
    assert risk.set_risk_multiplier(5) == 2.0
    assert risk.set_risk_multiplier(0.01) == 0.1


def test_reset_limits(risk, clock):
    for _ in range(5):
        risk.record_trade(_trade(-0.5))
        clock.advance(120)
    status = risk.reset_limits("all")
    assert status["trading_allowed"]
    assert risk.state.consecutive_losses == 0

    with pytest.raises(ValueError):
        risk.reset_limits("yearly")


def test_update_config_rejects_unknown(risk):
    assert risk.update_config(max_daily_loss=3).max_daily_loss == 3
    with pytest.raises(ValueError):
        risk.update_config(bogus=1)


def test_status_report(risk):
    status = risk.get_risk_status()
    assert status["risk_level"] == "NORMAL"
    assert status["limits"]["remaining_trades"] == 20
    assert status["recommendations"][0]["type"] == "OK"


def test_state_saved_and_reloaded(tmp_path, clock):
    store = JsonFileStateStore(str(tmp_path))
    first = RiskManager(store=store, clock=clock)
    first.record_trade(_trade(-1.0, pnl=-100.0))

    second = RiskManager(store=store, clock=clock)
    assert second.state.total_trades == 1
    assert second.state.daily_pnl == -1.0
    assert second.state.current_equity == 9900.0


def test_save_goes_through_store(clock):
    store = MagicMock()
    store.load_state.return_value = None
    risk = RiskManager(store=store, clock=clock)

    risk.record_trade(_trade(1.0))

    key, payload = store.save_state.call_args[0]
    assert key == RISK_STATE_KEY
    assert payload["version"] == 2
    assert payload["total_trades"] == 1


def test_malformed_state_starts_fresh(clock):
    store = MagicMock()
    store.load_state.return_value = {"version": 1, "peak_equity": "abc", "total_trades": 7}
    risk = RiskManager(store=store, clock=clock)
    assert risk.state.total_trades == 0
    assert risk.state.current_equity == 10000.0


def test_migrate_v0_payload():
    data = migrate_risk_state({
        "dailyPnL": -2.0,
        "peakEquity": 10000.0,
        "currentDrawdown": 10.0,
        "consecutiveLosses": 1,
        "lastTradeTime": 1700000000000,
        "tradeHistory": [{"timestamp": 1700000000000, "pnlPercent": 2.0, "pnl": 20.0, "result": "win"}],
    })

    assert data["version"] == 2
    assert data["daily_pnl"] == -2.0
    assert data["consecutive_losses"] == 1
    assert data["last_trade_time"] == 1700000000.0
    assert data["current_equity"] == pytest.approx(9000.0)
    assert data["trade_history"][0]["pnl_percent"] == 2.0
    assert data["total_trades"] == 1
    assert data["winning_trades"] == 1
    assert data["total_pnl"] == 20.0
