"""
Tests for the learning engine: rewards, Q-table, trade events, thresholds
and persistence.
"""
import math
import random
from unittest.mock import MagicMock

import pytest

from sniperdesk.services.analysis.models import IndicatorBundle, TradeClosedEvent, TrendInfo
from sniperdesk.services.learning.learning_engine import LearningEngine
from sniperdesk.services.learning.state import LearningConfig, LearningState, migrate_learning_state
from sniperdesk.services.persistence.state_store import LEARNING_STATE_KEY, JsonFileStateStore

from conftest import bullish_bundle

BULL_STATE = "neutral_bullish_middle_STRONG_UP_high_normal"


@pytest.fixture
def engine(clock):
    return LearningEngine(clock=clock, rng=random.Random(1))


def _event(result, pnl_percent, direction="long", **kwargs):
    return TradeClosedEvent(symbol="BTCUSDT", direction=direction, pnl_percent=pnl_percent,
                            result=result, **kwargs)


def test_create_state():
    assert LearningEngine.create_state(None) == "unknown"
    assert LearningEngine.create_state(bullish_bundle()) == BULL_STATE
    oversold = bullish_bundle(rsi=25.0, volume_ratio=0.3)
    assert LearningEngine.create_state(oversold).startswith("oversold_")
    assert LearningEngine.create_state(oversold).endswith("_low_normal")


@pytest.mark.parametrize("pnl,result,reward", [
    (2.0, "win", 2.0),
    (6.0, "win", 9.0),
    (-3.0, "loss", -3.0),
    (-6.0, "loss", -12.0),
    (-12.0, "loss", -36.0),
    (-25.0, "loss", -125.0),
    (-40.0, "liquidation", -100.0),
    (0.0, "missed", -1.0),
])
def test_reward(engine, pnl, result, reward):
    assert engine.calculate_reward(pnl, result) == pytest.approx(reward)


def test_reward_monotonic(engine):
    pnls = [-30, -21, -15, -11, -8, -5.5, -2, 0, 2, 5, 7, 12]
    rewards = [engine.calculate_reward(p, "win" if p > 0 else "loss") for p in pnls]
    assert rewards == sorted(rewards)


def test_q_update(engine):
    assert engine.update_q_value("s", "LONG", 0.0, "s") == 0.0
    assert engine.update_q_value("s", "SHORT", 10.0, "s") == pytest.approx(1.0)
    # 1 + 0.1 * (10 + 0.95 * 1 - 1)
    assert engine.update_q_value("s", "SHORT", 10.0, "s") == pytest.approx(1.995)
    assert engine.get_q_value("s", "SHORT") == pytest.approx(1.995)
    assert engine.get_q_value("missing", "LONG") == 0.0


def test_q_update_rejects_non_finite(engine):
    assert engine.update_q_value("s", "LONG", math.nan, "s") is None
    assert "s" not in engine.state.q_table


def test_liquidation_event(clock):
    store = MagicMock()
    store.load_state.return_value = None
    store.save_state.return_value = True
    engine = LearningEngine(store=store, clock=clock)

    result = engine.on_trade_closed(_event("liquidation", -100.0, leverage=20,
                                           entry_indicators=bullish_bundle()))

    assert result.liquidation
    assert result.state == BULL_STATE
    assert engine.get_q_value(BULL_STATE, "LONG") == pytest.approx(-10.0)
    assert engine.state.total_liquidations == 1
    assert engine.state.liquidations[0]["leverage"] == 20
    assert engine.state.dangerous_conditions[BULL_STATE]["liquidations"] == 1
    assert engine.state.bad_entry_conditions["no_sniper_confirm"]["count"] == 1

    danger = engine.is_dangerous_condition(bullish_bundle())
    assert danger.dangerous
    assert danger.liquidations == 1

    key, payload = store.save_state.call_args[0]
    assert key == LEARNING_STATE_KEY
    assert payload["total_liquidations"] == 1


def test_severe_loss_event(engine):
    result = engine.on_trade_closed(_event("loss", -12.0, entry_indicators=bullish_bundle(),
                                           hold_time_ms=30 * 60 * 1000))

    assert result.severe
    assert result.reward == pytest.approx(-36.0)
    assert engine.state.worst_loss == -12.0
    assert engine.state.severe_losses[0]["severity"] == 2.4
    # breakout reversed inside two hours
    assert "FAKEOUT" in result.failures
    assert engine.state.failure_patterns["FAKEOUT"]["count"] == 1
    assert engine.state.total_learnings == 1


def test_small_loss_is_not_severe(engine):
    result = engine.on_trade_closed(_event("loss", -1.0))
    assert not result.severe
    assert engine.state.severe_losses == []


def test_missed_trade(engine):
    result = engine.on_trade_closed(_event("missed", 0.0, entry_indicators=bullish_bundle()))

    assert result.reward == -1.0
    assert engine.state.total_learnings == 1
    assert engine.get_q_value(BULL_STATE, "LONG") == pytest.approx(-0.1)
    assert engine.state.symbol_stats == {}


def test_win_updates_statistics(engine):
    engine.on_trade_closed(_event("win", 3.0, signal="STRONG_LONG", entry_indicators=bullish_bundle()))
    st = engine.state

    assert st.market_regimes["TRENDING_UP"]["count"] == 1
    assert st.market_regimes["TRENDING_UP"]["win_rate"] == 1.0
    assert st.signal_performance["STRONG_LONG"] == {"count": 1, "wins": 1, "avg_return": 3.0}
    assert st.hourly_performance["12"] == {"count": 1, "wins": 1}
    assert st.daily_performance["Monday"] == {"count": 1, "wins": 1}
    assert st.symbol_stats["BTCUSDT"]["avg_return"] == 3.0
    # long win with a bullish MACD: the indicator was right
    assert st.indicator_scores["macd"]["accuracy"] == pytest.approx(0.55)
    assert st.entry_conditions["strong_uptrend"]["wins"] == 1
    assert "with_trend" in st.entry_conditions


def test_regimes():
    detect = LearningEngine.detect_market_regime
    assert detect(None) == "UNKNOWN"
    assert detect(bullish_bundle()) == "TRENDING_UP"
    flat = IndicatorBundle(current_price=100.0, atr_pct=2.0)
    assert detect(flat) == "RANGING"
    flat.atr_pct = 5.0
    assert detect(flat) == "VOLATILE"
    flat.atr_pct = 0.5
    assert detect(flat) == "QUIET"
    flat.trend = TrendInfo(direction="STRONG_DOWN")
    assert detect(flat) == "TRENDING_DOWN"


def test_regime_multiplier(engine):
    assert engine.get_regime_multiplier("RANGING") == 1.0
    engine.state.market_regimes["RANGING"] = {"count": 10, "win_rate": 0.7, "avg_return": 1.0}
    assert engine.get_regime_multiplier("RANGING") == 1.1
    engine.state.market_regimes["RANGING"]["win_rate"] = 0.3
    assert engine.get_regime_multiplier("RANGING") == 0.8
    engine.state.market_regimes["RANGING"]["count"] = 9
    assert engine.get_regime_multiplier("RANGING") == 1.0


def test_thresholds_adapt_after_enough_trades(engine, clock):
    for i in range(50):
        won = i < 20
        engine.on_trade_closed(_event("win" if won else "loss", 1.0 if won else -1.0, signal="LONG"))
        clock.advance(600)

    th = engine.get_thresholds()
    assert th.min_confidence == pytest.approx(0.66)
    assert th.sniper_confidence == 0.5

    th.min_confidence = 0.1
    assert engine.get_thresholds().min_confidence == pytest.approx(0.66)


def test_learned_recommendation(clock):
    engine = LearningEngine(config=LearningConfig(exploration_rate=0.0), clock=clock)
    engine.state.q_table[BULL_STATE] = {"LONG": 10.0, "SHORT": -5.0, "HOLD": 5.0}

    rec = engine.get_learned_recommendation(bullish_bundle())
    assert rec.action == "LONG"
    assert rec.source == "learned"
    assert rec.confidence == 0.5
    assert rec.q_value == 10.0
    assert rec.regime == "TRENDING_UP"


def test_exploration(clock):
    engine = LearningEngine(config=LearningConfig(exploration_rate=1.0),
                            rng=random.Random(3), clock=clock)
    rec = engine.get_learned_recommendation(bullish_bundle())
    assert rec.source == "exploration"
    assert rec.action in ("LONG", "SHORT", "HOLD")
    assert rec.confidence == 0.5


def test_dangerous_by_q_value(engine):
    engine.state.q_table[BULL_STATE] = {"LONG": -25.0, "SHORT": 0.0, "HOLD": 0.0}
    danger = engine.is_dangerous_condition(bullish_bundle())
    assert danger.dangerous
    assert danger.q_values["LONG"] == -25.0
    assert not engine.is_dangerous_condition(None).dangerous


def test_entry_quality_from_history(engine, clock):
    for _ in range(5):
        engine.on_trade_closed(_event("loss", -1.0, entry_indicators=bullish_bundle()))
        clock.advance(600)

    quality = engine.check_entry_quality(bullish_bundle(), "long")
    assert quality.quality == "AVOID"
    assert quality.expected_win_rate < 0.35
    assert engine.get_best_entry_conditions()["avoid"]


def test_insights_report(engine):
    engine.on_trade_closed(_event("win", 2.0, signal="LONG"))
    insights = engine.get_learning_insights()
    assert insights["total_learnings"] == 1
    assert insights["adaptive_thresholds"]["min_confidence"] == 0.65
    assert "FAKEOUT" in insights["failure_patterns"]
    assert engine.get_symbol_recommendation("BTCUSDT") == {"has_data": False, "symbol": "BTCUSDT"}


def test_state_round_trip(tmp_path, clock):
    store = JsonFileStateStore(str(tmp_path))
    first = LearningEngine(store=store, clock=clock)
    first.on_trade_closed(_event("win", 3.0, signal="LONG", entry_indicators=bullish_bundle()))
    first.on_trade_closed(_event("liquidation", -100.0, entry_indicators=bullish_bundle()))
    assert first.save()

    second = LearningEngine(store=store, clock=clock)
    assert second.state.to_dict() == first.state.to_dict()


def test_v0_state_migrated():
    st = LearningState.from_dict({
        "qTable": {"s": {"LONG": 1.0, "SHORT": 0.0, "HOLD": 0.0}},
        "totalLearnings": 3,
        "adaptiveThresholds": {"minConfidence": 0.7},
        "marketRegimes": {
            "ranging": {"count": 2, "winRate": 0.5, "avgReturn": 1.0},
            "trending": {"count": 4, "winRate": 0.75, "avgReturn": 2.0},
        },
        "lastUpdate": 1700000000000,
    })

    assert st.q_table["s"]["LONG"] == 1.0
    assert st.total_learnings == 3
    assert st.adaptive_thresholds.min_confidence == 0.7
    assert st.adaptive_thresholds.sniper_confidence == 0.5
    assert st.market_regimes["RANGING"]["win_rate"] == 0.5
    assert "trending" not in st.market_regimes
    assert st.market_regimes["TRENDING_UP"]["count"] == 0
    assert st.last_update == 1700000000.0
    assert st.entry_conditions == {}


def test_failed_update_keeps_state(engine, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(engine, "_learn_trade", boom)
    assert engine.on_trade_closed(_event("win", 2.0)) is None
    assert engine.state.total_learnings == 0


def test_failed_liquidation_update_is_not_persisted(clock, monkeypatch):
    store = MagicMock()
    store.load_state.return_value = None
    store.save_state.return_value = True
    engine = LearningEngine(store=store, clock=clock)

    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(engine, "_analyze_failure", boom)
    assert engine.on_trade_closed(_event("liquidation", -100.0, entry_indicators=bullish_bundle())) is None

    store.save_state.assert_not_called()
    assert engine.state.total_liquidations == 0
    assert engine.state.liquidations == []


def test_liquidation_history_keeps_latest(engine):
    for i in range(55):
        engine.on_trade_closed(_event("liquidation", -100.0, entry_price=float(i)))

    liquidations = engine.state.liquidations
    assert len(liquidations) == 50
    assert liquidations[0]["entry_price"] == 5.0
    assert liquidations[-1]["entry_price"] == 54.0
    assert engine.state.total_liquidations == 55


@pytest.mark.parametrize("start", [10.0, -10.0])
def test_zero_reward_q_updates_converge(engine, start):
    engine.state.q_table["s"] = {"LONG": start, "SHORT": 0.0, "HOLD": 0.0}

    previous = abs(start)
    for _ in range(500):
        q = engine.update_q_value("s", "LONG", 0.0, "s")
        assert abs(q) <= previous
        previous = abs(q)

    assert previous < abs(start) * 0.1


def _seed_signals(engine, sniper_samples, regular_samples):
    perf = engine.state.signal_performance
    perf["SNIPER_LONG"] = {"count": sniper_samples, "wins": sniper_samples, "avg_return": 2.0}
    perf["LONG"] = {"count": regular_samples, "wins": regular_samples // 2, "avg_return": 0.0}


def test_sniper_threshold_lowers_at_ten_samples(engine):
    _seed_signals(engine, sniper_samples=10, regular_samples=40)
    engine._update_thresholds(engine.state)
    assert engine.state.adaptive_thresholds.sniper_confidence == pytest.approx(0.49)
    assert engine.state.adaptive_thresholds.min_confidence == pytest.approx(0.65)


def test_sniper_threshold_needs_ten_samples(engine):
    _seed_signals(engine, sniper_samples=9, regular_samples=42)
    engine._update_thresholds(engine.state)
    assert engine.state.adaptive_thresholds.sniper_confidence == 0.5


def test_migration_seeds_new_buckets():
    raw = {
        "version": 2,
        "market_regimes": {"RANGING": {"count": 3, "win_rate": 1.0, "avg_return": 2.0}},
        "failure_patterns": {},
    }

    data = migrate_learning_state(raw)
    assert data["market_regimes"]["QUIET"] == {"count": 0, "win_rate": 0.0, "avg_return": 0.0}
    assert data["market_regimes"]["RANGING"]["count"] == 3
    assert "FAKEOUT" in data["failure_patterns"]
    assert raw["market_regimes"].keys() == {"RANGING"}

    st = LearningState.from_dict(raw)
    assert set(st.market_regimes) == {"TRENDING_UP", "TRENDING_DOWN", "VOLATILE", "QUIET", "RANGING"}
