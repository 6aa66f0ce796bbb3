"""
Tests for the consensus predictor.
"""
import pytest

from sniperdesk.services.analysis.engine import calculate_indicators
from sniperdesk.services.analysis.models import (
    AdaptiveThresholds,
    IndicatorBundle,
    LevelSet,
    SniperScore,
    SniperSetup,
    SniperSignals,
    StructureRecommendation,
    TradeCandidate,
    TradeLevels,
)
from sniperdesk.services.analysis.predictor import ConsensusPredictor, filter_high_probability
from sniperdesk.services.analysis.structure import analyze_sniper_setup

from conftest import bullish_bundle, make_candles, random_walk_closes


@pytest.fixture
def predictor():
    return ConsensusPredictor()


def test_no_indicators_hold(predictor):
    c = predictor.predict_next_move(None, symbol="BTCUSDT")
    assert c.signal == "HOLD"
    assert c.direction == "neutral"
    assert c.confidence == 0.5
    assert not c.actionable


def test_empty_bundle_hold(predictor):
    c = predictor.predict_next_move(IndicatorBundle(current_price=100.0))
    assert c.signal == "HOLD"
    assert c.confidence == 0.5
    assert c.bull_score == 0 and c.bear_score == 0


def test_trending_breakout_long(predictor, bull_bundle):
    c = predictor.predict_next_move(bull_bundle, symbol="BTCUSDT", interval="15m")

    assert c.direction == "long"
    assert c.signal == "STRONG_LONG"
    assert c.bull_score == pytest.approx(53.0)
    assert c.bear_score == 0
    assert c.confidence == pytest.approx(0.67)
    assert c.actionable
    assert c.entry == pytest.approx(105.0)
    assert c.stop_loss == pytest.approx(102.0)
    assert c.take_profit == pytest.approx([109.0, 111.0, 114.0])
    assert c.risk_reward == 2.0
    assert "Breakout confirms long" in c.reasons
    assert c.symbol == "BTCUSDT" and c.interval == "15m"


def test_trending_breakdown_short(predictor, bear_bundle):
    c = predictor.predict_next_move(bear_bundle)

    assert c.direction == "short"
    assert c.signal == "STRONG_SHORT"
    assert c.stop_loss == pytest.approx(108.0)
    assert c.take_profit[0] < c.entry < c.stop_loss


def test_opposing_sniper_blocks(predictor):
    sniper = SniperSignals(score=SniperScore(score=60, direction="bearish", is_sniper=True))
    c = predictor.predict_next_move(bullish_bundle(sniper_signals=sniper))

    assert c.signal == "HOLD"
    assert c.direction == "neutral"
    assert c.bias == "long"
    assert any(r.startswith("SNIPER BLOCK") for r in c.reasons)
    assert not c.actionable


def test_agreeing_sniper_upgrades(predictor):
    sniper = SniperSignals(score=SniperScore(score=60, direction="bullish", is_sniper=True))
    c = predictor.predict_next_move(bullish_bundle(sniper_signals=sniper))

    # SNIPER_LONG is then promoted by the agreeing breakout
    assert c.signal == "STRONG_LONG"
    assert c.is_sniper is False


def test_missing_levels_drop_to_hold(predictor):
    c = predictor.predict_next_move(bullish_bundle(trade_levels=None))
    assert c.signal == "HOLD"
    assert c.direction == "neutral"
    assert any("dropped" in r for r in c.reasons)


def test_learned_thresholds_gate_actionable():
    strict = ConsensusPredictor(thresholds_provider=lambda: AdaptiveThresholds(min_confidence=0.9))
    c = strict.predict_next_move(bullish_bundle())
    assert c.signal == "STRONG_LONG"
    assert c.min_confidence == 0.9
    assert not c.actionable


def test_prior_state_overrides_provider(predictor):
    c = predictor.predict_next_move(bullish_bundle(), prior_state=AdaptiveThresholds(min_confidence=0.6))
    assert c.min_confidence == 0.6


def test_structure_conflict_penalizes(predictor):
    setup = SniperSetup(
        has_setup=True, sniper_score=40,
        recommendation=StructureRecommendation(action="WAIT", direction="bearish"),
    )
    plain = predictor.predict_next_move(bullish_bundle())
    conflicted = predictor.predict_next_move(bullish_bundle(), setup=setup)

    assert conflicted.confidence < plain.confidence
    assert any(r.startswith("STRUCTURE CONFLICT") for r in conflicted.reasons)


def test_build_trade_recommendation_rr_floor(predictor):
    thin = LevelSet(entry=100, stop_loss=99, tp1=100.5, tp2=101, tp3=101.5, risk_pct=1.0, rr=1.0)
    levels = TradeLevels(long=thin, short=thin, atr_pct=1.0, low_volatility=True)

    assert predictor.build_trade_recommendation("long", levels, 0.8, "LONG") is None
    plan = predictor.build_trade_recommendation("long", levels, 0.8, "SNIPER_LONG")
    assert plan is not None
    assert plan.is_sniper
    assert plan.position_size == "normal"
    assert predictor.build_trade_recommendation("long", levels, 0.8, "HOLD") is None


def test_confidence_bounded_and_candidates_valid():
    predictor = ConsensusPredictor()
    for seed in range(20):
        candles = make_candles(random_walk_closes(seed=seed, n=220, vol=0.015))
        ind = calculate_indicators(candles)
        setup = analyze_sniper_setup(candles, ind)
        c = predictor.predict_next_move(ind, setup=setup)

        assert 0.1 <= c.confidence <= 0.95
        c.validate()
        if c.direction == "long":
            assert c.stop_loss < c.entry < c.take_profit[0]
        if c.direction == "short":
            assert c.take_profit[0] < c.entry < c.stop_loss


def test_filter_high_probability():
    good = TradeCandidate(direction="long", signal="LONG", confidence=0.8,
                          reasons=["a", "b"], min_confidence=0.65)
    weak = TradeCandidate(direction="long", signal="LONG", confidence=0.6,
                          reasons=["a", "b"], min_confidence=0.65)
    hold = TradeCandidate(direction="neutral", signal="HOLD", confidence=0.9, reasons=["a", "b"])
    better = TradeCandidate(direction="short", signal="SHORT", confidence=0.9,
                            reasons=["a", "b", "c"], min_confidence=0.65)

    assert filter_high_probability([good, weak, hold, better]) == [better, good]
