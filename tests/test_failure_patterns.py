"""
Tests for the failure-pattern catalog and entry-condition extraction.
"""
from sniperdesk.services.analysis.models import (
    Breakout,
    SniperSignals,
    SubSignal,
    TradeClosedEvent,
)
from sniperdesk.services.learning.entry_conditions import (
    assess_entry_quality,
    combo_key,
    extract_entry_conditions,
    record_entry_outcome,
)
from sniperdesk.services.learning.failure_patterns import (
    FAILURE_PATTERNS,
    FailureContext,
    assess_pre_trade,
    detect_failures,
)

from conftest import bearish_bundle, bullish_bundle

HOUR_MS = 3600 * 1000


def _ctx(pnl_percent, direction="long", hold_time_ms=6 * HOUR_MS, entry=None, exit_=None):
    event = TradeClosedEvent(symbol="ETHUSDT", direction=direction, pnl_percent=pnl_percent,
                             result="loss" if pnl_percent < 0 else "win", hold_time_ms=hold_time_ms,
                             entry_indicators=entry, exit_indicators=exit_)
    return FailureContext.from_event(event)


def _names(ctx):
    return [m.pattern for m in detect_failures(ctx)]


def test_catalog_has_ten_patterns():
    names = [p.name for p in FAILURE_PATTERNS]
    assert len(names) == 10
    assert len(set(names)) == 10


def test_context_takes_prices_from_snapshots():
    ctx = _ctx(-1.0, entry=bullish_bundle(), exit_=bullish_bundle(current_price=103.0))
    assert ctx.entry_price == 105.0
    assert ctx.exit_price == 103.0


def test_late_trend():
    assert "LATE_TREND" in _names(_ctx(-1.0, entry=bullish_bundle(rsi=72.0)))
    assert "LATE_TREND" not in _names(_ctx(-1.0, entry=bullish_bundle(rsi=55.0)))
    assert "LATE_TREND" in _names(_ctx(-1.0, "short", entry=bearish_bundle(rsi=30.0)))


def test_overleveraged():
    assert "OVERLEVERAGED" in _names(_ctx(-1.0, entry=bullish_bundle(funding_rate=0.0015)))
    assert "OVERLEVERAGED" not in _names(_ctx(-1.0, entry=bullish_bundle(funding_rate=0.0005)))


def test_fakeout_needs_quick_reversal():
    quick = _ctx(-3.0, hold_time_ms=HOUR_MS, entry=bullish_bundle())
    slow = _ctx(-3.0, hold_time_ms=5 * HOUR_MS, entry=bullish_bundle())
    assert "FAKEOUT" in _names(quick)
    assert "FAKEOUT" not in _names(slow)
    assert "FAKEOUT" not in _names(_ctx(-3.0, hold_time_ms=HOUR_MS,
                                        entry=bullish_bundle(breakout=Breakout())))


def test_liquidation_hunt_and_news_reversal():
    exit_bundle = bullish_bundle(volume_ratio=4.0)
    names = _names(_ctx(-4.0, hold_time_ms=30 * 60 * 1000, entry=bullish_bundle(), exit_=exit_bundle))
    assert "LIQUIDATION_HUNT" in names
    assert "NEWS_REVERSAL" in names


def test_divergence_ignored():
    sniper = SniperSignals(divergence=SubSignal(True, "bearish", 50.0, "bearish divergence"))
    assert "DIVERGENCE_IGNORED" in _names(_ctx(-1.0, entry=bullish_bundle(sniper_signals=sniper)))


def test_resistance_reject():
    names = _names(_ctx(-3.0, entry=bullish_bundle(resistance=106.0)))
    assert "RESISTANCE_REJECT" in names


def test_no_entry_snapshot_no_failures():
    assert _names(_ctx(-10.0)) == []


def test_pre_trade_clean():
    risk = assess_pre_trade(bullish_bundle(), "long", {}, 0)
    assert not risk.has_risk
    assert risk.recommendation == "OK"
    assert assess_pre_trade(None, "long", {}, 0).risk_score == 0


def test_pre_trade_funding_caution():
    risk = assess_pre_trade(bullish_bundle(funding_rate=0.0009), "long", {}, 0)
    assert risk.high_risk
    assert risk.risk_score == 35
    assert risk.recommendation == "CAUTION"
    assert not risk.should_avoid
    assert risk.risks[0].pattern == "OVERLEVERAGED"


def test_pre_trade_avoid():
    counts = {"FAKEOUT": 20, "LATE_TREND": 5}
    risk = assess_pre_trade(bullish_bundle(rsi=70.0, funding_rate=0.001), "long", counts, 50)
    patterns = {r.pattern for r in risk.risks}
    assert patterns == {"FAKEOUT", "LATE_TREND", "OVERLEVERAGED"}
    assert risk.risk_score == 90
    assert risk.should_avoid
    assert risk.recommendation == "AVOID"


def test_extract_entry_conditions():
    conditions = extract_entry_conditions(bullish_bundle(funding_rate=0.0001), "long")
    for name in ("rsi_neutral", "macd_bullish", "strong_uptrend", "with_trend",
                 "volume_spike", "breakout_up", "normal_funding"):
        assert name in conditions
    assert "near_support" not in conditions

    short_against = extract_entry_conditions(bullish_bundle(), "short")
    assert "against_trend" in short_against
    assert extract_entry_conditions(None) == []


def test_entry_quality():
    assert assess_entry_quality([], {}, {}, [], []).quality == "UNKNOWN"

    stats, combos = {}, {}
    for _ in range(5):
        record_entry_outcome(stats, combos, ["a", "b"], True, 2.0)
    assert stats["a"]["best_with"] == ["b"]
    assert combos[combo_key(["b", "a"])]["wins"] == 5

    quality = assess_entry_quality(["a", "b"], stats, combos, [], [])
    assert quality.quality == "EXCELLENT"
    assert quality.expected_win_rate == 1.0
