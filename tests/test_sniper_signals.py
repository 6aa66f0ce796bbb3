"""
Tests for the sniper sub-detectors and their aggregate score.
"""
import dataclasses

import pytest

from sniperdesk.services.analysis import sniper_signals as sniper
from sniperdesk.services.analysis.models import BollingerValue, Candle, SubSignal, VolumeSurge
from sniperdesk.services.analysis.params import IndicatorParams

from conftest import make_candles

PARAMS = IndicatorParams()


def test_bearish_divergence():
    # second half makes the higher high while RSI peaks lower
    closes = [100, 101, 102, 103, 104, 104.5, 105, 105.5, 106, 106.5]
    candles = make_candles(closes)
    rsi = [60, 70, 80, 75, 72, 65, 66, 68, 70, 69]

    sig = sniper.detect_divergence(candles, rsi, [], PARAMS)

    assert sig.detected
    assert sig.direction == "bearish"
    assert sig.strength == pytest.approx(40.0)
    assert "MACD" not in sig.detail


def test_bullish_divergence_with_macd_confirmation():
    closes = [106, 105, 104, 103, 102, 101.5, 101, 100.5, 100, 99.5]
    candles = make_candles(closes)
    rsi = [40, 30, 20, 25, 28, 35, 34, 32, 30, 31]
    macd = [-1.0, -2.0, -3.0, -2.5, -2.0, -1.5, -1.4, -1.3, -1.2, -1.1]

    sig = sniper.detect_divergence(candles, rsi, macd, PARAMS)

    assert sig.direction == "bullish"
    assert sig.strength == pytest.approx(40 + 20)
    assert "MACD confirms" in sig.detail


def test_divergence_gap_bonus_is_opt_in():
    closes = [100, 101, 102, 103, 104, 104.5, 105, 105.5, 106, 106.5]
    rsi = [60, 70, 80, 75, 72, 65, 66, 68, 70, 69]
    params = dataclasses.replace(PARAMS, divergence_gap_cap=5.0)

    # RSI peaks 80 then 70: a 10 point gap capped at 5
    sig = sniper.detect_divergence(make_candles(closes), rsi, [], params)
    assert sig.strength == pytest.approx(45.0)


def test_divergence_needs_lookback():
    candles = make_candles([100.0] * 5)
    assert not sniper.detect_divergence(candles, [50.0] * 5, [], PARAMS).detected


def test_momentum_building():
    candles = make_candles([100.0, 101.0])
    sig = sniper.detect_momentum_building(candles, [1, 2, 3, 4], [50.0, 55.0], ema20=99.0, volume_ratio=1.5)
    assert sig.detected
    assert sig.direction == "bullish"
    assert sig.strength == 90.0


def test_momentum_not_building_on_mixed_histogram():
    candles = make_candles([100.0, 101.0])
    sig = sniper.detect_momentum_building(candles, [1, 3, 2, 4], [50.0, 55.0], 99.0, 1.5)
    assert not sig.detected


def test_squeeze():
    bb = BollingerValue(upper=101.0, middle=100.0, lower=99.0, width_pct=2.0, percent_b=0.75)
    sig = sniper.detect_squeeze(100.5, bb, atr_pct=1.0, params=PARAMS)
    assert sig.detected
    assert sig.direction == "bullish"
    assert sig.strength == pytest.approx(40.0)

    wide = BollingerValue(upper=103.0, middle=100.0, lower=97.0, width_pct=6.0, percent_b=0.5)
    assert not sniper.detect_squeeze(100.5, wide, 1.0, PARAMS).detected
    assert not sniper.detect_squeeze(100.5, None, 1.0, PARAMS).detected


def test_explosive_volume_surge():
    closes = [100.0] * 27 + [101.0, 102.0, 104.0]
    volumes = [100.0] * 27 + [400.0, 500.0, 600.0]
    candles = make_candles(closes, volumes=volumes)

    surge = sniper.detect_volume_surge(candles, PARAMS)

    assert surge.detected
    assert surge.direction == "bullish"
    assert surge.is_explosive
    assert surge.intensity == pytest.approx(5.0)
    assert surge.acceleration == 2
    assert surge.strength == 100.0


def test_volume_surge_needs_history():
    candles = make_candles([100.0] * 10)
    assert not sniper.detect_volume_surge(candles, PARAMS).detected


def test_volume_accumulation():
    # heavy volume, price pinned, buyers dominating
    closes = [100.0] * 27 + [100.1, 100.2, 100.3]
    volumes = [100.0] * 27 + [300.0, 300.0, 300.0]
    candles = make_candles(closes, volumes=volumes)

    sig = sniper.detect_volume_accumulation(candles, PARAMS)

    assert sig.detected
    assert sig.direction == "bullish"
    assert sig.strength == pytest.approx(90.0)


def test_early_breakout_pressing_resistance():
    candles = [
        Candle(i, 99.0 + i * 0.1, 99.3 + i * 0.1, 98.8 + i * 0.1, 99.1 + i * 0.1, 100)
        for i in range(5)
    ]
    price = candles[-1].close
    sig = sniper.detect_early_breakout(candles, support=None, resistance=price * 1.005,
                                       volume_ratio=1.0, params=PARAMS)
    assert sig.detected
    assert sig.direction == "bullish"
    assert "approaching_resistance" in sig.detail


def test_score_aggregates_with_confluence():
    signals = {
        "divergence": SubSignal(True, "bullish", 80.0),
        "volume_surge": VolumeSurge(True, "bullish", 90.0),
        "momentum_building": SubSignal(True, "bearish", 50.0),
        "squeeze": SubSignal(False),
    }
    score = sniper.score_sniper_signals(signals, PARAMS)

    # 80*.35 + 90*.40 + 50*.20 + confluence 10
    assert score.score == 84
    assert score.direction == "bullish"
    assert score.is_sniper
    assert len(score.signals) == 3


def test_score_empty():
    score = sniper.score_sniper_signals({}, PARAMS)
    assert score.score == 0
    assert score.direction is None
    assert not score.is_sniper
