"""
Tests for the stateless indicator library.
"""
import pytest

from sniperdesk.services.analysis.indicators import Indicators

from conftest import make_candles, uptrend_closes


def test_ema_series_seeds_with_sma():
    assert Indicators.ema_series([1, 2, 3, 4, 5], 3) == pytest.approx([2.0, 3.0, 4.0])
    assert Indicators.ema_series([1, 2], 3) == []


def test_sma():
    assert Indicators.sma([1, 2, 3, 4], 2) == pytest.approx(3.5)
    assert Indicators.sma([1], 2) is None


def test_rsi_flat_window_is_neutral():
    assert Indicators.rsi([100.0] * 30) == 50.0


def test_rsi_without_losses_is_100():
    assert Indicators.rsi(uptrend_closes(30)) == 100.0


def test_rsi_needs_period_plus_one_closes():
    assert Indicators.rsi([1.0] * 14, 14) is None
    assert Indicators.rsi([1.0] * 15, 14) is not None


def test_rsi_bounded():
    closes = [100, 101, 99, 102, 98, 103, 97, 104, 96, 105, 95, 106, 94, 107, 93, 108, 92]
    value = Indicators.rsi(closes, 14)
    assert 0 <= value <= 100


def test_macd_needs_only_slow_period():
    assert Indicators.macd(uptrend_closes(25)) is None
    value = Indicators.macd(uptrend_closes(26))
    assert value is not None
    assert value.histogram == pytest.approx(value.line - value.signal)


def test_macd_positive_in_uptrend():
    value = Indicators.macd(uptrend_closes(120))
    assert value.line > 0
    assert value.histogram > 0


def test_bollinger_flat_window_has_no_percent_b():
    bb = Indicators.bollinger_bands([50.0] * 20)
    assert bb.percent_b is None
    assert bb.width_pct == 0.0
    assert bb.upper == bb.lower == bb.middle == 50.0


def test_bollinger_percent_b_not_clamped():
    closes = [100.0] * 19 + [130.0]
    bb = Indicators.bollinger_bands(closes, 20, 2.0)
    assert bb.percent_b > 1.0


def test_kdj_flat_window():
    candles = make_candles([100.0] * 20, wick=0.0)
    kdj = Indicators.kdj(candles)
    assert kdj.k == 50.0
    assert kdj.d == 50.0
    assert kdj.j == 50.0


def test_atr_constant_range():
    candles = make_candles([100.0] * 30, wick=0.01)
    # every bar spans 99..101
    assert Indicators.atr(candles, 14) == pytest.approx(2.0)
    assert Indicators.atr_pct(candles, 14) == pytest.approx(2.0)
    assert Indicators.atr(candles[:14], 14) is None


def test_linear_regression_slope():
    assert Indicators.linear_regression_slope([1, 2, 3]) == pytest.approx(1.0)
    assert Indicators.linear_regression_slope([5, 5, 5, 5]) == 0.0
    assert Indicators.linear_regression_slope([5]) is None


def test_mean_of_empty_is_zero():
    assert Indicators.mean([]) == 0.0
