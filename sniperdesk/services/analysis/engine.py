"""
Indicator Engine
================
Turns one candle window into an IndicatorBundle:

  1. Core indicators   — RSI, MACD, Bollinger, KDJ, ATR, EMA 20/50/200
  2. Market structure  — trend score, fractal S/R, breakout, patterns
  3. Volume            — ratio vs 20-bar average, spike flag
  4. Sniper detectors  — six sub-signals + aggregate score
  5. Trade levels      — ATR-based long/short entry, stop and targets
  6. Momentum score    — 0-100 summary used by the predictor

Pure computation. Each step runs behind its own guard: a failing step
is logged, named in ``bundle.errors`` and left as None so the rest of
the bundle is still produced.
"""
from __future__ import annotations

import logging
import math
from typing import Callable, List, Optional, Sequence, Tuple

from sniperdesk.services.analysis import sniper_signals as sniper
from sniperdesk.services.analysis.indicators import Indicators
from sniperdesk.services.analysis.models import (
    Breakout,
    Candle,
    EmaSet,
    IndicatorBundle,
    LevelSet,
    SniperSignals,
    TradeLevels,
    TrendInfo,
)
from sniperdesk.services.analysis.params import IndicatorParams

logger = logging.getLogger(__name__)

DEFAULT_PARAMS = IndicatorParams()

BULLISH_PATTERNS = frozenset({"BULLISH_ENGULFING", "HAMMER", "MORNING_STAR"})
BEARISH_PATTERNS = frozenset({"BEARISH_ENGULFING", "SHOOTING_STAR", "EVENING_STAR"})


def _safe(name: str, errors: List[str], fn: Callable, *args, default=None):
    """Run one detector; on failure record it and return ``default``."""
    try:
        value = fn(*args)
    except Exception as e:
        logger.warning(f"Indicator step '{name}' failed: {e}")
        errors.append(name)
        return default
    if isinstance(value, float) and not math.isfinite(value):
        logger.warning(f"Indicator step '{name}' produced non-finite value")
        errors.append(name)
        return default
    return value


# ── Structure helpers ───────────────────────────────────────────────────────

def classify_trend(price: float, ema: EmaSet, closes: Sequence[float],
                   params: IndicatorParams = DEFAULT_PARAMS) -> TrendInfo:
    """EMA-vote trend score in [-5, 5]; absent EMAs vote 0."""

    def vote(a: Optional[float], b: Optional[float]) -> int:
        if a is None or b is None or a == b:
            return 0
        return 1 if a > b else -1

    score = (vote(price, ema.ema20) + vote(price, ema.ema50)
             + vote(ema.ema20, ema.ema50) + 2 * vote(price, ema.ema200))

    if score >= params.strong_trend_score:
        direction = "STRONG_UP"
    elif score >= params.trend_score:
        direction = "UP"
    elif score <= -params.strong_trend_score:
        direction = "STRONG_DOWN"
    elif score <= -params.trend_score:
        direction = "DOWN"
    else:
        direction = "NEUTRAL"

    slope = Indicators.linear_regression_slope(closes[-params.slope_lookback:])
    slope_pct = (slope / price * 100) if slope is not None and price > 0 else 0.0
    return TrendInfo(direction=direction, score=score, slope_pct=slope_pct)


def find_swings(candles: Sequence[Candle], span: int = 2) -> Tuple[List[int], List[int]]:
    """Indices of fractal swing highs and lows (``span`` bars each side)."""
    highs, lows = [], []
    for i in range(span, len(candles) - span):
        neighbours = [candles[j] for j in range(i - span, i + span + 1) if j != i]
        if all(candles[i].high > n.high for n in neighbours):
            highs.append(i)
        if all(candles[i].low < n.low for n in neighbours):
            lows.append(i)
    return highs, lows


def find_support_resistance(candles: Sequence[Candle], price: float,
                            params: IndicatorParams = DEFAULT_PARAMS
                            ) -> Tuple[float, float]:
    window = candles[-params.sr_lookback:]
    high_idx, low_idx = find_swings(window, params.fractal_span)

    above = [window[i].high for i in high_idx if window[i].high > price]
    below = [window[i].low for i in low_idx if window[i].low < price]

    resistance = min(above) if above else max(c.high for c in window)
    support = max(below) if below else min(c.low for c in window)
    return support, resistance


def detect_breakout(candles: Sequence[Candle],
                    params: IndicatorParams = DEFAULT_PARAMS) -> Breakout:
    n = params.breakout_window
    if len(candles) < n:
        return Breakout()
    prior = candles[-n:-1]
    highest = max(c.high for c in prior)
    lowest = min(c.low for c in prior)
    close = candles[-1].close
    if close > highest:
        return Breakout(direction="up", level=highest)
    if close < lowest:
        return Breakout(direction="down", level=lowest)
    return Breakout()


def detect_patterns(candles: Sequence[Candle]) -> List[str]:
    """Single, double and triple candlestick patterns on the last bars."""
    if len(candles) < 3:
        return []
    first, prev, last = candles[-3], candles[-2], candles[-1]
    patterns: List[str] = []

    if last.range > 0 and last.body <= last.range * 0.1:
        patterns.append("DOJI")

    if (prev.is_bearish and last.is_bullish and last.open <= prev.close
            and last.close >= prev.open and last.body > prev.body):
        patterns.append("BULLISH_ENGULFING")
    if (prev.is_bullish and last.is_bearish and last.open >= prev.close
            and last.close <= prev.open and last.body > prev.body):
        patterns.append("BEARISH_ENGULFING")

    if last.body > 0 and last.lower_wick >= 2 * last.body and last.upper_wick <= last.body:
        patterns.append("HAMMER")
    if last.body > 0 and last.upper_wick >= 2 * last.body and last.lower_wick <= last.body:
        patterns.append("SHOOTING_STAR")

    if first.body > 0 and prev.body < first.body * 0.3:
        midpoint = (first.open + first.close) / 2
        if first.is_bearish and last.is_bullish and last.close > midpoint:
            patterns.append("MORNING_STAR")
        if first.is_bullish and last.is_bearish and last.close < midpoint:
            patterns.append("EVENING_STAR")

    return patterns


def volume_profile(candles: Sequence[Candle],
                   params: IndicatorParams = DEFAULT_PARAMS) -> Tuple[float, bool]:
    """Last volume vs the mean of the preceding window."""
    volumes = [c.volume for c in candles]
    base = volumes[-(params.volume_avg_window + 1):-1]
    avg = Indicators.mean(base)
    ratio = volumes[-1] / avg if avg > 0 else 1.0
    return ratio, ratio > params.volume_spike_ratio


# ── Trade levels ────────────────────────────────────────────────────────────

def compute_trade_levels(price: float, atr: Optional[float],
                         support: Optional[float], resistance: Optional[float],
                         params: IndicatorParams = DEFAULT_PARAMS) -> Optional[TradeLevels]:
    """ATR multiples for both sides, nudged to nearby support/resistance."""
    if atr is None or atr <= 0 or price <= 0:
        return None

    atr_pct = atr / price * 100
    low_vol = atr_pct < params.low_volatility_atr_pct
    sl_m, tp1_m, tp2_m, tp3_m = params.low_vol_multipliers if low_vol else params.normal_multipliers
    buf = params.level_buffer
    min_stop = 0.5 * atr

    # Long: stop just under support when it sits inside the ATR stop
    stop = price - sl_m * atr
    if support is not None and stop < support < price:
        candidate = support * (1 - buf)
        if candidate > stop and price - candidate >= min_stop:
            stop = candidate
    tp1 = price + tp1_m * atr
    if resistance is not None and price < resistance < tp1:
        capped = resistance * (1 - buf)
        tp1 = capped if capped > price else resistance
    tp2 = max(price + tp2_m * atr, tp1)
    tp3 = max(price + tp3_m * atr, tp2)
    risk = price - stop
    long_levels = LevelSet(
        entry=price, stop_loss=stop, tp1=tp1, tp2=tp2, tp3=tp3,
        risk_pct=risk / price * 100, rr=round((tp2 - price) / risk, 2),
    )

    # Short: mirror image
    stop = price + sl_m * atr
    if resistance is not None and price < resistance < stop:
        candidate = resistance * (1 + buf)
        if candidate < stop and candidate - price >= min_stop:
            stop = candidate
    tp1 = price - tp1_m * atr
    if support is not None and tp1 < support < price:
        capped = support * (1 + buf)
        tp1 = capped if capped < price else support
    tp2 = min(price - tp2_m * atr, tp1)
    tp3 = min(price - tp3_m * atr, tp2)
    risk = stop - price
    short_levels = LevelSet(
        entry=price, stop_loss=stop, tp1=tp1, tp2=tp2, tp3=tp3,
        risk_pct=risk / price * 100, rr=round((price - tp2) / risk, 2),
    )

    return TradeLevels(long=long_levels, short=short_levels,
                       atr_pct=atr_pct, low_volatility=low_vol)


# ── Momentum score ──────────────────────────────────────────────────────────

def momentum_score(bundle: IndicatorBundle) -> int:
    score = 0
    if bundle.rsi is not None and (bundle.rsi < 30 or bundle.rsi > 70):
        score += 20
    if bundle.macd is not None:
        if ((bundle.trend.is_up and bundle.macd.histogram > 0)
                or (bundle.trend.is_down and bundle.macd.histogram < 0)):
            score += 15
    if bundle.kdj is not None and (bundle.kdj.j < 20 or bundle.kdj.j > 80):
        score += 10
    if bundle.volume_spike:
        score += 15
    if bundle.breakout.direction:
        score += 20
    if bundle.trend.direction != "NEUTRAL":
        score += 10
        if bundle.trend.is_strong:
            score += 5
    if ((bundle.breakout.direction == "up" and bundle.trend.is_up)
            or (bundle.breakout.direction == "down" and bundle.trend.is_down)):
        score += 10
    return min(100, score)


# ── Entry point ─────────────────────────────────────────────────────────────

def calculate_indicators(candles: Sequence[Candle],
                         params: Optional[IndicatorParams] = None) -> Optional[IndicatorBundle]:
    """Full indicator bundle, or None when the window is under 20 candles."""
    params = params or DEFAULT_PARAMS
    if not candles or len(candles) < params.min_candles:
        return None

    candles = list(candles)
    closes = [c.close for c in candles]
    price = closes[-1]
    errors: List[str] = []

    bundle = IndicatorBundle(current_price=price, errors=errors)

    # ── Core indicators ────────────────────────────────────────────────
    if len(closes) >= params.rsi_min_candles:
        bundle.rsi = _safe("rsi", errors, Indicators.rsi, closes, params.rsi_period)
    bundle.macd = _safe("macd", errors, Indicators.macd, closes,
                        params.macd_fast, params.macd_slow, params.macd_signal)
    bundle.bollinger = _safe("bollinger", errors, Indicators.bollinger_bands,
                             closes, params.bb_period, params.bb_std)
    bundle.kdj = _safe("kdj", errors, Indicators.kdj, candles,
                       params.kdj_period, params.kdj_signal)
    bundle.atr = _safe("atr", errors, Indicators.atr, candles, params.atr_period)
    if bundle.atr is not None and price > 0:
        bundle.atr_pct = bundle.atr / price * 100

    p20, p50, p200 = params.ema_periods
    bundle.ema = EmaSet(
        ema20=_safe("ema20", errors, Indicators.ema, closes, p20),
        ema50=_safe("ema50", errors, Indicators.ema, closes, p50),
        ema200=_safe("ema200", errors, Indicators.ema, closes, p200),
    )

    # ── Market structure ───────────────────────────────────────────────
    bundle.trend = _safe("trend", errors, classify_trend, price, bundle.ema, closes, params,
                         default=TrendInfo())
    sr = _safe("support_resistance", errors, find_support_resistance, candles, price, params)
    if sr is not None:
        bundle.support, bundle.resistance = sr
    bundle.breakout = _safe("breakout", errors, detect_breakout, candles, params,
                            default=Breakout())
    bundle.patterns = _safe("patterns", errors, detect_patterns, candles, default=[])

    vol = _safe("volume", errors, volume_profile, candles, params)
    if vol is not None:
        bundle.volume_ratio, bundle.volume_spike = vol

    # ── Sniper sub-detectors ───────────────────────────────────────────
    rsi_values = _safe("rsi_series", errors, Indicators.rsi_series, closes,
                       params.rsi_period, default=[])
    macd_line = _safe("macd_series", errors, Indicators.macd_series, closes,
                      params.macd_fast, params.macd_slow, default=[])
    macd_hist = _safe("macd_histogram", errors, Indicators.macd_histogram_series, closes,
                      params.macd_fast, params.macd_slow, params.macd_signal, default=[])

    signals = SniperSignals(
        divergence=_safe("divergence", errors, sniper.detect_divergence,
                         candles, rsi_values, macd_line, params),
        volume_accumulation=_safe("volume_accumulation", errors,
                                  sniper.detect_volume_accumulation, candles, params),
        early_breakout=_safe("early_breakout", errors, sniper.detect_early_breakout,
                             candles, bundle.support, bundle.resistance,
                             bundle.volume_ratio, params),
        momentum_building=_safe("momentum_building", errors, sniper.detect_momentum_building,
                                candles, macd_hist, rsi_values, bundle.ema.ema20,
                                bundle.volume_ratio),
        squeeze=_safe("squeeze", errors, sniper.detect_squeeze,
                      price, bundle.bollinger, bundle.atr_pct, params),
        volume_surge=_safe("volume_surge", errors, sniper.detect_volume_surge, candles, params),
    )
    score = _safe("sniper_score", errors, sniper.score_sniper_signals,
                  {name: getattr(signals, name) for name in sniper.SIGNAL_NAMES}, params)
    if score is not None:
        signals.score = score
    bundle.sniper_signals = signals

    # ── Trade levels and summary ───────────────────────────────────────
    bundle.trade_levels = _safe("trade_levels", errors, compute_trade_levels,
                                price, bundle.atr, bundle.support, bundle.resistance, params)
    bundle.momentum_score = _safe("momentum_score", errors, momentum_score, bundle, default=0)

    return bundle
