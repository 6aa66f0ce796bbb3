"""
Sniper Sub-Detectors
====================
Early-entry heuristics evaluated on every candle window:

  • divergence          — price vs RSI (and MACD line) highs/lows
  • volume accumulation — heavy volume while price stays flat
  • early breakout      — price pressing into S/R with rising lows / falling highs
  • momentum building   — MACD histogram expanding bar over bar
  • squeeze             — narrow Bollinger width with low ATR
  • volume surge        — accelerating volume, optionally explosive

Each detector returns a SubSignal (``detected=False`` when nothing fires
or data is short) and ``score_sniper_signals`` folds them into a single
0-100 SniperScore.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from sniperdesk.services.analysis.indicators import Indicators
from sniperdesk.services.analysis.models import (
    BollingerValue,
    Candle,
    SniperScore,
    SubSignal,
    VolumeSurge,
)
from sniperdesk.services.analysis.params import IndicatorParams

SIGNAL_NAMES = (
    "divergence",
    "volume_accumulation",
    "early_breakout",
    "momentum_building",
    "squeeze",
    "volume_surge",
)


# ── Divergence ──────────────────────────────────────────────────────────────

def detect_divergence(
    candles: Sequence[Candle],
    rsi_values: Sequence[float],
    macd_line: Sequence[float],
    params: IndicatorParams,
) -> SubSignal:
    """Split the lookback into halves and compare swing extremes."""
    lb = params.divergence_lookback
    if len(candles) < lb or len(rsi_values) < lb:
        return SubSignal()

    half = lb // 2
    recent = candles[-lb:]
    first, second = recent[:half], recent[half:]
    rsi_recent = list(rsi_values[-lb:])
    r1, r2 = rsi_recent[:half], rsi_recent[half:]
    macd_recent = list(macd_line[-lb:]) if len(macd_line) >= lb else []
    m1, m2 = macd_recent[:half], macd_recent[half:]

    high1 = max(c.high for c in first)
    high2 = max(c.high for c in second)
    low1 = min(c.low for c in first)
    low2 = min(c.low for c in second)

    if high2 > high1 and max(r2) < max(r1):
        strength = params.divergence_base + min(params.divergence_gap_cap, max(r1) - max(r2))
        detail = "price higher high, RSI lower high"
        if macd_recent and max(m2) < max(m1):
            strength += params.divergence_macd_bonus
            detail += ", MACD confirms"
        return SubSignal(True, "bearish", min(100.0, strength), detail)

    if low2 < low1 and min(r2) > min(r1):
        strength = params.divergence_base + min(params.divergence_gap_cap, min(r2) - min(r1))
        detail = "price lower low, RSI higher low"
        if macd_recent and min(m2) > min(m1):
            strength += params.divergence_macd_bonus
            detail += ", MACD confirms"
        return SubSignal(True, "bullish", min(100.0, strength), detail)

    return SubSignal()


# ── Volume accumulation ─────────────────────────────────────────────────────

def detect_volume_accumulation(candles: Sequence[Candle], params: IndicatorParams) -> SubSignal:
    window = params.volume_avg_window
    if len(candles) < window + 3:
        return SubSignal()

    volumes = [c.volume for c in candles]
    avg_base = Indicators.mean(volumes[-(window + 3):-3])
    if avg_base <= 0:
        return SubSignal()
    ratio = Indicators.mean(volumes[-3:]) / avg_base

    start = candles[-3].open
    move_pct = abs(candles[-1].close - start) / start * 100 if start > 0 else 0.0
    if ratio <= params.accumulation_ratio or move_pct >= params.accumulation_max_move_pct:
        return SubSignal()

    flow = candles[-params.accumulation_flow_window:]
    up_vol = sum(c.volume for c in flow if c.is_bullish)
    down_vol = sum(c.volume for c in flow if c.is_bearish)
    direction: Optional[str] = None
    if up_vol > down_vol * params.dominance_ratio:
        direction = "bullish"
    elif down_vol > up_vol * params.dominance_ratio:
        direction = "bearish"

    return SubSignal(
        True, direction, min(100.0, ratio * 30),
        f"volume {ratio:.1f}x average with {move_pct:.2f}% move",
    )


# ── Early breakout ──────────────────────────────────────────────────────────

def detect_early_breakout(
    candles: Sequence[Candle],
    support: Optional[float],
    resistance: Optional[float],
    volume_ratio: float,
    params: IndicatorParams,
) -> SubSignal:
    if len(candles) < 5:
        return SubSignal()

    price = candles[-1].close
    last5 = candles[-5:]
    found: List[SubSignal] = []

    if resistance is not None and resistance > price > 0:
        dist = (resistance - price) / price * 100
        steps = sum(1 for i in range(1, 5) if last5[i].low > last5[i - 1].low)
        if dist <= params.early_breakout_distance_pct and steps >= params.early_breakout_min_steps:
            strength = 40 + (1 - dist) * 30 + steps * 5 + (10 if volume_ratio > 1.2 else 0)
            found.append(SubSignal(
                True, "bullish", max(0.0, min(100.0, strength)),
                f"approaching_resistance {dist:.2f}% away, {steps} rising lows",
            ))

    if support is not None and 0 < support < price:
        dist = (price - support) / price * 100
        steps = sum(1 for i in range(1, 5) if last5[i].high < last5[i - 1].high)
        if dist <= params.early_breakout_distance_pct and steps >= params.early_breakout_min_steps:
            strength = 40 + (1 - dist) * 30 + steps * 5 + (10 if volume_ratio > 1.2 else 0)
            found.append(SubSignal(
                True, "bearish", max(0.0, min(100.0, strength)),
                f"approaching_support {dist:.2f}% away, {steps} falling highs",
            ))

    if not found:
        return SubSignal()
    return max(found, key=lambda s: s.strength)


# ── Momentum building ───────────────────────────────────────────────────────

def detect_momentum_building(
    candles: Sequence[Candle],
    macd_hist: Sequence[float],
    rsi_values: Sequence[float],
    ema20: Optional[float],
    volume_ratio: float,
) -> SubSignal:
    if len(macd_hist) < 4:
        return SubSignal()

    h = list(macd_hist[-4:])
    if all(h[i] > h[i - 1] for i in range(1, 4)):
        direction = "bullish"
    elif all(h[i] < h[i - 1] for i in range(1, 4)):
        direction = "bearish"
    else:
        return SubSignal()

    price = candles[-1].close
    strength = 50.0
    if len(rsi_values) >= 2:
        rsi_now, rsi_prev = rsi_values[-1], rsi_values[-2]
        if direction == "bullish" and rsi_now > rsi_prev and 45 <= rsi_now <= 70:
            strength += 15
        elif direction == "bearish" and rsi_now < rsi_prev and 30 <= rsi_now <= 55:
            strength += 15
    if ema20 is not None:
        if (direction == "bullish" and price > ema20) or (direction == "bearish" and price < ema20):
            strength += 15
    if volume_ratio > 1:
        strength += 10

    return SubSignal(True, direction, min(100.0, strength), "MACD histogram expanding")


# ── Squeeze ─────────────────────────────────────────────────────────────────

def detect_squeeze(
    price: float,
    bollinger: Optional[BollingerValue],
    atr_pct: Optional[float],
    params: IndicatorParams,
) -> SubSignal:
    if bollinger is None or atr_pct is None:
        return SubSignal()
    width = bollinger.width_pct
    if width >= params.squeeze_width_pct or atr_pct >= params.squeeze_atr_pct:
        return SubSignal()
    strength = min(100.0, (params.squeeze_width_pct - width) / params.squeeze_width_pct * 100)
    direction = "bullish" if price > bollinger.middle else "bearish" if price < bollinger.middle else None
    return SubSignal(True, direction, strength, f"BB width {width:.2f}%, ATR {atr_pct:.2f}%")


# ── Volume surge ────────────────────────────────────────────────────────────

def detect_volume_surge(candles: Sequence[Candle], params: IndicatorParams) -> VolumeSurge:
    window = params.volume_avg_window
    if len(candles) < window + 4:
        return VolumeSurge()

    volumes = [c.volume for c in candles]
    avg_base = Indicators.mean(volumes[-(window + 3):-3])
    if avg_base <= 0:
        return VolumeSurge()

    intensity = Indicators.mean(volumes[-3:]) / avg_base
    acceleration = sum(
        1 for i in range(len(volumes) - 3, len(volumes))
        if volumes[i] > volumes[i - 1] * params.surge_step_ratio
    )

    last = candles[-1]
    consecutive = 0
    if last.is_bullish or last.is_bearish:
        for c in reversed(candles):
            if c.is_bullish == last.is_bullish and c.is_bearish == last.is_bearish:
                consecutive += 1
            else:
                break

    ref = candles[-4].close
    surge_pct = (last.close - ref) / ref * 100 if ref > 0 else 0.0

    detected = (
        (intensity >= params.surge_intensity_strong and acceleration >= 2)
        or (intensity >= params.surge_intensity_weak and acceleration >= 1
            and consecutive >= params.surge_min_consecutive)
    )
    if not detected:
        return VolumeSurge(intensity=intensity, acceleration=acceleration,
                           consecutive=consecutive, surge_pct=surge_pct)

    is_explosive = abs(surge_pct) > params.explosive_move_pct
    if surge_pct > 0:
        direction = "bullish"
    elif surge_pct < 0:
        direction = "bearish"
    else:
        direction = "bullish" if last.is_bullish else "bearish" if last.is_bearish else None

    strength = min(100.0, intensity * 15 + acceleration * 10 + (20 if is_explosive else 0))
    return VolumeSurge(
        detected=True,
        direction=direction,
        strength=strength,
        detail=f"volume {intensity:.1f}x, {acceleration} accelerating bars, {surge_pct:+.2f}%",
        intensity=intensity,
        acceleration=acceleration,
        consecutive=consecutive,
        surge_pct=surge_pct,
        is_explosive=is_explosive,
    )


# ── Aggregate score ─────────────────────────────────────────────────────────

def score_sniper_signals(signals: Dict[str, Optional[SubSignal]],
                         params: IndicatorParams) -> SniperScore:
    """Weighted sum of detected strengths; direction by weighted vote."""
    weights = {
        "divergence": params.weight_divergence,
        "volume_accumulation": params.weight_accumulation,
        "early_breakout": params.weight_early_breakout,
        "momentum_building": params.weight_momentum,
        "squeeze": params.weight_squeeze,
        "volume_surge": params.weight_volume_surge,
    }
    total = bull = bear = 0.0
    fired: List[str] = []
    for name in SIGNAL_NAMES:
        sig = signals.get(name)
        if sig is None or not sig.detected:
            continue
        contribution = sig.strength * weights[name]
        total += contribution
        if sig.direction == "bullish":
            bull += contribution
        elif sig.direction == "bearish":
            bear += contribution
        fired.append(f"{name}:{sig.direction or 'neutral'}")

    if len(fired) >= 3:
        total += params.confluence_bonus

    score = int(round(min(100.0, total)))
    direction = "bullish" if bull > bear else "bearish" if bear > bull else None
    return SniperScore(
        score=score,
        direction=direction,
        signals=fired,
        is_sniper=score >= params.sniper_threshold,
    )
