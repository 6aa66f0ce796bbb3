"""
Sniper / Structure Engine
=========================
Smart-money entry structures read from the raw candle window:

  • Liquidity grab    — sweep of a swing point closed back inside
  • Fair value gap    — 3-candle imbalance price is trading into
  • Order block       — last opposite candle before an impulse
  • Breaker block     — broken order block being retested
  • Mitigation block  — first return to an untouched impulse candle
  • Inducement        — fake range break that reverses next candle
  • Optimal entry     — 61.8%-78.6% retracement in the trend direction
  • Smart money div.  — volume flow against the price drift

Every detector is its own predicate with its own confidence; the
combined score adds confluence, kill-zone and alignment bonuses.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from sniperdesk.services.analysis.engine import find_swings
from sniperdesk.services.analysis.models import (
    Candle,
    IndicatorBundle,
    KillZone,
    SniperSetup,
    StructureRecommendation,
    StructureSignal,
)
from sniperdesk.services.analysis.params import StructureParams

logger = logging.getLogger(__name__)

DEFAULT_PARAMS = StructureParams()

# Checked in order; the first matching window names the session.
KILL_ZONES = (
    ("LONDON_OPEN", 7, 10),
    ("NY_OPEN", 12, 15),
    ("LONDON_CLOSE", 15, 17),
    ("NY_CLOSE", 20, 22),
    ("ASIAN", 0, 8),
)
OPTIMAL_KILL_ZONES = frozenset({"LONDON_OPEN", "NY_OPEN"})


# ── Detectors ───────────────────────────────────────────────────────────────

def detect_liquidity_grab(candles: Sequence[Candle],
                          params: StructureParams = DEFAULT_PARAMS) -> Optional[StructureSignal]:
    if len(candles) < params.grab_lookback:
        return None
    recent = candles[-params.grab_lookback:]
    last = recent[-1]
    prior = recent[:-1]
    high_idx, low_idx = find_swings(prior, params.swing_span)
    body = last.body

    for i in low_idx:
        level = prior[i].low
        if last.low < level < last.close and last.is_bullish:
            wick = level - last.low
            if wick > body * params.grab_wick_body_ratio:
                return StructureSignal(
                    type="LIQUIDITY_GRAB",
                    direction="bullish",
                    confidence=params.grab_base_conf + min(wick / body * 10, 20),
                    entry_zone=last.close,
                    stop_loss=last.low * 0.998,
                    target=last.close + (last.close - last.low) * 2,
                    description=f"Sweep below swing low {level:.4f} rejected",
                )

    for i in high_idx:
        level = prior[i].high
        if last.high > level > last.close and last.is_bearish:
            wick = last.high - level
            if wick > body * params.grab_wick_body_ratio:
                return StructureSignal(
                    type="LIQUIDITY_GRAB",
                    direction="bearish",
                    confidence=params.grab_base_conf + min(wick / body * 10, 20),
                    entry_zone=last.close,
                    stop_loss=last.high * 1.002,
                    target=last.close - (last.high - last.close) * 2,
                    description=f"Sweep above swing high {level:.4f} rejected",
                )
    return None


def detect_fair_value_gap(candles: Sequence[Candle],
                          params: StructureParams = DEFAULT_PARAMS) -> Optional[StructureSignal]:
    if len(candles) < 5:
        return None
    recent = candles[-params.fvg_lookback:]
    price = recent[-1].close
    tol = params.fvg_tolerance_pct / 100

    for i in range(len(recent) - 1, 1, -1):
        c1, c2, c3 = recent[i - 2], recent[i - 1], recent[i]

        if c3.low > c1.high:
            gap = c3.low - c1.high
            gap_pct = gap / c2.close * 100
            if gap_pct >= params.fvg_min_gap_pct and c1.high * (1 - tol) <= price <= c3.low:
                return StructureSignal(
                    type="FAIR_VALUE_GAP",
                    direction="bullish",
                    confidence=params.fvg_base_conf + min(gap_pct * 10, 30),
                    entry_zone=(c3.low + c1.high) / 2,
                    stop_loss=c1.high * 0.995,
                    target=price + gap * 3,
                    description=f"Bullish FVG ({gap_pct:.2f}% gap)",
                )

        if c3.high < c1.low:
            gap = c1.low - c3.high
            gap_pct = gap / c2.close * 100
            if gap_pct >= params.fvg_min_gap_pct and c3.high <= price <= c1.low * (1 + tol):
                return StructureSignal(
                    type="FAIR_VALUE_GAP",
                    direction="bearish",
                    confidence=params.fvg_base_conf + min(gap_pct * 10, 30),
                    entry_zone=(c1.low + c3.high) / 2,
                    stop_loss=c1.low * 1.005,
                    target=price - gap * 3,
                    description=f"Bearish FVG ({gap_pct:.2f}% gap)",
                )
    return None


def detect_order_block(candles: Sequence[Candle],
                       params: StructureParams = DEFAULT_PARAMS) -> Optional[StructureSignal]:
    if len(candles) < 15:
        return None
    recent = candles[-params.ob_lookback:]
    price = recent[-1].close

    for i in range(len(recent) - 1, 4, -1):
        candle = recent[i]
        move_pct = candle.body / candle.open * 100 if candle.open > 0 else 0.0
        if move_pct < params.ob_min_move_pct:
            continue
        before = list(reversed(recent[max(0, i - 5):i]))

        if candle.is_bullish:
            block = next((c for c in before if c.is_bearish), None)
            if block and block.close * 0.998 <= price <= block.open * 1.002:
                return StructureSignal(
                    type="ORDER_BLOCK",
                    direction="bullish",
                    confidence=params.ob_base_conf + min(move_pct * 5, 25),
                    entry_zone=(block.open + block.close) / 2,
                    stop_loss=block.close * 0.995,
                    target=price * (1 + move_pct / 100),
                    description="Price back at bullish order block",
                )

        if candle.is_bearish:
            block = next((c for c in before if c.is_bullish), None)
            if block and block.open * 0.998 <= price <= block.close * 1.002:
                return StructureSignal(
                    type="ORDER_BLOCK",
                    direction="bearish",
                    confidence=params.ob_base_conf + min(move_pct * 5, 25),
                    entry_zone=(block.open + block.close) / 2,
                    stop_loss=block.close * 1.005,
                    target=price * (1 - move_pct / 100),
                    description="Price back at bearish order block",
                )
    return None


def detect_breaker_block(candles: Sequence[Candle],
                         params: StructureParams = DEFAULT_PARAMS) -> Optional[StructureSignal]:
    if len(candles) < 30:
        return None
    recent = candles[-params.breaker_lookback:]
    price = recent[-1].close

    for i in range(10, len(recent) - 5):
        candle = recent[i]
        if candle.close <= 0 or candle.body / candle.close < params.breaker_min_body:
            continue
        after = recent[i + 1:]

        if candle.is_bearish:
            high, low = candle.open, candle.close
            if any(c.close > high for c in after) and low * 0.998 <= price <= high * 1.005:
                return StructureSignal(
                    type="BREAKER_BLOCK",
                    direction="bullish",
                    confidence=params.breaker_conf,
                    entry_zone=high,
                    stop_loss=low * 0.995,
                    description="Broken bearish block retested as support",
                )

        if candle.is_bullish:
            high, low = candle.close, candle.open
            if any(c.close < low for c in after) and low * 0.995 <= price <= high * 1.002:
                return StructureSignal(
                    type="BREAKER_BLOCK",
                    direction="bearish",
                    confidence=params.breaker_conf,
                    entry_zone=low,
                    stop_loss=high * 1.005,
                    description="Broken bullish block retested as resistance",
                )
    return None


def detect_mitigation_block(candles: Sequence[Candle],
                            params: StructureParams = DEFAULT_PARAMS) -> Optional[StructureSignal]:
    if len(candles) < 25:
        return None
    recent = candles[-params.mitigation_lookback:]
    price = recent[-1].close

    for i in range(5, len(recent) - 10):
        candle = recent[i]
        body_pct = candle.body / candle.close * 100 if candle.close > 0 else 0.0
        if body_pct <= params.mitigation_min_body_pct:
            continue
        untested = recent[i + 1:-3]
        zone = candle.open

        if candle.is_bullish:
            touched = any(c.low <= zone * 1.002 for c in untested)
            if not touched and candle.open * 0.998 <= price <= candle.close * 1.002:
                return StructureSignal(
                    type="MITIGATION_BLOCK",
                    direction="bullish",
                    confidence=params.mitigation_conf,
                    entry_zone=zone,
                    stop_loss=zone * 0.99,
                    description="First return to bullish mitigation zone",
                )

        if candle.is_bearish:
            touched = any(c.high >= zone * 0.998 for c in untested)
            if not touched and candle.close * 0.998 <= price <= candle.open * 1.002:
                return StructureSignal(
                    type="MITIGATION_BLOCK",
                    direction="bearish",
                    confidence=params.mitigation_conf,
                    entry_zone=zone,
                    stop_loss=zone * 1.01,
                    description="First return to bearish mitigation zone",
                )
    return None


def detect_inducement(candles: Sequence[Candle],
                      params: StructureParams = DEFAULT_PARAMS) -> Optional[StructureSignal]:
    if len(candles) < 15:
        return None
    recent = candles[-params.inducement_lookback:]
    last, prev = recent[-1], recent[-2]
    range_high = max(c.high for c in recent[:-2])
    range_low = min(c.low for c in recent[:-2])

    if prev.low < range_low and prev.close < range_low:
        if last.close > prev.high and last.is_bullish:
            return StructureSignal(
                type="INDUCEMENT",
                direction="bullish",
                confidence=params.inducement_conf,
                entry_zone=last.close,
                stop_loss=prev.low * 0.998,
                target=range_high,
                description="Fake breakdown trapped shorts",
            )

    if prev.high > range_high and prev.close > range_high:
        if last.close < prev.low and last.is_bearish:
            return StructureSignal(
                type="INDUCEMENT",
                direction="bearish",
                confidence=params.inducement_conf,
                entry_zone=last.close,
                stop_loss=prev.high * 1.002,
                target=range_low,
                description="Fake breakout trapped longs",
            )
    return None


def detect_optimal_trade_entry(candles: Sequence[Candle], indicators: Optional[IndicatorBundle],
                               params: StructureParams = DEFAULT_PARAMS) -> Optional[StructureSignal]:
    if len(candles) < 20 or indicators is None:
        return None
    recent = candles[-params.ote_lookback:]
    price = recent[-1].close
    swing_high = max(c.high for c in recent)
    swing_low = min(c.low for c in recent)
    rng = swing_high - swing_low
    if price <= 0 or rng / price * 100 < params.ote_min_range_pct:
        return None

    trend = indicators.trend
    if trend.is_up:
        upper = swing_high - rng * params.ote_fib_low
        lower = swing_high - rng * params.ote_fib_high
        if lower <= price <= upper:
            retrace = (swing_high - price) / rng * 100
            return StructureSignal(
                type="OPTIMAL_TRADE_ENTRY",
                direction="bullish",
                confidence=params.ote_conf,
                entry_zone=price,
                stop_loss=swing_low * 0.995,
                target=swing_high * 1.005,
                description=f"Bullish OTE at {retrace:.1f}% retracement",
            )

    if trend.is_down:
        lower = swing_low + rng * params.ote_fib_low
        upper = swing_low + rng * params.ote_fib_high
        if lower <= price <= upper:
            retrace = (price - swing_low) / rng * 100
            return StructureSignal(
                type="OPTIMAL_TRADE_ENTRY",
                direction="bearish",
                confidence=params.ote_conf,
                entry_zone=price,
                stop_loss=swing_high * 1.005,
                target=swing_low * 0.995,
                description=f"Bearish OTE at {retrace:.1f}% retracement",
            )
    return None


def detect_smart_money_divergence(candles: Sequence[Candle],
                                  params: StructureParams = DEFAULT_PARAMS) -> Optional[StructureSignal]:
    if len(candles) < params.smd_lookback:
        return None
    recent = candles[-params.smd_lookback:]
    first = recent[0].close
    if first <= 0:
        return None
    change = (recent[-1].close - first) / first * 100
    volumes = [c.volume for c in recent]
    avg = sum(volumes) / len(volumes)
    if avg <= 0:
        return None
    ratio = (sum(volumes[-3:]) / 3) / avg
    if ratio <= params.smd_volume_ratio:
        return None

    up_vol = sum(c.volume for c in recent if c.is_bullish)
    down_vol = sum(c.volume for c in recent if c.is_bearish)
    conf = params.smd_base_conf + min(ratio * 5, 20)

    if -2 < change < 0.5 and up_vol > down_vol * params.smd_dominance:
        return StructureSignal(
            type="SMART_MONEY_DIVERGENCE",
            direction="bullish",
            confidence=conf,
            entry_zone=recent[-1].close,
            stop_loss=min(c.low for c in recent) * 0.995,
            description="Accumulation under flat price",
        )
    if -0.5 < change < 2 and down_vol > up_vol * params.smd_dominance:
        return StructureSignal(
            type="SMART_MONEY_DIVERGENCE",
            direction="bearish",
            confidence=conf,
            entry_zone=recent[-1].close,
            stop_loss=max(c.high for c in recent) * 1.005,
            description="Distribution under flat price",
        )
    return None


# ── Kill zone ───────────────────────────────────────────────────────────────

def detect_killzone(now: Optional[datetime] = None) -> KillZone:
    """Named trading session for the UTC hour of ``now``."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    hour = now.hour
    for name, start, end in KILL_ZONES:
        if start <= hour < end:
            return KillZone(name=name, hour=hour, is_optimal=name in OPTIMAL_KILL_ZONES)
    return KillZone(name="OFF_HOURS", hour=hour, is_optimal=False)


# ── Scoring ─────────────────────────────────────────────────────────────────

def combined_score(entries: List[StructureSignal], killzone: KillZone,
                   params: StructureParams = DEFAULT_PARAMS) -> int:
    if not entries:
        return 0
    score = sum(e.confidence for e in entries) * params.score_weight
    if len(entries) >= 3:
        score += params.three_way_bonus
    elif len(entries) == 2:
        score += params.two_way_bonus
    if killzone.is_optimal:
        score += params.killzone_bonus
    if len({e.direction for e in entries}) == 1:
        score += params.alignment_bonus
    return int(min(round(score), 100))


def build_recommendation(entries: List[StructureSignal], killzone: KillZone,
                         score: int, indicators: Optional[IndicatorBundle],
                         params: StructureParams = DEFAULT_PARAMS) -> StructureRecommendation:
    if not entries:
        return StructureRecommendation(reasons=["No structure setups detected"])

    best = entries[0]
    confluence = sum(1 for e in entries if e.direction == best.direction)
    trend = indicators.trend if indicators is not None else None
    aligned = trend is not None and (
        (best.direction == "bullish" and trend.is_up)
        or (best.direction == "bearish" and trend.is_down)
    )

    confidence = best.confidence
    if confluence >= 3:
        confidence += 10
    elif confluence >= 2:
        confidence += 5
    if aligned:
        confidence += 5
    if killzone.is_optimal:
        confidence += 5

    action = "WAIT"
    if score >= params.setup_threshold:
        action = "SNIPER_LONG" if best.direction == "bullish" else "SNIPER_SHORT"

    return StructureRecommendation(
        action=action,
        direction=best.direction,
        confidence=min(confidence, params.max_recommendation_conf),
        entry_zone=best.entry_zone,
        stop_loss=best.stop_loss,
        target=best.target,
        reasons=[e.description for e in entries[:3]],
    )


# ── Entry point ─────────────────────────────────────────────────────────────

def analyze_sniper_setup(candles: Sequence[Candle], indicators: Optional[IndicatorBundle],
                         now: Optional[datetime] = None,
                         params: Optional[StructureParams] = None) -> SniperSetup:
    params = params or DEFAULT_PARAMS
    if not candles or len(candles) < params.min_candles:
        return SniperSetup()

    candles = list(candles)
    detectors: List[tuple] = [
        ("liquidity_grab", detect_liquidity_grab, (candles, params)),
        ("fair_value_gap", detect_fair_value_gap, (candles, params)),
        ("order_block", detect_order_block, (candles, params)),
        ("breaker_block", detect_breaker_block, (candles, params)),
        ("mitigation_block", detect_mitigation_block, (candles, params)),
        ("inducement", detect_inducement, (candles, params)),
        ("optimal_trade_entry", detect_optimal_trade_entry, (candles, indicators, params)),
        ("smart_money_divergence", detect_smart_money_divergence, (candles, params)),
    ]

    entries: List[StructureSignal] = []
    for name, fn, args in detectors:
        signal = _run_detector(name, fn, args)
        if signal is not None:
            entries.append(signal)

    entries.sort(key=lambda e: e.confidence, reverse=True)
    killzone = detect_killzone(now)
    score = combined_score(entries, killzone, params)

    return SniperSetup(
        has_setup=bool(entries),
        entries=entries,
        best_entry=entries[0] if entries else None,
        sniper_score=score,
        killzone=killzone,
        recommendation=build_recommendation(entries, killzone, score, indicators, params),
    )


def _run_detector(name: str, fn: Callable, args: tuple) -> Optional[StructureSignal]:
    try:
        return fn(*args)
    except Exception as e:
        logger.warning(f"Structure detector '{name}' failed: {e}")
        return None
