"""
Entry-condition learning: which market conditions at entry (alone and
in combination) precede winning or losing trades.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sniperdesk.services.analysis.engine import BEARISH_PATTERNS, BULLISH_PATTERNS
from sniperdesk.services.analysis.models import IndicatorBundle

BEST_WITH_LIMIT = 5
CONDITION_MIN_TRADES = 5
COMBO_MIN_TRADES = 3


def extract_entry_conditions(indicators: Optional[IndicatorBundle],
                             direction: Optional[str] = None) -> List[str]:
    """Names of every condition active in ``indicators``."""
    if indicators is None:
        return []
    ind = indicators
    conditions: List[str] = []

    if ind.rsi is not None:
        if ind.rsi < 30:
            conditions.append("rsi_oversold")
        elif ind.rsi > 70:
            conditions.append("rsi_overbought")
        else:
            conditions.append("rsi_neutral")

    if ind.macd is not None:
        hist = ind.macd.histogram
        if hist > 0:
            conditions.append("macd_bullish")
        elif hist < 0:
            conditions.append("macd_bearish")
        if ind.macd.line > ind.macd.signal and 0 < hist < 0.5:
            conditions.append("macd_cross_up")
        elif ind.macd.line < ind.macd.signal and -0.5 < hist < 0:
            conditions.append("macd_cross_down")

    trend = ind.trend.direction
    if trend == "STRONG_UP":
        conditions.append("strong_uptrend")
    elif trend == "STRONG_DOWN":
        conditions.append("strong_downtrend")
    elif trend in ("UP", "DOWN"):
        conditions.append("weak_trend")
    else:
        conditions.append("no_trend")

    if direction in ("long", "short") and trend != "NEUTRAL":
        with_trend = (direction == "long") == ind.trend.is_up
        conditions.append("with_trend" if with_trend else "against_trend")

    if ind.volume_spike:
        conditions.append("volume_spike")
    if ind.volume_ratio < 0.5:
        conditions.append("low_volume")
    elif ind.volume_ratio <= 1.5:
        conditions.append("normal_volume")

    s = ind.sniper_signals
    if s is not None:
        if s.volume_surge is not None and s.volume_surge.detected:
            conditions.append("volume_surge")
            if s.volume_surge.is_explosive:
                conditions.append("explosive_volume")
        if s.score.is_sniper:
            conditions.append("sniper_active")
        if s.divergence is not None and s.divergence.detected:
            conditions.append("divergence_detected")
            conditions.append(f"divergence_{s.divergence.direction}")
        if s.squeeze is not None and s.squeeze.detected:
            conditions.append("in_squeeze")
        if s.momentum_building is not None and s.momentum_building.detected:
            conditions.append("momentum_building")
        if s.volume_accumulation is not None and s.volume_accumulation.detected:
            conditions.append("volume_accumulation")

    price = ind.current_price
    if ind.support is not None and price > 0 and (price - ind.support) / price * 100 < 2:
        conditions.append("near_support")
    if ind.resistance is not None and price > 0 and (ind.resistance - price) / price * 100 < 2:
        conditions.append("near_resistance")
    if ind.breakout.direction == "up":
        conditions.append("breakout_up")
    elif ind.breakout.direction == "down":
        conditions.append("breakout_down")

    if ind.funding_rate is not None:
        if ind.funding_rate >= 0.001:
            conditions.append("extreme_funding_long")
        elif ind.funding_rate <= -0.001:
            conditions.append("extreme_funding_short")
        else:
            conditions.append("normal_funding")

    if any(p in BULLISH_PATTERNS for p in ind.patterns):
        conditions.append("bullish_pattern")
    if any(p in BEARISH_PATTERNS for p in ind.patterns):
        conditions.append("bearish_pattern")

    pb = ind.bollinger.percent_b if ind.bollinger is not None else None
    if pb is not None:
        if pb < 0.1:
            conditions.append("bb_lower_band")
        elif pb > 0.9:
            conditions.append("bb_upper_band")
        elif 0.4 <= pb <= 0.6:
            conditions.append("bb_middle")

    return conditions


def combo_key(conditions: List[str]) -> str:
    return "+".join(sorted(conditions))


def record_entry_outcome(entry_conditions: Dict[str, Dict[str, Any]],
                         combos: Dict[str, Dict[str, float]],
                         conditions: List[str], is_win: bool, pnl_percent: float) -> None:
    """Fold one closed trade into per-condition and per-combo statistics (in place)."""
    if not conditions:
        return

    for name in conditions:
        ec = entry_conditions.setdefault(
            name, {"trades": 0, "wins": 0, "avg_return": 0.0, "best_with": []})
        ec["trades"] += 1
        if is_win:
            ec["wins"] += 1
        ec["avg_return"] = (ec["avg_return"] * (ec["trades"] - 1) + pnl_percent) / ec["trades"]

        if is_win and pnl_percent > 1:
            for other in conditions:
                if other != name and other not in ec["best_with"]:
                    ec["best_with"].append(other)
                    if len(ec["best_with"]) > BEST_WITH_LIMIT:
                        ec["best_with"].pop(0)

    if len(conditions) >= 2:
        combo = combos.setdefault(combo_key(conditions), {"trades": 0, "wins": 0, "avg_return": 0.0})
        combo["trades"] += 1
        if is_win:
            combo["wins"] += 1
        combo["avg_return"] = (combo["avg_return"] * (combo["trades"] - 1) + pnl_percent) / combo["trades"]


def rank_setups(entry_conditions: Dict[str, Dict[str, Any]],
                combos: Dict[str, Dict[str, float]]) -> tuple:
    """Return ``(best, worst)`` setup lists, combos first among the best."""
    stats = [
        {
            "name": name,
            "win_rate": s["wins"] / s["trades"],
            "avg_return": s["avg_return"],
            "trades": s["trades"],
            "best_with": list(s.get("best_with", [])),
            "is_combo": False,
        }
        for name, s in entry_conditions.items()
        if s["trades"] >= CONDITION_MIN_TRADES
    ]
    best = sorted((c for c in stats if c["win_rate"] >= 0.5), key=lambda c: -c["win_rate"])[:10]
    worst = sorted((c for c in stats if c["win_rate"] < 0.5), key=lambda c: c["win_rate"])[:10]

    top_combos = sorted(
        (
            {"name": name, "win_rate": s["wins"] / s["trades"], "avg_return": s["avg_return"],
             "trades": s["trades"], "best_with": [], "is_combo": True}
            for name, s in combos.items()
            if s["trades"] >= COMBO_MIN_TRADES and s["wins"] / s["trades"] >= 0.6
        ),
        key=lambda c: -c["win_rate"],
    )[:5]
    return (top_combos + best)[:10], worst


@dataclass
class EntryQuality:
    quality: str                      # EXCELLENT | GOOD | FAIR | POOR | AVOID | UNKNOWN
    reason: str
    conditions: List[str] = field(default_factory=list)
    matching_best: List[str] = field(default_factory=list)
    matching_worst: List[str] = field(default_factory=list)
    expected_win_rate: float = 0.5
    combo_stats: Optional[Dict[str, float]] = None


def assess_entry_quality(conditions: List[str],
                         entry_conditions: Dict[str, Dict[str, Any]],
                         combos: Dict[str, Dict[str, float]],
                         best_setups: List[Dict[str, Any]],
                         worst_setups: List[Dict[str, Any]]) -> EntryQuality:
    if not conditions:
        return EntryQuality("UNKNOWN", "No entry conditions detected")

    best_names = {s["name"] for s in best_setups if not s.get("is_combo")}
    worst_names = {s["name"] for s in worst_setups}
    matching_best = [c for c in conditions if c in best_names]
    matching_worst = [c for c in conditions if c in worst_names]

    expected = 0.5
    samples = 0
    for name in conditions:
        ec = entry_conditions.get(name)
        if ec and ec["trades"] >= CONDITION_MIN_TRADES:
            expected = (expected * samples + ec["wins"] / ec["trades"]) / (samples + 1)
            samples += 1

    combo = combos.get(combo_key(conditions))
    if combo and combo["trades"] >= COMBO_MIN_TRADES:
        expected = (expected + combo["wins"] / combo["trades"]) / 2

    if len(matching_worst) >= 2 or expected < 0.35:
        quality = "AVOID"
        reason = f"Matches {len(matching_worst)} losing patterns: {', '.join(matching_worst)}"
    elif matching_worst and not matching_best:
        quality = "POOR"
        reason = f"Matches losing pattern: {', '.join(matching_worst)}"
    elif len(matching_best) >= 2 or expected >= 0.65:
        quality = "EXCELLENT"
        reason = f"Matches {len(matching_best)} winning patterns ({expected:.0%} expected win rate)"
    elif matching_best or expected >= 0.55:
        quality = "GOOD"
        reason = f"Matches winning pattern: {', '.join(matching_best)}"
    else:
        quality = "FAIR"
        reason = f"Neutral conditions ({expected:.0%} expected win rate)"

    return EntryQuality(
        quality=quality,
        reason=reason,
        conditions=conditions,
        matching_best=matching_best,
        matching_worst=matching_worst,
        expected_win_rate=round(expected, 2),
        combo_stats=dict(combo) if combo else None,
    )
