"""
Consensus Predictor
===================
Folds an IndicatorBundle (and optionally a structure SniperSetup) into
one directional TradeCandidate.

Scoring layers (bull / bear points):
  1. Trend            — 25 strong / 15 normal
  2. RSI              — learned buy/sell thresholds, trend caution
  3. MACD             — histogram magnitude, capped 15
  4. Bollinger %B     — outside / near the bands
  5. KDJ J            — extremes
  6. Breakout         — 15
  7. Volume spike     — 10 to the dominant side
  8. S/R proximity    — 10
  9. Candlesticks     — 10
 10. Sniper signals   — six sub-detectors + sniper flag
 11. Structure setup  — smart-money score, capped 15

Confidence starts at 0.4 and grows with the dominant score; sniper
conflicts block, sniper agreement upgrades, and a breakout in the
call's direction promotes it to STRONG_. Minimum confidence comes from
the learning engine's adaptive thresholds.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from sniperdesk.services.analysis.engine import BEARISH_PATTERNS, BULLISH_PATTERNS
from sniperdesk.services.analysis.models import (
    AdaptiveThresholds,
    IndicatorBundle,
    LevelSet,
    SniperSetup,
    TradeCandidate,
    TradeLevels,
)
from sniperdesk.services.analysis.params import PredictorParams

logger = logging.getLogger(__name__)

DIRECTIONAL_SIGNALS = frozenset({
    "LONG", "SHORT", "STRONG_LONG", "STRONG_SHORT", "SNIPER_LONG", "SNIPER_SHORT",
})

PATTERN_NAMES = {
    "BULLISH_ENGULFING": "Bullish engulfing",
    "BEARISH_ENGULFING": "Bearish engulfing",
    "HAMMER": "Hammer pattern",
    "SHOOTING_STAR": "Shooting star",
    "MORNING_STAR": "Morning star",
    "EVENING_STAR": "Evening star",
    "DOJI": "Doji",
}


@dataclass
class TradePlan:
    levels: LevelSet
    position_size: str
    is_sniper: bool


class ConsensusPredictor:
    """Scores indicator layers into a TradeCandidate.

    ``thresholds_provider`` is normally ``LearningEngine.get_thresholds``;
    it is called once per prediction when no thresholds are passed in.
    """

    def __init__(self, params: Optional[PredictorParams] = None,
                 thresholds_provider: Optional[Callable[[], AdaptiveThresholds]] = None):
        self.params = params or PredictorParams()
        self._thresholds_provider = thresholds_provider or AdaptiveThresholds

    # ── Public API ──────────────────────────────────────────────────────

    def predict_next_move(self, indicators: Optional[IndicatorBundle],
                          prior_state: Optional[AdaptiveThresholds] = None,
                          symbol: Optional[str] = None,
                          setup: Optional[SniperSetup] = None,
                          interval: Optional[str] = None) -> TradeCandidate:
        thresholds = prior_state or self._thresholds_provider()
        now = time.time()

        if indicators is None:
            return TradeCandidate(
                direction="neutral", signal="HOLD", confidence=0.5,
                symbol=symbol, interval=interval,
                reasons=["No indicators available"],
                min_confidence=thresholds.min_confidence, timestamp=now,
            )

        p = self.params
        reasons: List[str] = []
        bull, bear, sniper_bonus = self._score_layers(indicators, thresholds, setup, reasons)

        direction = "neutral"
        signal = "HOLD"
        confidence = 0.5
        surge_driven = False
        sniper = indicators.sniper_signals
        sniper_score = sniper.score if sniper is not None else None

        if bull + bear > 0:
            diff = abs(bull - bear)
            dominant = max(bull, bear)

            confidence = p.base_confidence + dominant / p.max_possible_score * p.score_confidence
            if diff > p.wide_diff:
                confidence += p.wide_diff_bonus
            confidence += sniper_bonus / 100
            confidence += indicators.momentum_score / 1000

            sniper_dir = sniper_score.direction if sniper_score else None
            sniper_strong = bool(sniper_score and sniper_score.is_sniper
                                 and sniper_score.score >= p.sniper_conflict_score)

            if diff >= p.min_score_diff:
                side = "long" if bull > bear else "short"
                side_score = bull if side == "long" else bear
                agree = "bullish" if side == "long" else "bearish"
                oppose = "bearish" if side == "long" else "bullish"
                tag = side.upper()
                direction = side

                if sniper_strong and sniper_dir == oppose:
                    reasons.append(f"SNIPER BLOCK: {oppose} sniper ({sniper_score.score}) "
                                   f"opposes {tag} - waiting")
                    confidence -= p.sniper_conflict_penalty
                else:
                    if diff >= p.neutral_zone and side_score >= p.signal_score:
                        signal = tag
                        if side_score >= p.strong_score and diff >= p.strong_diff:
                            signal = f"STRONG_{tag}"
                            confidence += p.strong_bonus
                    if sniper_score and sniper_score.is_sniper and sniper_dir == agree:
                        signal = f"SNIPER_{tag}"
                        confidence += p.sniper_agree_bonus
            else:
                reasons.append(f"Mixed signals (bull: {bull:.0f}, bear: {bear:.0f}, diff: {diff:.0f})")

            # Volume surge can lead before the lagging layers catch up
            surge = sniper.volume_surge if sniper is not None else None
            if surge is not None and surge.detected and surge.strength >= p.surge_override_strength:
                if surge.direction == "bullish" and signal in ("HOLD", "LONG"):
                    direction = "long"
                    signal = "STRONG_LONG" if surge.is_explosive else "SNIPER_LONG"
                    confidence += 0.08 if surge.is_explosive else 0.04
                    surge_driven = True
                    reasons.append("VOLUME SURGE: early momentum entry")
                elif surge.direction == "bearish" and signal in ("HOLD", "SHORT"):
                    direction = "short"
                    signal = "STRONG_SHORT" if surge.is_explosive else "SNIPER_SHORT"
                    confidence += 0.08 if surge.is_explosive else 0.04
                    surge_driven = True
                    reasons.append("VOLUME SURGE: early dump detection")

            if (signal == "HOLD" and sniper_score and sniper_score.is_sniper
                    and sniper_score.score >= p.sniper_hold_upgrade):
                if sniper_score.direction == "bullish":
                    direction, signal = "long", "SNIPER_LONG"
                elif sniper_score.direction == "bearish":
                    direction, signal = "short", "SNIPER_SHORT"
                if signal != "HOLD":
                    confidence += 0.05
                    reasons.append("SNIPER: early entry on strong predictive signal")

            signal = self._apply_breakout_confluence(signal, indicators, reasons)
            confidence += self._structure_adjustment(direction, signal, setup, reasons)

        confidence = round(min(p.max_confidence, max(p.min_confidence, confidence)), 2)

        plan = None
        if signal in DIRECTIONAL_SIGNALS:
            plan = self.build_trade_recommendation(direction, indicators.trade_levels,
                                                   confidence, signal)
            if plan is None:
                reasons.append(f"{signal} dropped: no trade levels with acceptable R:R")
                signal = "HOLD"

        if signal.startswith("SNIPER_"):
            threshold = thresholds.sniper_confidence
        elif surge_driven:
            threshold = thresholds.volume_surge_confidence
        else:
            threshold = thresholds.min_confidence

        out_direction = direction if plan is not None else "neutral"
        candidate = TradeCandidate(
            direction=out_direction,
            signal=signal,
            confidence=confidence,
            symbol=symbol,
            interval=interval,
            entry=plan.levels.entry if plan else None,
            stop_loss=plan.levels.stop_loss if plan else None,
            take_profit=plan.levels.take_profits if plan else [],
            reasons=reasons[:p.max_reasons],
            bias=direction,
            bull_score=round(bull, 2),
            bear_score=round(bear, 2),
            risk_reward=plan.levels.rr if plan else None,
            risk_pct=plan.levels.risk_pct if plan else None,
            position_size=plan.position_size if plan else None,
            is_sniper=bool(plan and plan.is_sniper),
            actionable=out_direction != "neutral" and confidence >= threshold,
            min_confidence=threshold,
            timestamp=now,
        )
        candidate.validate()
        return candidate

    def build_trade_recommendation(self, direction: str, trade_levels: Optional[TradeLevels],
                                   confidence: float, signal: str) -> Optional[TradePlan]:
        """Pick the level set for ``direction``; None when R:R is too thin."""
        if trade_levels is None or signal not in DIRECTIONAL_SIGNALS:
            return None
        if direction not in ("long", "short"):
            return None
        levels = trade_levels.long if direction == "long" else trade_levels.short

        is_sniper = "SNIPER" in signal
        min_rr = self.params.min_rr_sniper if is_sniper else self.params.min_rr
        if levels.rr < min_rr:
            return None

        size = "small"
        if confidence >= 0.75 and levels.rr >= 2:
            size = "normal"
        if confidence >= 0.85 and levels.rr >= 2.5:
            size = "aggressive"
        if is_sniper and confidence >= 0.7 and size == "small":
            size = "normal"
        return TradePlan(levels=levels, position_size=size, is_sniper=is_sniper)

    # ── Scoring layers ──────────────────────────────────────────────────

    def _score_layers(self, ind: IndicatorBundle, thresholds: AdaptiveThresholds,
                      setup: Optional[SniperSetup], reasons: List[str]) -> Tuple[float, float, float]:
        p = self.params
        bull = bear = 0.0
        sniper_bonus = 0.0
        trend = ind.trend

        # 1. Trend
        if trend.direction == "STRONG_UP":
            bull += p.strong_trend_points
            reasons.append("Strong uptrend")
        elif trend.direction == "UP":
            bull += p.trend_points
            reasons.append("Uptrend")
        elif trend.direction == "STRONG_DOWN":
            bear += p.strong_trend_points
            reasons.append("Strong downtrend")
        elif trend.direction == "DOWN":
            bear += p.trend_points
            reasons.append("Downtrend")

        # 2. RSI against learned thresholds
        if ind.rsi is not None:
            rsi = ind.rsi
            buy, sell = thresholds.optimal_rsi_buy, thresholds.optimal_rsi_sell
            caution = " [trend caution]"
            if rsi < buy - 5:
                bull += 8 if trend.is_down else 20
                reasons.append(f"RSI extremely oversold ({rsi:.1f})" + (caution if trend.is_down else ""))
            elif rsi < buy:
                bull += 5 if trend.is_down else 15
                reasons.append(f"RSI oversold ({rsi:.1f})" + (caution if trend.is_down else ""))
            elif rsi < buy + 10:
                bull += 2 if trend.is_down else 5
            elif rsi > sell + 5:
                bear += 8 if trend.is_up else 20
                reasons.append(f"RSI extremely overbought ({rsi:.1f})" + (caution if trend.is_up else ""))
            elif rsi > sell:
                bear += 5 if trend.is_up else 15
                reasons.append(f"RSI overbought ({rsi:.1f})" + (caution if trend.is_up else ""))
            elif rsi > sell - 10:
                bear += 2 if trend.is_up else 5

        # 3. MACD
        if ind.macd is not None:
            hist = ind.macd.histogram
            if hist > 0 and ind.macd.line > ind.macd.signal:
                bull += min(p.macd_cap, abs(hist) * 3)
                if abs(hist) > 1:
                    reasons.append("MACD bullish momentum")
            elif hist < 0 and ind.macd.line < ind.macd.signal:
                bear += min(p.macd_cap, abs(hist) * 3)
                if abs(hist) > 1:
                    reasons.append("MACD bearish momentum")

        # 4. Bollinger
        pb = ind.bollinger.percent_b if ind.bollinger is not None else None
        if pb is not None:
            if pb < 0:
                bull += 15
                reasons.append("Price below lower Bollinger")
            elif pb < 0.2:
                bull += 10
                reasons.append("Near lower Bollinger band")
            elif pb > 1:
                bear += 15
                reasons.append("Price above upper Bollinger")
            elif pb > 0.8:
                bear += 10
                reasons.append("Near upper Bollinger band")

        # 5. KDJ
        if ind.kdj is not None:
            j = ind.kdj.j
            if j < 0:
                bull += 10
                reasons.append("KDJ J extremely oversold")
            elif j < 20:
                bull += 7
                reasons.append("KDJ J oversold")
            elif j > 100:
                bear += 10
                reasons.append("KDJ J extremely overbought")
            elif j > 80:
                bear += 7
                reasons.append("KDJ J overbought")

        # 6. Breakout
        if ind.breakout.direction == "up":
            bull += p.breakout_points
            reasons.append("Breakout above resistance")
        elif ind.breakout.direction == "down":
            bear += p.breakout_points
            reasons.append("Breakdown below support")

        # 7. Volume spike
        if ind.volume_spike:
            if bull > bear:
                bull += p.volume_spike_points
            else:
                bear += p.volume_spike_points
            reasons.append(f"Volume spike ({ind.volume_ratio:.1f}x avg)")

        # 8. Support / resistance proximity
        if ind.support is not None and ind.resistance is not None:
            rng = ind.resistance - ind.support
            if rng > 0:
                position = (ind.current_price - ind.support) / rng
                if position < 0.15:
                    bull += p.sr_points
                    reasons.append("Near support level")
                elif position > 0.85:
                    bear += p.sr_points
                    reasons.append("Near resistance level")

        # 9. Candlestick patterns
        for pattern in ind.patterns:
            if pattern in BULLISH_PATTERNS:
                bull += p.pattern_points
                reasons.append(PATTERN_NAMES[pattern])
                break
            if pattern in BEARISH_PATTERNS:
                bear += p.pattern_points
                reasons.append(PATTERN_NAMES[pattern])
                break
            if pattern == "DOJI":
                reasons.append("Doji - indecision")

        # 10. Sniper sub-signals
        s = ind.sniper_signals
        if s is not None:
            div = s.divergence
            if div is not None and div.detected:
                pts = min(p.divergence_cap, div.strength * 0.15)
                if div.direction == "bullish":
                    bull += pts
                elif div.direction == "bearish":
                    bear += pts
                if div.strength > 40:
                    reasons.append(f"SNIPER: {div.direction} divergence detected")

            acc = s.volume_accumulation
            if acc is not None and acc.detected and acc.direction:
                pts = min(p.accumulation_cap, acc.strength * 0.12)
                if acc.direction == "bullish":
                    bull += pts
                else:
                    bear += pts
                if acc.strength > 50:
                    reasons.append(f"SNIPER: {acc.direction} volume accumulation")

            eb = s.early_breakout
            if eb is not None and eb.detected:
                pts = min(p.early_breakout_cap, eb.strength * 0.1)
                if eb.direction == "bullish":
                    bull += pts
                    if eb.strength > 60:
                        reasons.append("SNIPER: building for breakout")
                elif eb.direction == "bearish":
                    bear += pts
                    if eb.strength > 60:
                        reasons.append("SNIPER: building for breakdown")

            mom = s.momentum_building
            if mom is not None and mom.detected:
                pts = min(p.momentum_cap, mom.strength * 0.08)
                if mom.direction == "bullish":
                    bull += pts
                elif mom.direction == "bearish":
                    bear += pts
                reasons.append(f"SNIPER: {mom.direction} momentum building")

            if s.squeeze is not None and s.squeeze.detected:
                sniper_bonus += p.squeeze_bonus
                reasons.append("SNIPER: squeeze - expecting big move")

            surge = s.volume_surge
            if surge is not None and surge.detected:
                pts = min(p.surge_cap, surge.strength * 0.25)
                label = "EXPLOSIVE " if surge.is_explosive else ""
                if surge.direction == "bullish":
                    bull += pts
                    reasons.append(f"SURGE: {label}{surge.intensity:.1f}x vol ({surge.surge_pct:+.1f}%)")
                elif surge.direction == "bearish":
                    bear += pts
                    reasons.append(f"DUMP SURGE: {label}{surge.intensity:.1f}x vol ({surge.surge_pct:+.1f}%)")
                sniper_bonus += 10 if surge.is_explosive else 5

            if s.score.is_sniper:
                sniper_bonus += 5

        # 11. Structure setup
        if setup is not None and setup.has_setup and setup.recommendation.direction:
            pts = min(p.structure_cap, setup.sniper_score * 0.15)
            if setup.recommendation.direction == "bullish":
                bull += pts
            else:
                bear += pts
            if setup.best_entry is not None:
                reasons.append(f"STRUCTURE: {setup.best_entry.description}")

        return bull, bear, sniper_bonus

    # ── Post-processing ─────────────────────────────────────────────────

    @staticmethod
    def _apply_breakout_confluence(signal: str, ind: IndicatorBundle, reasons: List[str]) -> str:
        """Promote to STRONG_ when a breakout agrees; never demote or reverse."""
        if ind.breakout.direction == "up" and signal in ("LONG", "SNIPER_LONG"):
            reasons.append("Breakout confirms long")
            return "STRONG_LONG"
        if ind.breakout.direction == "down" and signal in ("SHORT", "SNIPER_SHORT"):
            reasons.append("Breakdown confirms short")
            return "STRONG_SHORT"
        return signal

    def _structure_adjustment(self, direction: str, signal: str,
                              setup: Optional[SniperSetup], reasons: List[str]) -> float:
        if setup is None or not setup.has_setup or signal == "HOLD":
            return 0.0
        setup_dir = setup.recommendation.direction
        wanted = "bullish" if direction == "long" else "bearish"
        if setup_dir == wanted:
            return self.params.structure_agree_bonus * setup.sniper_score / 100
        if setup_dir is not None:
            reasons.append(f"STRUCTURE CONFLICT: {setup_dir} setup against {direction}")
            return -self.params.structure_conflict_penalty
        return 0.0


def filter_high_probability(candidates: Iterable[TradeCandidate],
                            min_confidence: Optional[float] = None,
                            min_reasons: int = 2) -> List[TradeCandidate]:
    """Actionable candidates with enough supporting reasons, best first."""
    picked = []
    for c in candidates:
        threshold = c.min_confidence if min_confidence is None else min_confidence
        if (c.direction != "neutral" and c.signal in DIRECTIONAL_SIGNALS
                and c.confidence >= threshold and len(c.reasons) >= min_reasons):
            picked.append(c)
    return sorted(picked, key=lambda c: c.confidence, reverse=True)
