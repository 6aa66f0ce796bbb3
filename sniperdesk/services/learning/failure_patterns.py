"""
Failure Pattern Catalog
=======================
Named explanations for losing trades, each an explicit predicate over
the entry/exit indicator snapshots and hold time:

  FAKEOUT             breakout entry reversed within 2h (loss > 2%)
  RESISTANCE_REJECT   long opened < 1.5% under resistance
  SUPPORT_REJECT      short opened < 1.5% above support
  LATE_TREND          RSI already stretched in the trade's direction
  VOLUME_TRAP         volume spike was accumulation against the trade
  RANGE_BREAK_FAIL    price fell back through the broken level
  DIVERGENCE_IGNORED  opened against a detected divergence
  NEWS_REVERSAL       sudden high-volume move against the trade
  LIQUIDATION_HUNT    stopped out > 3% inside an hour
  OVERLEVERAGED       extreme funding on the crowded side

``assess_pre_trade`` runs the entry-side half of the same predicates
against a live bundle, weighted by how often each pattern has hurt us.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from sniperdesk.services.analysis.models import IndicatorBundle, TradeClosedEvent

HOUR_MS = 60 * 60 * 1000

AVOID_SCORE = 50
RISK_POINTS = {"high": 35, "medium": 20}


@dataclass
class FailureContext:
    symbol: str
    direction: str
    pnl_percent: float
    hold_time_ms: int
    entry_price: Optional[float]
    exit_price: Optional[float]
    entry: Optional[IndicatorBundle]
    exit: Optional[IndicatorBundle]

    @classmethod
    def from_event(cls, event: TradeClosedEvent) -> "FailureContext":
        entry_price = event.entry_price
        if entry_price is None and event.entry_indicators is not None:
            entry_price = event.entry_indicators.current_price
        exit_price = event.exit_price
        if exit_price is None and event.exit_indicators is not None:
            exit_price = event.exit_indicators.current_price
        return cls(
            symbol=event.symbol,
            direction=event.direction,
            pnl_percent=event.pnl_percent,
            hold_time_ms=event.hold_time_ms,
            entry_price=entry_price,
            exit_price=exit_price,
            entry=event.entry_indicators,
            exit=event.exit_indicators,
        )


@dataclass
class FailureMatch:
    pattern: str
    confidence: float
    detail: str


@dataclass(frozen=True)
class FailurePattern:
    name: str
    description: str
    confidence: float
    detect: Callable[[FailureContext], Optional[str]]


# ── Predicates ──────────────────────────────────────────────────────────────

def _against(direction: str, signal_direction: Optional[str]) -> bool:
    return ((direction == "long" and signal_direction == "bearish")
            or (direction == "short" and signal_direction == "bullish"))


def _fakeout(ctx: FailureContext) -> Optional[str]:
    e = ctx.entry
    if e is None or e.breakout.direction is None:
        return None
    if ctx.hold_time_ms < 2 * HOUR_MS and ctx.pnl_percent < -2:
        return f"Breakout {e.breakout.direction} failed within {round(ctx.hold_time_ms / 60000)} min"
    return None


def _resistance_reject(ctx: FailureContext) -> Optional[str]:
    e = ctx.entry
    if ctx.direction != "long" or e is None or e.resistance is None or not ctx.entry_price:
        return None
    dist = (e.resistance - ctx.entry_price) / ctx.entry_price * 100
    if dist < 1.5 and ctx.pnl_percent < -2:
        return f"Entered LONG only {dist:.1f}% below resistance"
    return None


def _support_reject(ctx: FailureContext) -> Optional[str]:
    e = ctx.entry
    if ctx.direction != "short" or e is None or e.support is None or not ctx.entry_price:
        return None
    dist = (ctx.entry_price - e.support) / ctx.entry_price * 100
    if dist < 1.5 and ctx.pnl_percent < -2:
        return f"Entered SHORT only {dist:.1f}% above support"
    return None


def _late_trend(ctx: FailureContext) -> Optional[str]:
    rsi = ctx.entry.rsi if ctx.entry is not None else None
    if rsi is None:
        return None
    if (ctx.direction == "long" and rsi > 65) or (ctx.direction == "short" and rsi < 35):
        return f"RSI was already {rsi:.0f} at entry (trend exhausted)"
    return None


def _volume_trap(ctx: FailureContext) -> Optional[str]:
    e = ctx.entry
    if e is None or not e.volume_spike or e.sniper_signals is None:
        return None
    acc = e.sniper_signals.volume_accumulation
    if acc is not None and acc.detected and _against(ctx.direction, acc.direction):
        return f"Volume spike was {acc.direction} accumulation (against position)"
    return None


def _range_break_fail(ctx: FailureContext) -> Optional[str]:
    e = ctx.entry
    if e is None or e.breakout.level is None or ctx.exit_price is None or ctx.pnl_percent >= 0:
        return None
    level = e.breakout.level
    if e.breakout.direction == "up" and ctx.direction == "long" and ctx.exit_price < level:
        return f"Closed back under broken resistance {level:.4f}"
    if e.breakout.direction == "down" and ctx.direction == "short" and ctx.exit_price > level:
        return f"Closed back over broken support {level:.4f}"
    return None


def _divergence_ignored(ctx: FailureContext) -> Optional[str]:
    e = ctx.entry
    if e is None or e.sniper_signals is None:
        return None
    div = e.sniper_signals.divergence
    if div is not None and div.detected and _against(ctx.direction, div.direction):
        return f"Ignored {div.direction} divergence warning at entry"
    return None


def _news_reversal(ctx: FailureContext) -> Optional[str]:
    x = ctx.exit
    if x is None or ctx.pnl_percent > -3 or ctx.hold_time_ms >= 4 * HOUR_MS:
        return None
    if x.volume_ratio >= 3:
        return f"Exit bar volume {x.volume_ratio:.1f}x average, sudden reversal"
    return None


def _liquidation_hunt(ctx: FailureContext) -> Optional[str]:
    if ctx.entry is None or ctx.exit is None:
        return None
    if ctx.pnl_percent < -3 and ctx.hold_time_ms < HOUR_MS:
        return f"Quick stop-out ({round(ctx.hold_time_ms / 60000)} min), possible liquidity grab"
    return None


def _overleveraged(ctx: FailureContext) -> Optional[str]:
    rate = ctx.entry.funding_rate if ctx.entry is not None else None
    if rate is None:
        return None
    if (ctx.direction == "long" and rate > 0.001) or (ctx.direction == "short" and rate < -0.001):
        side = "longs" if ctx.direction == "long" else "shorts"
        return f"Funding was {rate * 100:.3f}% (overleveraged {side})"
    return None


FAILURE_PATTERNS = (
    FailurePattern("FAKEOUT", "Entered on breakout that immediately reversed", 0.8, _fakeout),
    FailurePattern("RESISTANCE_REJECT", "Bought into resistance, got rejected", 0.85, _resistance_reject),
    FailurePattern("SUPPORT_REJECT", "Shorted into support, got bounced", 0.85, _support_reject),
    FailurePattern("LATE_TREND", "Entered too late in move, trend exhausted", 0.75, _late_trend),
    FailurePattern("VOLUME_TRAP", "High volume entry was accumulation against position", 0.9, _volume_trap),
    FailurePattern("RANGE_BREAK_FAIL", "Range breakout failed, price returned to range", 0.75, _range_break_fail),
    FailurePattern("DIVERGENCE_IGNORED", "Entered despite divergence warning", 0.85, _divergence_ignored),
    FailurePattern("NEWS_REVERSAL", "Sudden high-volume reversal, likely news driven", 0.6, _news_reversal),
    FailurePattern("LIQUIDATION_HUNT", "Stop hunted before reversal (liquidity grab)", 0.7, _liquidation_hunt),
    FailurePattern("OVERLEVERAGED", "Extreme funding indicated overleveraged market", 0.8, _overleveraged),
)

PATTERN_NAMES = tuple(p.name for p in FAILURE_PATTERNS)


def detect_failures(ctx: FailureContext) -> List[FailureMatch]:
    matches = []
    for pattern in FAILURE_PATTERNS:
        detail = pattern.detect(ctx)
        if detail is not None:
            matches.append(FailureMatch(pattern.name, pattern.confidence, detail))
    return matches


# ── Pre-trade check ─────────────────────────────────────────────────────────

@dataclass
class PatternRisk:
    pattern: str
    risk: str                         # high | medium
    reason: str


@dataclass
class FailureRisk:
    has_risk: bool = False
    high_risk: bool = False
    risk_score: int = 0
    should_avoid: bool = False
    recommendation: str = "OK"        # OK | CAUTION | AVOID
    risks: List[PatternRisk] = field(default_factory=list)


def assess_pre_trade(indicators: Optional[IndicatorBundle], direction: str,
                     counts: Dict[str, int], total_learnings: int) -> FailureRisk:
    if indicators is None:
        return FailureRisk()
    risks: List[PatternRisk] = []
    price = indicators.current_price

    if indicators.breakout.direction is not None:
        fakeouts = counts.get("FAKEOUT", 0)
        rate = fakeouts / max(total_learnings, 1) if fakeouts > 5 else 0.0
        if rate > 0.15:
            risks.append(PatternRisk("FAKEOUT", "high", f"Breakouts fake out {rate:.0%} of the time"))
        if counts.get("RANGE_BREAK_FAIL", 0) > 3:
            risks.append(PatternRisk("RANGE_BREAK_FAIL", "medium", "Recent range breaks have failed"))

    if direction == "long" and indicators.resistance is not None and price > 0:
        dist = (indicators.resistance - price) / price * 100
        if dist < 1.5 and counts.get("RESISTANCE_REJECT", 0) > 3:
            risks.append(PatternRisk("RESISTANCE_REJECT", "high", f"Only {dist:.1f}% to resistance"))

    if direction == "short" and indicators.support is not None and price > 0:
        dist = (price - indicators.support) / price * 100
        if dist < 1.5 and counts.get("SUPPORT_REJECT", 0) > 3:
            risks.append(PatternRisk("SUPPORT_REJECT", "high", f"Only {dist:.1f}% to support"))

    rsi = indicators.rsi
    if rsi is not None and ((direction == "long" and rsi > 65) or (direction == "short" and rsi < 35)):
        if counts.get("LATE_TREND", 0) > 3:
            risks.append(PatternRisk("LATE_TREND", "medium", f"RSI {rsi:.0f} suggests late entry"))

    s = indicators.sniper_signals
    if s is not None and s.divergence is not None and s.divergence.detected:
        if _against(direction, s.divergence.direction) and counts.get("DIVERGENCE_IGNORED", 0) > 2:
            risks.append(PatternRisk("DIVERGENCE_IGNORED", "high",
                                     f"{s.divergence.direction} divergence detected"))
    if s is not None and indicators.volume_spike and s.volume_accumulation is not None:
        acc = s.volume_accumulation
        if acc.detected and _against(direction, acc.direction) and counts.get("VOLUME_TRAP", 0) > 2:
            risks.append(PatternRisk("VOLUME_TRAP", "medium", f"Volume is {acc.direction} accumulation"))

    rate = indicators.funding_rate
    if rate is not None and ((direction == "long" and rate > 0.0008) or (direction == "short" and rate < -0.0008)):
        risks.append(PatternRisk("OVERLEVERAGED", "high", f"Extreme funding {rate * 100:.3f}%"))

    score = min(100, sum(RISK_POINTS[r.risk] for r in risks))
    high = any(r.risk == "high" for r in risks)
    should_avoid = score >= AVOID_SCORE
    if len(risks) > 2 or should_avoid:
        recommendation = "AVOID"
    elif high:
        recommendation = "CAUTION"
    else:
        recommendation = "OK"
    return FailureRisk(
        has_risk=bool(risks),
        high_risk=high,
        risk_score=score,
        should_avoid=should_avoid,
        recommendation=recommendation,
        risks=risks,
    )
