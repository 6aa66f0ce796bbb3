"""
Immutable tuning parameters for the analysis pipeline.

One frozen dataclass per component so that detector code stays
declarative and every threshold can be overridden in tests or from
configuration without touching the algorithms.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Tuple


@dataclass(frozen=True, slots=True)
class IndicatorParams:
    """Indicator engine and sniper sub-detector thresholds.

    Groups:
      • Core periods — RSI, MACD, Bollinger, KDJ, ATR, EMA
      • Structure — swing lookback, breakout window
      • Volume — spike ratio, averaging window
      • Sniper sub-detectors — divergence, accumulation, early breakout,
        momentum, squeeze, volume surge
      • Trade levels — ATR multipliers per volatility regime
    """

    # ── Core periods ───────────────────────────────────────────────────
    min_candles: int = 20
    rsi_period: int = 14
    rsi_min_candles: int = 20
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    bb_period: int = 20
    bb_std: float = 2.0
    kdj_period: int = 9
    kdj_signal: int = 3
    atr_period: int = 14
    ema_periods: Tuple[int, int, int] = (20, 50, 200)
    slope_lookback: int = 20

    # ── Trend thresholds ───────────────────────────────────────────────
    strong_trend_score: int = 3
    trend_score: int = 1

    # ── Support / resistance / breakout ───────────────────────────────
    sr_lookback: int = 50
    fractal_span: int = 2
    breakout_window: int = 21

    # ── Volume ─────────────────────────────────────────────────────────
    volume_avg_window: int = 20
    volume_spike_ratio: float = 2.0

    # ── Divergence ─────────────────────────────────────────────────────
    divergence_lookback: int = 10
    divergence_base: float = 40.0
    divergence_macd_bonus: float = 20.0
    divergence_gap_cap: float = 0.0       # cap on the RSI-gap bonus, 0 disables it

    # ── Volume accumulation ────────────────────────────────────────────
    accumulation_ratio: float = 1.5
    accumulation_max_move_pct: float = 1.0
    accumulation_flow_window: int = 10
    dominance_ratio: float = 1.3

    # ── Early breakout ─────────────────────────────────────────────────
    early_breakout_distance_pct: float = 1.0
    early_breakout_min_steps: int = 3

    # ── Squeeze ────────────────────────────────────────────────────────
    squeeze_width_pct: float = 4.0
    squeeze_atr_pct: float = 2.0

    # ── Volume surge ───────────────────────────────────────────────────
    surge_step_ratio: float = 1.2
    surge_intensity_strong: float = 3.0
    surge_intensity_weak: float = 2.0
    surge_min_consecutive: int = 3
    explosive_move_pct: float = 3.0

    # ── Sniper score weights ───────────────────────────────────────────
    weight_divergence: float = 0.35
    weight_accumulation: float = 0.25
    weight_early_breakout: float = 0.20
    weight_momentum: float = 0.20
    weight_squeeze: float = 0.10
    weight_volume_surge: float = 0.40
    confluence_bonus: float = 10.0
    sniper_threshold: int = 50

    # ── Trade levels (SL, TP1, TP2, TP3 in ATR multiples) ──────────────
    low_volatility_atr_pct: float = 1.5
    low_vol_multipliers: Tuple[float, float, float, float] = (1.2, 1.5, 2.5, 3.5)
    normal_multipliers: Tuple[float, float, float, float] = (1.5, 2.0, 3.0, 4.5)
    level_buffer: float = 0.002

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class StructureParams:
    """Smart-money structure detector thresholds."""

    min_candles: int = 50
    swing_span: int = 2

    # ── Liquidity grab ─────────────────────────────────────────────────
    grab_lookback: int = 20
    grab_wick_body_ratio: float = 0.5
    grab_base_conf: float = 70.0

    # ── Fair value gap ─────────────────────────────────────────────────
    fvg_lookback: int = 15
    fvg_min_gap_pct: float = 0.1
    fvg_tolerance_pct: float = 0.5
    fvg_base_conf: float = 60.0

    # ── Order block ────────────────────────────────────────────────────
    ob_lookback: int = 30
    ob_min_move_pct: float = 0.5
    ob_base_conf: float = 65.0

    # ── Breaker / mitigation / inducement ──────────────────────────────
    breaker_lookback: int = 40
    breaker_min_body: float = 0.003
    breaker_conf: float = 70.0
    mitigation_lookback: int = 40
    mitigation_min_body_pct: float = 0.5
    mitigation_conf: float = 75.0
    inducement_lookback: int = 20
    inducement_conf: float = 72.0

    # ── Optimal trade entry (Fibonacci) ────────────────────────────────
    ote_lookback: int = 30
    ote_min_range_pct: float = 2.0
    ote_fib_low: float = 0.618
    ote_fib_high: float = 0.786
    ote_conf: float = 75.0

    # ── Smart-money divergence ─────────────────────────────────────────
    smd_lookback: int = 10
    smd_volume_ratio: float = 1.5
    smd_dominance: float = 1.3
    smd_base_conf: float = 68.0

    # ── Combined score ─────────────────────────────────────────────────
    score_weight: float = 0.3
    two_way_bonus: float = 10.0
    three_way_bonus: float = 15.0
    killzone_bonus: float = 10.0
    alignment_bonus: float = 15.0
    setup_threshold: int = 50
    max_recommendation_conf: float = 95.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class PredictorParams:
    """Consensus scoring weights and signal thresholds."""

    max_possible_score: float = 185.0
    min_score_diff: float = 10.0
    neutral_zone: float = 15.0
    signal_score: float = 40.0
    strong_score: float = 60.0
    strong_diff: float = 25.0

    # ── Layer points ───────────────────────────────────────────────────
    strong_trend_points: float = 25.0
    trend_points: float = 15.0
    macd_cap: float = 15.0
    breakout_points: float = 15.0
    volume_spike_points: float = 10.0
    sr_points: float = 10.0
    pattern_points: float = 10.0
    structure_cap: float = 15.0

    # ── Sniper sub-signal caps ─────────────────────────────────────────
    divergence_cap: float = 15.0
    accumulation_cap: float = 12.0
    early_breakout_cap: float = 10.0
    momentum_cap: float = 8.0
    squeeze_bonus: float = 5.0
    surge_cap: float = 25.0
    surge_override_strength: float = 50.0
    sniper_hold_upgrade: int = 65
    sniper_conflict_score: int = 40

    # ── Confidence adjustments ─────────────────────────────────────────
    base_confidence: float = 0.4
    score_confidence: float = 0.4
    wide_diff: float = 20.0
    wide_diff_bonus: float = 0.1
    strong_bonus: float = 0.05
    sniper_agree_bonus: float = 0.03
    sniper_conflict_penalty: float = 0.15
    structure_agree_bonus: float = 0.05
    structure_conflict_penalty: float = 0.05
    min_confidence: float = 0.1
    max_confidence: float = 0.95

    # ── Trade levels ───────────────────────────────────────────────────
    min_rr: float = 1.2
    min_rr_sniper: float = 1.0
    max_reasons: int = 7

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
