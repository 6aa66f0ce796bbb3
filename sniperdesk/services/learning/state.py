"""
Learning state schema, tunables and migrations.

``LearningState`` is the single persisted document behind the learning
engine (key ``learning_state``). Its nested statistics are plain dicts
with fixed keys so a save/load round-trip is exact.
"""
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

from sniperdesk.services.analysis.models import AdaptiveThresholds

logger = logging.getLogger(__name__)

LEARNING_SCHEMA_VERSION = 2

ACTIONS = ("LONG", "SHORT", "HOLD")
REGIMES = ("TRENDING_UP", "TRENDING_DOWN", "VOLATILE", "QUIET", "RANGING")
SIGNAL_TAGS = ("LONG", "SHORT", "STRONG_LONG", "STRONG_SHORT", "SNIPER_LONG", "SNIPER_SHORT")
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
INDICATOR_NAMES = ("rsi", "macd", "bollinger", "ema", "kdj", "volume", "divergence", "patterns")
BAD_ENTRY_CONDITIONS = (
    "high_funding", "low_volume", "against_trend",
    "overbought_entry", "oversold_entry", "no_sniper_confirm",
)


# ── Tunables ────────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class RewardConfig:
    """Reward shaping. Breakpoints are fixed; coefficients are tunable."""
    big_gain_pct: float = 5.0
    big_gain_multiplier: float = 1.5
    loss_multiplier_5: float = 2.0       # pnl < -5
    loss_multiplier_10: float = 3.0      # pnl < -10
    loss_multiplier_20: float = 5.0      # pnl < -20
    missed_reward: float = -1.0
    liquidation_reward: float = -100.0


@dataclass(frozen=True, slots=True)
class LearningConfig:
    # ── Q-learning ─────────────────────────────────────────────────────
    learning_rate: float = 0.1
    discount_factor: float = 0.95
    exploration_rate: float = 0.1

    # ── Persistence ────────────────────────────────────────────────────
    save_every: int = 10

    # ── Statistics ─────────────────────────────────────────────────────
    accuracy_alpha: float = 0.1
    adaptation_min_trades: int = 50
    rsi_accuracy_min_samples: int = 20
    severe_loss_pct: float = -5.0
    min_stat_samples: int = 5
    regime_min_samples: int = 10

    # ── Bounded histories ──────────────────────────────────────────────
    liquidation_history: int = 50
    severe_loss_history: int = 100
    sequence_history: int = 100
    failure_examples: int = 20
    danger_symbols: int = 20

    # ── Adaptive threshold limits ──────────────────────────────────────
    min_confidence_floor: float = 0.60
    min_confidence_ceiling: float = 0.75
    sniper_confidence_floor: float = 0.45
    sniper_min_samples: int = 10
    rsi_buy_limit: float = 35.0
    rsi_sell_limit: float = 65.0


# ── Defaults ────────────────────────────────────────────────────────────────

def _regimes() -> Dict[str, Dict[str, float]]:
    return {r: {"count": 0, "win_rate": 0.0, "avg_return": 0.0} for r in REGIMES}


def _signals() -> Dict[str, Dict[str, float]]:
    return {s: {"count": 0, "wins": 0, "avg_return": 0.0} for s in SIGNAL_TAGS}


def _days() -> Dict[str, Dict[str, int]]:
    return {d: {"count": 0, "wins": 0} for d in WEEKDAYS}


def _indicator_scores() -> Dict[str, Dict[str, float]]:
    return {name: {"accuracy": 0.5, "samples": 0} for name in INDICATOR_NAMES}


def _bad_entries() -> Dict[str, Dict[str, int]]:
    return {name: {"count": 0, "losses": 0} for name in BAD_ENTRY_CONDITIONS}


def _failure_patterns() -> Dict[str, Dict[str, Any]]:
    # Local import keeps the catalog the single source of pattern names
    from sniperdesk.services.learning.failure_patterns import FAILURE_PATTERNS
    return {
        p.name: {"count": 0, "symbols": [], "description": p.description}
        for p in FAILURE_PATTERNS
    }


@dataclass
class LearningState:
    q_table: Dict[str, Dict[str, float]] = field(default_factory=dict)
    market_regimes: Dict[str, Dict[str, float]] = field(default_factory=_regimes)
    signal_performance: Dict[str, Dict[str, float]] = field(default_factory=_signals)
    hourly_performance: Dict[str, Dict[str, int]] = field(default_factory=dict)
    daily_performance: Dict[str, Dict[str, int]] = field(default_factory=_days)
    indicator_scores: Dict[str, Dict[str, float]] = field(default_factory=_indicator_scores)
    symbol_stats: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    adaptive_thresholds: AdaptiveThresholds = field(default_factory=AdaptiveThresholds)
    liquidations: List[Dict[str, Any]] = field(default_factory=list)
    severe_losses: List[Dict[str, Any]] = field(default_factory=list)
    dangerous_conditions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    bad_entry_conditions: Dict[str, Dict[str, int]] = field(default_factory=_bad_entries)
    failure_patterns: Dict[str, Dict[str, Any]] = field(default_factory=_failure_patterns)
    trade_sequences: List[Dict[str, Any]] = field(default_factory=list)
    entry_conditions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    entry_combo_performance: Dict[str, Dict[str, float]] = field(default_factory=dict)
    best_entry_setups: List[Dict[str, Any]] = field(default_factory=list)
    worst_entry_setups: List[Dict[str, Any]] = field(default_factory=list)
    total_learnings: int = 0
    total_liquidations: int = 0
    worst_loss: float = 0.0
    last_update: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["version"] = LEARNING_SCHEMA_VERSION
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "LearningState":
        data = migrate_learning_state(raw)
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if f.name == "adaptive_thresholds":
                value = AdaptiveThresholds.from_dict(value)
            kwargs[f.name] = value
        return cls(**kwargs)


# ── Migration ───────────────────────────────────────────────────────────────

_V0_TOP_LEVEL = {
    "qTable": "q_table",
    "marketRegimes": "market_regimes",
    "signalPerformance": "signal_performance",
    "hourlyPerformance": "hourly_performance",
    "dailyPerformance": "daily_performance",
    "indicatorScores": "indicator_scores",
    "symbolStats": "symbol_stats",
    "adaptiveThresholds": "adaptive_thresholds",
    "dangerousConditions": "dangerous_conditions",
    "badEntryConditions": "bad_entry_conditions",
    "failurePatterns": "failure_patterns",
    "tradeSequences": "trade_sequences",
    "severeLosses": "severe_losses",
    "entryConditions": "entry_conditions",
    "entryComboPerformance": "entry_combo_performance",
    "bestEntrySetups": "best_entry_setups",
    "worstEntrySetups": "worst_entry_setups",
    "totalLearnings": "total_learnings",
    "totalLiquidations": "total_liquidations",
    "worstLoss": "worst_loss",
    "lastUpdate": "last_update",
    "liquidations": "liquidations",
}

_V0_THRESHOLDS = {
    "minConfidence": "min_confidence",
    "sniperConfidence": "sniper_confidence",
    "volumeSurgeConfidence": "volume_surge_confidence",
    "optimalRSIBuy": "optimal_rsi_buy",
    "optimalRSISell": "optimal_rsi_sell",
}

_V0_REGIMES = {"ranging": "RANGING", "volatile": "VOLATILE", "quiet": "QUIET"}

_CAMEL = re.compile(r"(?<=[a-z0-9])([A-Z])")


def _snake(name: str) -> str:
    return _CAMEL.sub(r"_\1", name).lower()


def _snake_keys(record: Dict[str, Any]) -> Dict[str, Any]:
    return {_snake(k): v for k, v in record.items()}


def _ms_to_s(value: Optional[float]) -> Optional[float]:
    return value / 1000.0 if value else value


def _migrate_v0(raw: Dict[str, Any]) -> Dict[str, Any]:
    """camelCase documents written before the snake_case schema."""
    data = {_V0_TOP_LEVEL[k]: v for k, v in raw.items() if k in _V0_TOP_LEVEL}

    data["adaptive_thresholds"] = {
        _V0_THRESHOLDS[k]: v for k, v in (raw.get("adaptiveThresholds") or {}).items()
        if k in _V0_THRESHOLDS
    }

    regimes = {}
    for name, stats in (raw.get("marketRegimes") or {}).items():
        if name in _V0_REGIMES:
            regimes[_V0_REGIMES[name]] = _snake_keys(stats)
        else:
            logger.info(f"Dropping legacy regime bucket '{name}' ({stats.get('count', 0)} trades)")
    data["market_regimes"] = regimes

    for key in ("signal_performance", "symbol_stats", "entry_combo_performance"):
        data[key] = {name: _snake_keys(s) for name, s in (data.get(key) or {}).items()}

    data["entry_conditions"] = {
        _snake(name): _snake_keys(s) | {"best_with": [_snake(c) for c in s.get("bestWith", [])]}
        for name, s in (raw.get("entryConditions") or {}).items()
    }
    data["bad_entry_conditions"] = {
        _snake(name): s for name, s in (raw.get("badEntryConditions") or {}).items()
    }
    data["failure_patterns"] = {
        _snake(name).upper(): s for name, s in (raw.get("failurePatterns") or {}).items()
    }

    for key in ("liquidations", "severe_losses", "trade_sequences"):
        records = []
        for r in data.get(key) or []:
            r = _snake_keys(r)
            r["timestamp"] = _ms_to_s(r.get("timestamp"))
            records.append(r)
        data[key] = records

    for key in ("best_entry_setups", "worst_entry_setups"):
        data[key] = [_snake_keys(s) for s in data.get(key) or []]

    data["last_update"] = _ms_to_s(data.get("last_update"))
    data["version"] = 1
    return data


def migrate_learning_state(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade a persisted learning payload to LEARNING_SCHEMA_VERSION.

    v0: camelCase keys (detected by ``qTable``), millisecond timestamps.
    v1: snake_case without entry-condition learning.
    """
    if "qTable" in raw:
        data = _migrate_v0(raw)
    else:
        data = dict(raw)
    version = int(data.get("version", 0) or 0)

    if version < 2:
        data.setdefault("entry_conditions", {})
        data.setdefault("entry_combo_performance", {})
        data.setdefault("best_entry_setups", [])
        data.setdefault("worst_entry_setups", [])
        version = 2

    _add_missing_buckets(data)
    data["version"] = version
    return data


_DEFAULT_BUCKETS = {
    "market_regimes": _regimes,
    "signal_performance": _signals,
    "daily_performance": _days,
    "indicator_scores": _indicator_scores,
    "bad_entry_conditions": _bad_entries,
    "failure_patterns": _failure_patterns,
}


def _add_missing_buckets(data: Dict[str, Any]) -> None:
    """Seed buckets added after the payload was written (new regimes, patterns)."""
    for key, factory in _DEFAULT_BUCKETS.items():
        loaded = data.get(key)
        if not isinstance(loaded, dict):
            continue
        added = [name for name in factory() if name not in loaded]
        loaded = data[key] = dict(loaded)
        if added:
            defaults = factory()
            for name in added:
                loaded[name] = defaults[name]
            logger.info(f"Added {len(added)} new '{key}' buckets: {', '.join(added)}")
