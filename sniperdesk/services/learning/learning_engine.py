"""
Learning Engine
===============
Learns from every closed trade and feeds adaptive thresholds back into
the consensus predictor.

  • Q-learning over a discretized indicator state (LONG / SHORT / HOLD)
  • Regime, signal, hour, weekday and symbol performance
  • Indicator accuracy (EMA of "was its implied direction right")
  • Adaptive thresholds (min/sniper confidence, RSI buy/sell)
  • Failure-pattern analysis of losing trades
  • Liquidation / severe-loss memory with immediate persistence
  • Entry-condition and condition-combo win rates

Every public mutation runs on a deep copy of the state that is swapped
in only when the whole update succeeded; a failing update is logged and
the previous state stays authoritative.
"""
from __future__ import annotations

import copy
import dataclasses
import logging
import math
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sniperdesk.services.analysis.engine import BEARISH_PATTERNS, BULLISH_PATTERNS
from sniperdesk.services.analysis.models import AdaptiveThresholds, IndicatorBundle, TradeClosedEvent
from sniperdesk.services.learning.entry_conditions import (
    EntryQuality,
    assess_entry_quality,
    extract_entry_conditions,
    rank_setups,
    record_entry_outcome,
)
from sniperdesk.services.learning.failure_patterns import (
    FailureContext,
    FailureMatch,
    FailureRisk,
    assess_pre_trade,
    detect_failures,
)
from sniperdesk.services.learning.state import (
    ACTIONS,
    WEEKDAYS,
    LearningConfig,
    LearningState,
    RewardConfig,
)
from sniperdesk.services.persistence.state_store import LEARNING_STATE_KEY, StateStore

logger = logging.getLogger(__name__)

TradeOutcome = TradeClosedEvent

REGULAR_SIGNALS = ("LONG", "SHORT", "STRONG_LONG", "STRONG_SHORT")
SNIPER_SIGNALS = ("SNIPER_LONG", "SNIPER_SHORT")


@dataclass
class LearningResult:
    state: str
    action: str
    reward: float
    regime: str
    q_value: float
    failures: List[str] = field(default_factory=list)
    severe: bool = False
    liquidation: bool = False


@dataclass
class DangerCheck:
    dangerous: bool
    reason: Optional[str] = None
    liquidations: int = 0
    q_values: Dict[str, float] = field(default_factory=dict)


@dataclass
class LearnedRecommendation:
    action: str
    confidence: float
    source: str                       # learned | exploration
    regime: str
    q_value: Optional[float] = None
    q_values: Dict[str, float] = field(default_factory=dict)


def _round(value: float, decimals: int = 2) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return round(value, decimals)


def _to_trade_direction(signal_direction: Optional[str]) -> Optional[str]:
    return {"bullish": "long", "bearish": "short"}.get(signal_direction or "")


class LearningEngine:
    """Process-wide owner of LearningState.

    Usage:
        engine = LearningEngine(store=JsonFileStateStore("./data"))
        engine.on_trade_closed(event)
        predictor = ConsensusPredictor(thresholds_provider=engine.get_thresholds)
    """

    def __init__(self, store: Optional[StateStore] = None,
                 config: Optional[LearningConfig] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.time,
                 rewards: Optional[RewardConfig] = None):
        self.config = config or LearningConfig()
        self.rewards = rewards or RewardConfig()
        self._store = store
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock = threading.RLock()
        self._save_request: Optional[bool] = None
        self.state = LearningState()
        self.load()

    # ── Persistence ─────────────────────────────────────────────────────

    def load(self) -> bool:
        with self._lock:
            if self._store is None:
                return False
            raw = self._store.load_state(LEARNING_STATE_KEY)
            if raw is None:
                return False
            try:
                self.state = LearningState.from_dict(raw)
            except (TypeError, ValueError, KeyError, AttributeError) as e:
                logger.warning(f"Malformed learning state, starting fresh: {e}")
                return False
            logger.info(f"Loaded {self.state.total_learnings} learnings, "
                        f"{len(self.state.q_table)} Q-states")
            return True

    def save(self) -> bool:
        with self._lock:
            return self._save(self.state)

    def _save(self, st: LearningState, critical: bool = False) -> bool:
        if self._store is None:
            return False
        st.last_update = self._clock()
        ok = self._store.save_state(LEARNING_STATE_KEY, st.to_dict())
        if not ok:
            if critical:
                logger.error("Could not persist critical learning update")
            else:
                logger.warning("Could not persist learning state")
        return ok

    def _request_save(self, critical: bool = False) -> None:
        self._save_request = critical or bool(self._save_request)

    def _mutate(self, name: str, fn: Callable[[LearningState], Any]) -> Any:
        with self._lock:
            draft = copy.deepcopy(self.state)
            self._save_request = None
            try:
                result = fn(draft)
            except Exception:
                self._save_request = None
                logger.exception(f"Learning update '{name}' failed, state left unchanged")
                return None
            self.state = draft
            # Saves requested by the update only run once the draft is committed
            critical, self._save_request = self._save_request, None
            if critical is not None:
                self._save(self.state, critical=critical)
            return result

    # ── State discretization & Q-table ──────────────────────────────────

    @staticmethod
    def create_state(indicators: Optional[IndicatorBundle]) -> str:
        if indicators is None:
            return "unknown"
        ind = indicators
        rsi = ind.rsi
        rsi_state = "neutral" if rsi is None else "oversold" if rsi < 30 else "overbought" if rsi > 70 else "neutral"
        macd_state = "bullish" if ind.macd is not None and ind.macd.histogram > 0 else "bearish"
        pb = ind.bollinger.percent_b if ind.bollinger is not None else None
        bb_state = "middle" if pb is None else "lower" if pb < 0.2 else "upper" if pb > 0.8 else "middle"
        trend_state = ind.trend.direction
        vr = ind.volume_ratio
        volume_state = "high" if vr > 2 else "low" if vr < 0.5 else "normal"
        sniper = ind.sniper_signals is not None and ind.sniper_signals.score.is_sniper
        return f"{rsi_state}_{macd_state}_{bb_state}_{trend_state}_{volume_state}_{'sniper' if sniper else 'normal'}"

    def get_q_value(self, state: str, action: str) -> float:
        with self._lock:
            return self.state.q_table.get(state, {}).get(action, 0.0)

    def update_q_value(self, state: str, action: str, reward: float, next_state: str) -> Optional[float]:
        return self._mutate("q_update", lambda st: self._q_update(st, state, action, reward, next_state))

    def _q_update(self, st: LearningState, state: str, action: str,
                  reward: float, next_state: str) -> Optional[float]:
        current = st.q_table.get(state, {}).get(action, 0.0)
        next_row = st.q_table.get(next_state) or {a: 0.0 for a in ACTIONS}
        max_next = max(next_row.values())
        cfg = self.config
        new_q = current + cfg.learning_rate * (reward + cfg.discount_factor * max_next - current)
        if not math.isfinite(new_q):
            logger.warning(f"Rejected non-finite Q update for {state}/{action} (reward {reward})")
            return None
        st.q_table.setdefault(state, {a: 0.0 for a in ACTIONS})[action] = new_q
        return new_q

    def calculate_reward(self, pnl_percent: float, result: str) -> float:
        r = self.rewards
        if result == "liquidation":
            return r.liquidation_reward
        if result == "missed":
            return r.missed_reward
        reward = pnl_percent
        if pnl_percent > r.big_gain_pct:
            reward *= r.big_gain_multiplier
        if pnl_percent < -20:
            reward *= r.loss_multiplier_20
        elif pnl_percent < -10:
            reward *= r.loss_multiplier_10
        elif pnl_percent < -5:
            reward *= r.loss_multiplier_5
        return round(reward, 2)

    # ── Trade lifecycle ─────────────────────────────────────────────────

    def on_trade_closed(self, event: TradeOutcome) -> Optional[LearningResult]:
        """Apply one completed-trade event as a single atomic update."""
        def apply(st: LearningState) -> LearningResult:
            if event.result == "liquidation":
                result = self._learn_liquidation(st, event)
                self._learn_trade(st, event, update_q=False)
            else:
                result = self._learn_trade(st, event, update_q=True)
            if event.result in ("loss", "liquidation") or event.pnl_percent < 0:
                result.failures = [m.pattern for m in self._analyze_failure(st, event)]
            if event.result != "liquidation" and event.pnl_percent <= self.config.severe_loss_pct:
                self._learn_severe_loss(st, event)
                result.severe = True
            return result

        return self._mutate("trade_closed", apply)

    def learn_from_trade(self, outcome: TradeOutcome) -> Optional[LearningResult]:
        return self._mutate("trade", lambda st: self._learn_trade(st, outcome, update_q=True))

    def learn_from_liquidation(self, outcome: TradeOutcome) -> Optional[LearningResult]:
        return self._mutate("liquidation", lambda st: self._learn_liquidation(st, outcome))

    def learn_from_severe_loss(self, outcome: TradeOutcome) -> Optional[str]:
        return self._mutate("severe_loss", lambda st: self._learn_severe_loss(st, outcome))

    def analyze_trade_failure(self, outcome: TradeOutcome) -> List[str]:
        matches = self._mutate("failure_analysis", lambda st: self._analyze_failure(st, outcome))
        return [m.pattern for m in matches or []]

    def _learn_trade(self, st: LearningState, ev: TradeOutcome, update_q: bool) -> LearningResult:
        entry = ev.entry_indicators
        reward = self.calculate_reward(ev.pnl_percent, ev.result)
        state_key = self.create_state(entry)
        action = ev.action
        regime = self.detect_market_regime(entry)

        if update_q:
            self._q_update(st, state_key, action, reward, state_key)
        q_value = st.q_table.get(state_key, {}).get(action, 0.0)

        if ev.result == "missed":
            st.total_learnings += 1
            return LearningResult(state_key, action, reward, regime, q_value)

        is_win = ev.result == "win" or ev.pnl_percent > 0
        ts = ev.timestamp if ev.timestamp is not None else self._clock()
        when = datetime.fromtimestamp(ts, tz=timezone.utc)

        if regime != "UNKNOWN":
            rs = st.market_regimes.setdefault(regime, {"count": 0, "win_rate": 0.0, "avg_return": 0.0})
            rs["count"] += 1
            wins = rs["win_rate"] * (rs["count"] - 1)
            rs["win_rate"] = (wins + (1 if is_win else 0)) / rs["count"]
            rs["avg_return"] = (rs["avg_return"] * (rs["count"] - 1) + ev.pnl_percent) / rs["count"]

        if ev.signal in st.signal_performance:
            perf = st.signal_performance[ev.signal]
            perf["count"] += 1
            if is_win:
                perf["wins"] += 1
            perf["avg_return"] = (perf["avg_return"] * (perf["count"] - 1) + ev.pnl_percent) / perf["count"]

        hour = st.hourly_performance.setdefault(str(when.hour), {"count": 0, "wins": 0})
        day = st.daily_performance.setdefault(WEEKDAYS[when.weekday()], {"count": 0, "wins": 0})
        for bucket in (hour, day):
            bucket["count"] += 1
            if is_win:
                bucket["wins"] += 1

        self._update_indicator_scores(st, entry, ev.direction, is_win)

        sym = st.symbol_stats.setdefault(ev.symbol, {"trades": 0, "wins": 0, "total_return": 0.0, "avg_return": 0.0})
        sym["trades"] += 1
        if is_win:
            sym["wins"] += 1
        sym["total_return"] += ev.pnl_percent
        sym["avg_return"] = sym["total_return"] / sym["trades"]

        conditions = extract_entry_conditions(entry, ev.direction)
        record_entry_outcome(st.entry_conditions, st.entry_combo_performance, conditions, is_win, ev.pnl_percent)
        st.best_entry_setups, st.worst_entry_setups = rank_setups(st.entry_conditions, st.entry_combo_performance)

        self._update_thresholds(st)

        st.total_learnings += 1
        if st.total_learnings % self.config.save_every == 0:
            self._request_save()

        return LearningResult(state_key, action, reward, regime, q_value)

    def _learn_liquidation(self, st: LearningState, ev: TradeOutcome) -> LearningResult:
        cfg = self.config
        entry = ev.entry_indicators
        state_key = self.create_state(entry)
        action = ev.action
        ts = ev.timestamp if ev.timestamp is not None else self._clock()

        logger.warning(f"🚨 Liquidation on {ev.symbol} ({ev.direction}), state {state_key}")

        st.total_liquidations += 1
        st.liquidations.append({
            "symbol": ev.symbol,
            "timestamp": ts,
            "direction": ev.direction,
            "entry_price": ev.entry_price,
            "exit_price": ev.exit_price,
            "leverage": ev.leverage,
            "funding_rate": entry.funding_rate if entry is not None else None,
            "state": state_key,
        })
        if len(st.liquidations) > cfg.liquidation_history:
            st.liquidations = st.liquidations[-cfg.liquidation_history:]

        reward = self.rewards.liquidation_reward
        self._q_update(st, state_key, action, reward, state_key)

        danger = st.dangerous_conditions.setdefault(state_key, {"liquidations": 0, "symbols": []})
        danger["liquidations"] += 1
        danger["symbols"].append(ev.symbol)
        danger["symbols"] = danger["symbols"][-cfg.danger_symbols:]

        self._tag_bad_entries(st, entry, ev.direction)
        self._request_save(critical=True)

        return LearningResult(
            state=state_key, action=action, reward=reward,
            regime=self.detect_market_regime(entry),
            q_value=st.q_table.get(state_key, {}).get(action, 0.0),
            liquidation=True,
        )

    def _learn_severe_loss(self, st: LearningState, ev: TradeOutcome) -> str:
        cfg = self.config
        state_key = self.create_state(ev.entry_indicators)
        severity = abs(ev.pnl_percent) / 5
        logger.warning(f"⚠️ Severe loss on {ev.symbol}: {ev.pnl_percent:.1f}%")

        st.worst_loss = min(st.worst_loss, ev.pnl_percent)
        st.severe_losses.append({
            "symbol": ev.symbol,
            "pnl_percent": ev.pnl_percent,
            "timestamp": ev.timestamp if ev.timestamp is not None else self._clock(),
            "state": state_key,
            "severity": round(severity, 2),
        })
        if len(st.severe_losses) > cfg.severe_loss_history:
            st.severe_losses = st.severe_losses[-cfg.severe_loss_history:]

        self._tag_bad_entries(st, ev.entry_indicators, ev.direction)
        self._request_save()
        return "HIGH" if ev.pnl_percent < -10 else "MEDIUM"

    @staticmethod
    def _tag_bad_entries(st: LearningState, entry: Optional[IndicatorBundle], direction: str) -> None:
        if entry is None:
            return
        tags = []
        if entry.funding_rate is not None and abs(entry.funding_rate) > 0.001:
            tags.append("high_funding")
        if entry.volume_ratio < 0.5:
            tags.append("low_volume")
        if entry.rsi is not None and entry.rsi > 70 and direction == "long":
            tags.append("overbought_entry")
        if entry.rsi is not None and entry.rsi < 30 and direction == "short":
            tags.append("oversold_entry")
        if (entry.trend.is_down and direction == "long") or (entry.trend.is_up and direction == "short"):
            tags.append("against_trend")
        sniper = entry.sniper_signals
        if sniper is None or not sniper.score.is_sniper:
            tags.append("no_sniper_confirm")
        for tag in tags:
            bucket = st.bad_entry_conditions.setdefault(tag, {"count": 0, "losses": 0})
            bucket["count"] += 1
            bucket["losses"] += 1

    def _analyze_failure(self, st: LearningState, ev: TradeOutcome) -> List[FailureMatch]:
        cfg = self.config
        matches = detect_failures(FailureContext.from_event(ev))
        for m in matches:
            fp = st.failure_patterns.setdefault(m.pattern, {"count": 0, "symbols": [], "description": ""})
            fp["count"] += 1
            fp["symbols"].append(ev.symbol)
            fp["symbols"] = fp["symbols"][-cfg.failure_examples:]
            logger.info(f"📊 {m.pattern} on {ev.symbol}: {m.detail}")

        st.trade_sequences.append({
            "symbol": ev.symbol,
            "direction": ev.direction,
            "pnl_percent": ev.pnl_percent,
            "hold_time_ms": ev.hold_time_ms,
            "failures": [m.pattern for m in matches],
            "timestamp": ev.timestamp if ev.timestamp is not None else self._clock(),
            "entry_state": self.create_state(ev.entry_indicators),
            "exit_state": self.create_state(ev.exit_indicators) if ev.exit_indicators is not None else None,
        })
        if len(st.trade_sequences) > cfg.sequence_history:
            st.trade_sequences = st.trade_sequences[-cfg.sequence_history:]
        return matches

    # ── Statistics ──────────────────────────────────────────────────────

    def _update_indicator_scores(self, st: LearningState, ind: Optional[IndicatorBundle],
                                 direction: str, is_win: bool) -> None:
        if ind is None:
            return
        implied: Dict[str, Optional[str]] = {}

        if ind.rsi is not None:
            implied["rsi"] = "long" if ind.rsi < 30 else "short" if ind.rsi > 70 else None
        if ind.macd is not None and ind.macd.histogram != 0:
            implied["macd"] = "long" if ind.macd.histogram > 0 else "short"
        pb = ind.bollinger.percent_b if ind.bollinger is not None else None
        if pb is not None:
            implied["bollinger"] = "long" if pb < 0.2 else "short" if pb > 0.8 else None
        implied["ema"] = "long" if ind.trend.is_up else "short" if ind.trend.is_down else None
        if ind.kdj is not None:
            implied["kdj"] = "long" if ind.kdj.j < 20 else "short" if ind.kdj.j > 80 else None

        s = ind.sniper_signals
        if s is not None:
            acc, surge = s.volume_accumulation, s.volume_surge
            if acc is not None and acc.detected and acc.direction:
                implied["volume"] = _to_trade_direction(acc.direction)
            elif surge is not None and surge.detected:
                implied["volume"] = _to_trade_direction(surge.direction)
            if s.divergence is not None and s.divergence.detected:
                implied["divergence"] = _to_trade_direction(s.divergence.direction)

        bullish = any(p in BULLISH_PATTERNS for p in ind.patterns)
        bearish = any(p in BEARISH_PATTERNS for p in ind.patterns)
        if bullish != bearish:
            implied["patterns"] = "long" if bullish else "short"

        alpha = self.config.accuracy_alpha
        for name, implied_dir in implied.items():
            if implied_dir is None:
                continue
            correct = (implied_dir == direction) == is_win
            score = st.indicator_scores.setdefault(name, {"accuracy": 0.5, "samples": 0})
            score["samples"] += 1
            score["accuracy"] = score["accuracy"] * (1 - alpha) + (1.0 if correct else 0.0) * alpha

    def _update_thresholds(self, st: LearningState) -> None:
        cfg = self.config
        perf = st.signal_performance
        total = sum(p["count"] for p in perf.values())
        if total < cfg.adaptation_min_trades:
            return
        th = st.adaptive_thresholds

        sniper_count = sum(perf[s]["count"] for s in SNIPER_SIGNALS if s in perf)
        sniper_wins = sum(perf[s]["wins"] for s in SNIPER_SIGNALS if s in perf)
        if sniper_count >= cfg.sniper_min_samples and sniper_wins / sniper_count > 0.6:
            th.sniper_confidence = round(max(cfg.sniper_confidence_floor, th.sniper_confidence - 0.01), 4)

        count = sum(perf[s]["count"] for s in REGULAR_SIGNALS if s in perf)
        wins = sum(perf[s]["wins"] for s in REGULAR_SIGNALS if s in perf)
        if count > 0:
            win_rate = wins / count
            if win_rate < 0.5:
                th.min_confidence = round(min(cfg.min_confidence_ceiling, th.min_confidence + 0.01), 4)
            elif win_rate > 0.6:
                th.min_confidence = round(max(cfg.min_confidence_floor, th.min_confidence - 0.01), 4)

        rsi = st.indicator_scores.get("rsi", {"accuracy": 0.5, "samples": 0})
        if rsi["accuracy"] > 0.6 and rsi["samples"] >= cfg.rsi_accuracy_min_samples:
            th.optimal_rsi_buy = min(cfg.rsi_buy_limit, th.optimal_rsi_buy + 0.5)
            th.optimal_rsi_sell = max(cfg.rsi_sell_limit, th.optimal_rsi_sell - 0.5)

    def get_thresholds(self) -> AdaptiveThresholds:
        with self._lock:
            return dataclasses.replace(self.state.adaptive_thresholds)

    # ── Regimes ─────────────────────────────────────────────────────────

    @staticmethod
    def detect_market_regime(indicators: Optional[IndicatorBundle]) -> str:
        if indicators is None:
            return "UNKNOWN"
        atr_pct = indicators.atr_pct if indicators.atr_pct is not None else 1.5
        bb_width = indicators.bollinger.width_pct if indicators.bollinger is not None else 4.0

        if indicators.trend.is_strong:
            return "TRENDING_UP" if indicators.trend.is_up else "TRENDING_DOWN"
        if atr_pct > 3.5 or bb_width > 6:
            return "VOLATILE"
        if atr_pct < 1 or bb_width < 2:
            return "QUIET"
        return "RANGING"

    def get_regime_multiplier(self, regime: str) -> float:
        with self._lock:
            stats = self.state.market_regimes.get(regime)
        if not stats or stats["count"] < self.config.regime_min_samples:
            return 1.0
        if stats["win_rate"] > 0.6:
            return 1.1
        if stats["win_rate"] > 0.5:
            return 1.0
        if stats["win_rate"] > 0.4:
            return 0.9
        return 0.8

    # ── Pre-trade checks ────────────────────────────────────────────────

    def is_dangerous_condition(self, indicators: Optional[IndicatorBundle]) -> DangerCheck:
        state_key = self.create_state(indicators)
        with self._lock:
            danger = self.state.dangerous_conditions.get(state_key)
            row = dict(self.state.q_table.get(state_key, {}))
        if danger and danger["liquidations"] >= 1:
            return DangerCheck(
                dangerous=True,
                reason=f"State \"{state_key}\" has caused {danger['liquidations']} liquidation(s)",
                liquidations=danger["liquidations"],
            )
        q_long, q_short = row.get("LONG", 0.0), row.get("SHORT", 0.0)
        if q_long < -20 or q_short < -20:
            return DangerCheck(
                dangerous=True,
                reason=f"State has very negative Q-values (LONG: {q_long:.1f}, SHORT: {q_short:.1f})",
                q_values={"LONG": q_long, "SHORT": q_short},
            )
        return DangerCheck(dangerous=False)

    def check_failure_pattern_risk(self, indicators: Optional[IndicatorBundle], direction: str) -> FailureRisk:
        with self._lock:
            counts = {name: fp["count"] for name, fp in self.state.failure_patterns.items()}
            total = self.state.total_learnings
        return assess_pre_trade(indicators, direction, counts, total)

    def get_learned_recommendation(self, indicators: Optional[IndicatorBundle]) -> LearnedRecommendation:
        state_key = self.create_state(indicators)
        regime = self.detect_market_regime(indicators)
        with self._lock:
            q_values = dict(self.state.q_table.get(state_key) or {a: 0.0 for a in ACTIONS})

        if self._rng.random() < self.config.exploration_rate:
            return LearnedRecommendation(
                action=self._rng.choice(ACTIONS), confidence=0.5,
                source="exploration", regime=regime, q_values=q_values,
            )

        best_action = max(ACTIONS, key=lambda a: q_values.get(a, 0.0))
        best_q = q_values.get(best_action, 0.0)
        q_total = sum(abs(v) for v in q_values.values())
        confidence = abs(best_q) / q_total if q_total > 0 else 0.5
        return LearnedRecommendation(
            action=best_action,
            confidence=_round(min(confidence * self.get_regime_multiplier(regime), 0.95)),
            source="learned",
            regime=regime,
            q_value=_round(best_q),
            q_values=q_values,
        )

    # ── Entry conditions ────────────────────────────────────────────────

    @staticmethod
    def extract_entry_conditions(indicators: Optional[IndicatorBundle],
                                 direction: Optional[str] = None) -> List[str]:
        return extract_entry_conditions(indicators, direction)

    def check_entry_quality(self, indicators: Optional[IndicatorBundle],
                            direction: Optional[str] = None) -> EntryQuality:
        conditions = extract_entry_conditions(indicators, direction)
        with self._lock:
            st = self.state
            return assess_entry_quality(conditions, st.entry_conditions, st.entry_combo_performance,
                                        st.best_entry_setups, st.worst_entry_setups)

    def get_best_entry_conditions(self) -> Dict[str, Any]:
        with self._lock:
            st = self.state
            best = st.best_entry_setups[:5]
            worst = st.worst_entry_setups[:5]
            combos = [
                {"combo": name, "win_rate": _round(s["wins"] / s["trades"] * 100, 1),
                 "avg_return": _round(s["avg_return"]), "trades": s["trades"]}
                for name, s in st.entry_combo_performance.items()
                if s["trades"] >= 3 and s["wins"] / s["trades"] >= 0.6
            ]
        return {
            "recommended": [
                {"condition": s["name"], "win_rate": _round(s["win_rate"] * 100, 1),
                 "avg_return": _round(s["avg_return"]), "trades": s["trades"],
                 "best_with": s.get("best_with", [])}
                for s in best
            ],
            "avoid": [
                {"condition": s["name"], "win_rate": _round(s["win_rate"] * 100, 1),
                 "avg_return": _round(s["avg_return"]), "trades": s["trades"]}
                for s in worst
            ],
            "top_combos": sorted(combos, key=lambda c: -c["win_rate"])[:5],
        }

    # ── Reporting ───────────────────────────────────────────────────────

    def get_optimal_trading_hours(self) -> Dict[str, Any]:
        with self._lock:
            rows = [
                {"hour": int(h), "win_rate": s["wins"] / s["count"], "trades": s["count"]}
                for h, s in self.state.hourly_performance.items()
                if s["count"] >= self.config.min_stat_samples
            ]
        rows.sort(key=lambda r: -r["win_rate"])
        return {
            "best_hours": [r["hour"] for r in rows[:3]],
            "worst_hours": [r["hour"] for r in rows[-3:]],
            "all_hours": rows,
        }

    def get_optimal_trading_days(self) -> Dict[str, Any]:
        with self._lock:
            rows = [
                {"day": d, "win_rate": s["wins"] / s["count"], "trades": s["count"]}
                for d, s in self.state.daily_performance.items()
                if s["count"] >= self.config.min_stat_samples
            ]
        rows.sort(key=lambda r: -r["win_rate"])
        return {
            "best_days": [r["day"] for r in rows if r["win_rate"] > 0.5],
            "worst_days": [r["day"] for r in rows if r["win_rate"] < 0.5],
            "all_days": rows,
        }

    def get_symbol_recommendation(self, symbol: str) -> Dict[str, Any]:
        with self._lock:
            stats = self.state.symbol_stats.get(symbol)
            stats = dict(stats) if stats else None
        if not stats or stats["trades"] < self.config.min_stat_samples:
            return {"has_data": False, "symbol": symbol}
        win_rate = stats["wins"] / stats["trades"]
        return {
            "has_data": True,
            "symbol": symbol,
            "win_rate": _round(win_rate * 100, 1),
            "avg_return": _round(stats["avg_return"]),
            "trades": stats["trades"],
            "recommendation": "FAVORABLE" if win_rate > 0.5 else "CAUTIOUS",
        }

    def get_failure_pattern_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                name: {"count": fp["count"], "description": fp["description"],
                       "recent_symbols": fp["symbols"][-5:]}
                for name, fp in self.state.failure_patterns.items()
            }

    def get_learning_insights(self) -> Dict[str, Any]:
        hours = self.get_optimal_trading_hours()
        days = self.get_optimal_trading_days()
        n = self.config.min_stat_samples
        with self._lock:
            st = self.state
            signals = sorted(
                ({"signal": sig, "win_rate": _round(s["wins"] / s["count"] * 100, 1),
                  "avg_return": _round(s["avg_return"]), "trades": s["count"]}
                 for sig, s in st.signal_performance.items() if s["count"] >= n),
                key=lambda r: -r["win_rate"],
            )
            indicators = sorted(
                ({"indicator": name, "accuracy": _round(s["accuracy"] * 100, 1), "samples": s["samples"]}
                 for name, s in st.indicator_scores.items() if s["samples"] >= 10),
                key=lambda r: -r["accuracy"],
            )
            regimes = sorted(
                ({"regime": name, "win_rate": _round(s["win_rate"] * 100, 1),
                  "avg_return": _round(s["avg_return"]), "trades": s["count"]}
                 for name, s in st.market_regimes.items() if s["count"] >= n),
                key=lambda r: -r["win_rate"],
            )
            symbols = sorted(
                ({"symbol": sym, "win_rate": _round(s["wins"] / s["trades"] * 100, 1),
                  "avg_return": _round(s["avg_return"]), "trades": s["trades"]}
                 for sym, s in st.symbol_stats.items() if s["trades"] >= n),
                key=lambda r: -r["win_rate"],
            )[:10]
            insights = {
                "total_learnings": st.total_learnings,
                "total_liquidations": st.total_liquidations,
                "worst_loss": st.worst_loss,
                "last_update": st.last_update,
                "q_states": len(st.q_table),
                "signal_performance": signals[:5],
                "indicator_effectiveness": indicators,
                "market_regimes": regimes,
                "optimal_hours": hours["best_hours"],
                "hours_to_avoid": hours["worst_hours"],
                "optimal_days": days["best_days"],
                "days_to_avoid": days["worst_days"],
                "adaptive_thresholds": st.adaptive_thresholds.to_dict(),
                "top_symbols": symbols,
            }
        insights["failure_patterns"] = self.get_failure_pattern_stats()
        insights["recommendations"] = self._recommendations(indicators, regimes, hours["best_hours"])
        return insights

    def _recommendations(self, indicators: List[Dict], regimes: List[Dict],
                         best_hours: List[int]) -> List[Dict[str, str]]:
        recs = []
        if indicators and indicators[0]["accuracy"] > 60:
            top = indicators[0]
            recs.append({"type": "INDICATOR", "priority": "high",
                         "message": f"{top['indicator'].upper()} is most reliable ({top['accuracy']}% accuracy)"})
        solid = [r for r in regimes if r["trades"] >= self.config.regime_min_samples]
        if solid and solid[0]["win_rate"] > 55:
            recs.append({"type": "REGIME", "priority": "medium",
                         "message": f"Best performance in {solid[0]['regime']} markets ({solid[0]['win_rate']}% win rate)"})
        if best_hours:
            recs.append({"type": "TIMING", "priority": "medium",
                         "message": "Best hours: " + ", ".join(f"{h}:00" for h in best_hours) + " UTC"})
        with self._lock:
            sniper = self.state.signal_performance.get("SNIPER_LONG", {"count": 0, "wins": 0})
        if sniper["count"] >= 5 and sniper["wins"] / sniper["count"] > 0.6:
            recs.append({"type": "SIGNAL", "priority": "high",
                         "message": "Sniper signals showing strong performance"})
        return recs
