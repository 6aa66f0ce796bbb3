"""
Signal Service — one poll cycle per (symbol, interval)
======================================================
candles → indicator bundle → structure setup → consensus candidate,
plus the learned read-outs (Q recommendation, regime, entry quality,
failure risk) kept as the latest snapshot per key.

When trading is enabled an actionable candidate goes through:
  1. learned danger check          (states that liquidated us before)
  2. failure-pattern risk          (should_avoid blocks)
  3. sniper confirmation           (optional wait for agreement)
  4. risk gate + correlation
  5. position sizing
  6. ExchangeAdapter.execute_trade

Completed trades come back through ``handle_trade_closed``, which feeds
the learning engine and the risk manager under one lock so every event
is applied exactly once and in arrival order.
"""
import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from sniperdesk.services.analysis.confirmation import SniperConfirmationTracker
from sniperdesk.services.analysis.engine import calculate_indicators
from sniperdesk.services.analysis.models import (
    IndicatorBundle,
    SniperSetup,
    TradeCandidate,
    TradeClosedEvent,
)
from sniperdesk.services.analysis.params import IndicatorParams, StructureParams
from sniperdesk.services.analysis.predictor import ConsensusPredictor
from sniperdesk.services.analysis.structure import analyze_sniper_setup
from sniperdesk.services.errors import TransientFetchError
from sniperdesk.services.execution.exchange_adapter import ExchangeAdapter
from sniperdesk.services.learning.learning_engine import LearningEngine
from sniperdesk.services.market_data import CandleSource
from sniperdesk.services.risk.risk_manager import PositionRequest, RiskManager, TradeRecord

logger = logging.getLogger(__name__)


@dataclass
class SignalSnapshot:
    """Latest cycle output for one (symbol, interval)."""
    symbol: str
    interval: str
    candidate: TradeCandidate
    indicators: IndicatorBundle
    setup: SniperSetup
    regime: str
    learned: Dict[str, Any] = field(default_factory=dict)
    entry_quality: Optional[Dict[str, Any]] = None
    failure_risk: Optional[Dict[str, Any]] = None
    execution: Optional[Dict[str, Any]] = None
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "interval": self.interval,
            "candidate": self.candidate.to_dict(),
            "indicators": self.indicators.to_dict(),
            "setup": self.setup.to_dict(),
            "regime": self.regime,
            "learned": self.learned,
            "entry_quality": self.entry_quality,
            "failure_risk": self.failure_risk,
            "execution": self.execution,
            "updated_at": self.updated_at,
        }


@dataclass
class OpenPosition:
    symbol: str
    direction: str
    signal: str
    interval: Optional[str]
    entry_price: float
    quantity: float
    leverage: int
    opened_at: float
    entry_indicators: IndicatorBundle
    order: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "direction": self.direction,
            "signal": self.signal,
            "interval": self.interval,
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "leverage": self.leverage,
            "opened_at": self.opened_at,
            "order": self.order,
        }


class SignalService:
    """Wires candle source, analysis, learning, risk and execution together."""

    def __init__(self, source: CandleSource, predictor: ConsensusPredictor,
                 learning: LearningEngine, risk: RiskManager,
                 adapter: Optional[ExchangeAdapter] = None,
                 confirmation: Optional[SniperConfirmationTracker] = None,
                 trading_enabled: bool = False,
                 candle_limit: int = 200,
                 indicator_params: Optional[IndicatorParams] = None,
                 structure_params: Optional[StructureParams] = None,
                 clock: Callable[[], float] = time.time):
        self.source = source
        self.predictor = predictor
        self.learning = learning
        self.risk = risk
        self.adapter = adapter
        self.confirmation = confirmation
        self.trading_enabled = trading_enabled and adapter is not None
        self.candle_limit = candle_limit
        self.indicator_params = indicator_params
        self.structure_params = structure_params
        self._clock = clock
        self._lock = threading.RLock()
        self._latest: Dict[Tuple[str, str], SignalSnapshot] = {}
        self._positions: Dict[str, OpenPosition] = {}

    # ── Poll cycle ────────────────────────────────────────────────────────

    def poll_symbol(self, symbol: str, interval: str) -> Optional[SignalSnapshot]:
        symbol = symbol.upper()
        try:
            candles = self.source.get_candles(symbol, interval, self.candle_limit)
        except TransientFetchError as e:
            logger.warning(f"Skipping {symbol} {interval} cycle: {e}")
            return None

        indicators = calculate_indicators(candles, self.indicator_params)
        if indicators is None:
            logger.info(f"Not enough candles for {symbol} {interval} ({len(candles)})")
            return None
        indicators.funding_rate = self.source.get_funding_rate(symbol)
        if indicators.errors:
            logger.warning(f"{symbol} {interval}: detectors failed this cycle: {indicators.errors}")

        setup = analyze_sniper_setup(candles, indicators, params=self.structure_params)
        candidate = self.predictor.predict_next_move(
            indicators, symbol=symbol, setup=setup, interval=interval,
        )

        learned = self.learning.get_learned_recommendation(indicators)
        snapshot = SignalSnapshot(
            symbol=symbol,
            interval=interval,
            candidate=candidate,
            indicators=indicators,
            setup=setup,
            regime=learned.regime,
            learned=dataclasses.asdict(learned),
            updated_at=self._clock(),
        )
        if candidate.direction != "neutral":
            snapshot.entry_quality = dataclasses.asdict(
                self.learning.check_entry_quality(indicators, candidate.direction))
            snapshot.failure_risk = dataclasses.asdict(
                self.learning.check_failure_pattern_risk(indicators, candidate.direction))

        with self._lock:
            self._latest[(symbol, interval)] = snapshot

        if candidate.actionable:
            logger.info(f"📈 {symbol} {interval}: {candidate.signal} "
                        f"({candidate.confidence:.0%}, threshold {candidate.min_confidence:.0%})")
            if self.trading_enabled:
                snapshot.execution = self._maybe_execute(snapshot)
        return snapshot

    # ── Execution flow ────────────────────────────────────────────────────

    def _maybe_execute(self, snap: SignalSnapshot) -> Dict[str, Any]:
        candidate, ind = snap.candidate, snap.indicators
        symbol, direction = snap.symbol, candidate.direction

        with self._lock:
            if symbol in self._positions:
                return self._skip(symbol, f"Position already open on {symbol}")

            danger = self.learning.is_dangerous_condition(ind)
            if danger.dangerous:
                return self._skip(symbol, f"Learned danger: {danger.reason}")

            failure = self.learning.check_failure_pattern_risk(ind, direction)
            if failure.should_avoid:
                names = ", ".join(r.pattern for r in failure.risks)
                return self._skip(symbol, f"Failure-pattern risk {failure.risk_score} ({names})")

            if self.confirmation is not None:
                score = ind.sniper_signals.score if ind.sniper_signals is not None else None
                decision = self.confirmation.check(
                    symbol, direction,
                    sniper_direction=score.direction if score else None,
                    sniper_score=score.score if score else 0,
                    sniper_active=bool(score and score.is_sniper),
                )
                if not decision.should_enter:
                    return self._skip(symbol, decision.reason or "Waiting for sniper confirmation",
                                      waiting=decision.should_wait)
                if decision.bonus:
                    candidate.confidence = round(min(0.95, candidate.confidence + decision.bonus), 2)
                    if decision.reason:
                        candidate.reasons.append(decision.reason)

            gate = self.risk.check_trading_allowed()
            if not gate.allowed:
                return self._skip(symbol, f"Risk gate: {gate.reason}")

            if len(self._positions) >= self.risk.config.max_open_positions:
                return self._skip(symbol, f"Max open positions ({self.risk.config.max_open_positions}) reached")

            corr = self.risk.check_correlation(symbol, self._positions.keys())
            if not corr.allowed:
                return self._skip(symbol, corr.reason)

            size = self.risk.calculate_position_size(PositionRequest(
                account_balance=self.risk.state.current_equity,
                entry_price=candidate.entry,
                stop_loss_price=candidate.stop_loss,
                confidence=candidate.confidence,
                direction=direction,
                current_volatility=ind.atr_pct,
            ))
            if not size.allowed or size.quantity <= 0:
                return self._skip(symbol, size.reason or "Position size is zero")

            self.adapter.set_leverage(symbol, size.leverage)
            result = self.adapter.execute_trade(candidate, size.quantity, size.leverage)
            if not result.executed:
                return self._skip(symbol, f"Execution failed: {result.reason}")

            order = result.order or {}
            self._positions[symbol] = OpenPosition(
                symbol=symbol,
                direction=direction,
                signal=candidate.signal,
                interval=snap.interval,
                entry_price=float(order.get("fill_price") or candidate.entry),
                quantity=float(order.get("filled_qty") or order.get("quantity") or size.quantity),
                leverage=size.leverage,
                opened_at=self._clock(),
                entry_indicators=ind,
                order=order,
            )

        logger.info(f"🚀 Opened {direction.upper()} {symbol} ({candidate.signal}) "
                    f"qty {size.quantity} @ {candidate.entry}, {size.leverage}x, "
                    f"risk {size.risk_percent}%")
        return {
            "executed": True,
            "order": order,
            "position_value": size.position_value,
            "risk_percent": size.risk_percent,
            "leverage": size.leverage,
            "adjustments": size.adjustments,
        }

    @staticmethod
    def _skip(symbol: str, reason: str, waiting: bool = False) -> Dict[str, Any]:
        logger.info(f"⏸️ {symbol}: not executing, {reason}")
        return {"executed": False, "waiting": waiting, "reason": reason}

    # ── Completed trades ──────────────────────────────────────────────────

    def handle_trade_closed(self, event: TradeClosedEvent) -> Dict[str, Any]:
        with self._lock:
            event = self._enrich(event)
            learning = self.learning.on_trade_closed(event)

            risk_status = None
            if event.result != "missed":
                risk_status = self.risk.record_trade(TradeRecord(
                    symbol=event.symbol,
                    direction=event.direction,
                    pnl_percent=event.pnl_percent,
                    result=event.result,
                    pnl=event.pnl,
                    account_balance=event.account_balance,
                    timestamp=event.timestamp,
                ))
            if self.confirmation is not None:
                self.confirmation.clear(event.symbol)
            self._positions.pop(event.symbol, None)

        logger.info(f"Trade closed {event.symbol} {event.direction}: {event.result} "
                    f"({event.pnl_percent:+.2f}%)")
        return {
            "symbol": event.symbol,
            "result": event.result,
            "learning": dataclasses.asdict(learning) if learning is not None else None,
            "risk": risk_status,
        }

    def _enrich(self, event: TradeClosedEvent) -> TradeClosedEvent:
        """Fill entry/exit context the caller did not send from tracked state."""
        changes: Dict[str, Any] = {}
        now = event.timestamp if event.timestamp is not None else self._clock()
        if event.timestamp is None:
            changes["timestamp"] = now

        pos = self._positions.get(event.symbol)
        if pos is not None and pos.direction == event.direction:
            if event.entry_indicators is None:
                changes["entry_indicators"] = pos.entry_indicators
            if event.entry_price is None:
                changes["entry_price"] = pos.entry_price
            if event.signal is None:
                changes["signal"] = pos.signal
            if event.leverage == 1 and pos.leverage != 1:
                changes["leverage"] = pos.leverage
            if event.hold_time_ms == 0:
                changes["hold_time_ms"] = int(max(0.0, now - pos.opened_at) * 1000)

        if event.exit_indicators is None:
            latest = self._latest_for(event.symbol, pos.interval if pos else None)
            if latest is not None:
                changes["exit_indicators"] = latest.indicators
                if event.exit_price is None:
                    changes["exit_price"] = latest.indicators.current_price

        return dataclasses.replace(event, **changes) if changes else event

    def _latest_for(self, symbol: str, interval: Optional[str]) -> Optional[SignalSnapshot]:
        if interval is not None and (symbol, interval) in self._latest:
            return self._latest[(symbol, interval)]
        matches = [s for (sym, _), s in self._latest.items() if sym == symbol]
        return max(matches, key=lambda s: s.updated_at) if matches else None

    def close_position(self, symbol: str, reason: str = "manual") -> Dict[str, Any]:
        """Close through the adapter and feed the realized outcome back."""
        symbol = symbol.upper()
        if self.adapter is None:
            return {"closed": False, "reason": "No exchange adapter configured"}

        with self._lock:
            pos = self._positions.get(symbol)
            latest = self._latest_for(symbol, pos.interval if pos else None)
            mark = latest.indicators.current_price if latest is not None else None
            closed = self.adapter.close_position(symbol, reason=reason, mark_price=mark)
            if not closed.closed:
                return {"closed": False, "reason": closed.reason}

            r = closed.result or {}
            pnl_percent = float(r.get("pnl_percent", 0.0))
            event = TradeClosedEvent(
                symbol=symbol,
                direction=r.get("side") or (pos.direction if pos else "long"),
                pnl_percent=pnl_percent,
                result="win" if pnl_percent > 0 else "loss",
                exit_price=r.get("exit_price"),
                entry_price=r.get("entry_price"),
                pnl=r.get("pnl"),
                leverage=int(r.get("leverage", 1) or 1),
            )
            outcome = self.handle_trade_closed(event)
        return {"closed": True, "result": r, "outcome": outcome}

    # ── Read models ───────────────────────────────────────────────────────

    def latest_signals(self) -> List[Dict[str, Any]]:
        with self._lock:
            snaps = list(self._latest.values())
        return [s.candidate.to_dict() | {"regime": s.regime, "updated_at": s.updated_at}
                for s in sorted(snaps, key=lambda s: (s.symbol, s.interval))]

    def latest_signal(self, symbol: str) -> List[SignalSnapshot]:
        symbol = symbol.upper()
        with self._lock:
            return [s for (sym, _), s in sorted(self._latest.items()) if sym == symbol]

    def open_positions(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [p.to_dict() for p in self._positions.values()]
