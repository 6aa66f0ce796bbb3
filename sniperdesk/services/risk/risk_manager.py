"""
Risk Manager
============
Kelly-influenced position sizing, drawdown protection and the
trading-allowed gate.

Gate (fails closed, first failing check wins):
  1. Daily loss       daily_pnl  <= -max_daily_loss
  2. Weekly loss      weekly_pnl <= -max_weekly_loss
  3. Drawdown         current_drawdown >= max_drawdown
  4. Trade count      today_trades >= max_daily_trades
  5. Spacing          last trade less than min_time_between_trades_s ago
  6. Loss streak      consecutive_losses >= max_consecutive_losses

Position sizing multipliers:
  Kelly cap → confidence (0.5-1.0) → inverse volatility (≤1.5x)
  → drawdown (≥0.25x) → loss streak (≥0.3x) → win streak (≤1.2x)
  → global risk multiplier.  Position value hard-capped at 25% of balance.

All state mutation happens under one RLock; persistence goes through the
injected StateStore inside the same lock.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from sniperdesk.services.persistence.state_store import RISK_STATE_KEY, StateStore

logger = logging.getLogger(__name__)

RISK_SCHEMA_VERSION = 2
TRADE_HISTORY_LIMIT = 100

CORRELATION_GROUPS: Dict[str, tuple] = {
    "majors": ("BTCUSDT", "BTCUSDC", "ETHUSDT", "ETHUSDC"),
    "layer1": ("BNBUSDT", "SOLUSDT", "ADAUSDT", "XRPUSDT", "AVAXUSDT", "DOTUSDT"),
    "memes": ("DOGEUSDT", "SHIBUSDT", "PEPEUSDT", "FARTCOINUSDT", "BONKUSDT", "WIFUSDT"),
    "defi": ("UNIUSDT", "AAVEUSDT", "LINKUSDT", "MKRUSDT"),
}


# ── Config & state ──────────────────────────────────────────────────────────

@dataclass
class RiskConfig:
    max_risk_per_trade: float = 2.0        # % of balance
    max_daily_loss: float = 5.0            # %
    max_weekly_loss: float = 10.0          # %
    max_drawdown: float = 15.0             # %, pauses trading
    max_open_positions: int = 5
    max_daily_trades: int = 20
    min_time_between_trades_s: float = 60.0
    max_consecutive_losses: int = 5
    max_correlated_positions: int = 3
    volatility_adjustment: bool = True
    baseline_volatility_pct: float = 2.0   # ATR% considered normal
    kelly_fraction: float = 0.25           # quarter Kelly
    kelly_min_trades: int = 10
    max_position_pct: float = 25.0         # of balance
    max_leverage: int = 20
    initial_equity: float = 10000.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TradeRecord:
    """Completed trade as seen by the risk manager."""
    symbol: str
    direction: str
    pnl_percent: float
    result: str                              # win | loss | liquidation
    pnl: Optional[float] = None
    account_balance: Optional[float] = None
    timestamp: Optional[float] = None


@dataclass
class RiskState:
    daily_pnl: float = 0.0
    weekly_pnl: float = 0.0
    monthly_pnl: float = 0.0
    current_drawdown: float = 0.0
    peak_equity: float = 10000.0
    current_equity: float = 10000.0
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    today_trades: int = 0
    last_trade_time: Optional[float] = None
    risk_multiplier: float = 1.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_pnl: float = 0.0
    trade_history: List[Dict[str, Any]] = field(default_factory=list)
    last_reset_date: Optional[str] = None
    last_reset_week: Optional[str] = None
    last_reset_month: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["version"] = RISK_SCHEMA_VERSION
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskState":
        data = migrate_risk_state(data)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


_V0_KEYS = {
    "dailyPnL": "daily_pnl",
    "weeklyPnL": "weekly_pnl",
    "monthlyPnL": "monthly_pnl",
    "currentDrawdown": "current_drawdown",
    "peakEquity": "peak_equity",
    "consecutiveLosses": "consecutive_losses",
    "consecutiveWins": "consecutive_wins",
    "todayTrades": "today_trades",
    "lastTradeTime": "last_trade_time",
    "riskMultiplier": "risk_multiplier",
    "tradeHistory": "trade_history",
}


def migrate_risk_state(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade a persisted risk payload to RISK_SCHEMA_VERSION.

    v0: camelCase keys, millisecond timestamps, no version field.
    v1: snake_case without equity/totals/calendar markers.
    """
    data = dict(raw)
    version = int(data.get("version", 0) or 0)

    if version < 1:
        data = {_V0_KEYS.get(k, k): v for k, v in data.items()}
        if data.get("last_trade_time"):
            data["last_trade_time"] = data["last_trade_time"] / 1000.0
        data["trade_history"] = [
            {
                "timestamp": (t.get("timestamp") or 0) / 1000.0,
                "symbol": t.get("symbol"),
                "direction": t.get("direction"),
                "pnl": t.get("pnl"),
                "pnl_percent": t.get("pnlPercent", 0.0),
                "result": t.get("result"),
            }
            for t in data.get("trade_history", [])
        ]
        version = 1

    if version < 2:
        peak = float(data.get("peak_equity", 10000.0) or 10000.0)
        dd = float(data.get("current_drawdown", 0.0) or 0.0)
        data.setdefault("current_equity", peak * (1 - dd / 100))
        history = data.get("trade_history", [])
        data.setdefault("total_trades", len(history))
        data.setdefault("winning_trades", sum(1 for t in history if (t.get("pnl_percent") or 0) > 0))
        data.setdefault("losing_trades", sum(1 for t in history if (t.get("pnl_percent") or 0) < 0))
        data.setdefault("total_pnl", sum(t.get("pnl") or 0.0 for t in history))
        version = 2

    data["version"] = version
    return data


# ── Results ─────────────────────────────────────────────────────────────────

@dataclass
class TradingGate:
    allowed: bool
    reason: Optional[str] = None


@dataclass
class PositionRequest:
    account_balance: float
    entry_price: float
    stop_loss_price: float
    confidence: float = 0.6
    direction: str = "long"
    current_volatility: Optional[float] = None   # ATR %
    win_rate: Optional[float] = None
    avg_win: Optional[float] = None
    avg_loss: Optional[float] = None


@dataclass
class PositionSize:
    allowed: bool
    reason: Optional[str] = None
    risk_percent: float = 0.0
    risk_amount: float = 0.0
    position_value: float = 0.0
    quantity: float = 0.0
    leverage: int = 1
    adjustments: Dict[str, float] = field(default_factory=dict)


@dataclass
class VarResult:
    insufficient: bool
    var: float = 0.0
    cvar: float = 0.0
    var_percent: float = 0.0
    cvar_percent: float = 0.0
    confidence_level: float = 95.0
    sample_size: int = 0


@dataclass
class CorrelationCheck:
    allowed: bool
    correlation: str                  # low | medium | high
    group: Optional[str] = None
    existing_in_group: int = 0
    reason: Optional[str] = None


def _round(value: float, decimals: int = 2) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return round(value, decimals)


# ── Manager ─────────────────────────────────────────────────────────────────

class RiskManager:
    """Process-wide owner of RiskState.

    Usage:
        risk = RiskManager(RiskConfig(), store=JsonFileStateStore("./data"))
        gate = risk.check_trading_allowed()
        size = risk.calculate_position_size(PositionRequest(...))
        risk.record_trade(TradeRecord(...))
    """

    def __init__(self, config: Optional[RiskConfig] = None,
                 store: Optional[StateStore] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or RiskConfig()
        self._store = store
        self._clock = clock
        self._lock = threading.RLock()
        self.state = RiskState(peak_equity=self.config.initial_equity,
                               current_equity=self.config.initial_equity)
        self.load()

    # ── Persistence ─────────────────────────────────────────────────────

    def load(self) -> bool:
        with self._lock:
            if self._store is None:
                self._roll_calendar()
                return False
            raw = self._store.load_state(RISK_STATE_KEY)
            if raw is None:
                self._roll_calendar()
                return False
            try:
                self.state = RiskState.from_dict(raw)
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Malformed risk state, starting fresh: {e}")
                self._roll_calendar()
                return False
            self._roll_calendar()
            logger.info(f"Loaded risk state ({self.state.total_trades} trades, "
                        f"drawdown {self.state.current_drawdown:.2f}%)")
            return True

    def save(self) -> bool:
        with self._lock:
            if self._store is None:
                return False
            return self._store.save_state(RISK_STATE_KEY, self.state.to_dict())

    def _roll_calendar(self) -> None:
        """Reset daily/weekly/monthly windows when the UTC calendar moved on."""
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        iso = now.isocalendar()
        today = now.strftime("%Y-%m-%d")
        week = f"{iso[0]}-W{iso[1]:02d}"
        month = now.strftime("%Y-%m")
        s = self.state

        if s.last_reset_date != today:
            if s.last_reset_date is not None:
                logger.info(f"New trading day {today}: daily risk counters reset")
            s.daily_pnl = 0.0
            s.today_trades = 0
            s.last_reset_date = today
        if s.last_reset_week != week:
            s.weekly_pnl = 0.0
            s.last_reset_week = week
        if s.last_reset_month != month:
            s.monthly_pnl = 0.0
            s.last_reset_month = month

    # ── Gate ────────────────────────────────────────────────────────────

    def check_trading_allowed(self) -> TradingGate:
        with self._lock:
            self._roll_calendar()
            return self._gate()

    def _gate(self) -> TradingGate:
        s, c = self.state, self.config
        if s.daily_pnl <= -c.max_daily_loss:
            return TradingGate(False, "Daily loss limit reached")
        if s.weekly_pnl <= -c.max_weekly_loss:
            return TradingGate(False, "Weekly loss limit reached")
        if s.current_drawdown >= c.max_drawdown:
            return TradingGate(False, f"Max drawdown ({c.max_drawdown}%) reached - trading paused")
        if s.today_trades >= c.max_daily_trades:
            return TradingGate(False, "Daily trade limit reached")
        if s.last_trade_time is not None:
            if self._clock() - s.last_trade_time < c.min_time_between_trades_s:
                return TradingGate(False, "Minimum time between trades not met")
        if s.consecutive_losses >= c.max_consecutive_losses:
            return TradingGate(False, f"{c.max_consecutive_losses} consecutive losses - cooldown period")
        return TradingGate(True)

    # ── Sizing ──────────────────────────────────────────────────────────

    def calculate_kelly_size(self, win_rate: float, avg_win: float, avg_loss: float) -> float:
        """Quarter Kelly as a fraction of capital, clamped to [0, max_risk_per_trade/100]."""
        if avg_loss <= 0 or avg_win <= 0:
            return 0.0
        p = win_rate
        q = 1 - win_rate
        b = avg_win / avg_loss
        kelly = (p * b - q) / b
        conservative = kelly * self.config.kelly_fraction
        return max(0.0, min(conservative, self.config.max_risk_per_trade / 100))

    def calculate_position_size(self, req: PositionRequest) -> PositionSize:
        with self._lock:
            self._roll_calendar()
            gate = self._gate()
            if not gate.allowed:
                return PositionSize(allowed=False, reason=gate.reason)
            if req.entry_price <= 0 or req.account_balance <= 0:
                return PositionSize(allowed=False, reason="Invalid entry price or balance")
            stop_distance = abs(req.entry_price - req.stop_loss_price)
            if stop_distance == 0:
                return PositionSize(allowed=False, reason="Stop loss equals entry price")

            s, c = self.state, self.config
            risk_percent = c.max_risk_per_trade
            adjustments: Dict[str, float] = {}

            # 1. Kelly cap
            stats = self._kelly_inputs(req)
            if stats is not None:
                kelly = self.calculate_kelly_size(*stats)
                risk_percent = min(risk_percent, kelly * 100)
                adjustments["kelly"] = _round(kelly * 100, 3)

            # 2. Confidence
            confidence_mult = 0.5 + req.confidence * 0.5
            risk_percent *= confidence_mult
            adjustments["confidence"] = _round(confidence_mult)

            # 3. Volatility
            if c.volatility_adjustment and req.current_volatility:
                vol_mult = min(1.5, c.baseline_volatility_pct / max(req.current_volatility, 0.5))
                risk_percent *= vol_mult
                adjustments["volatility"] = _round(vol_mult)

            # 4. Drawdown
            if s.current_drawdown > 5:
                dd_mult = max(1 - s.current_drawdown / c.max_drawdown, 0.25)
                risk_percent *= dd_mult
                adjustments["drawdown"] = _round(dd_mult)

            # 5. Loss streak
            if s.consecutive_losses >= 3:
                loss_mult = max(1 - s.consecutive_losses * 0.1, 0.3)
                risk_percent *= loss_mult
                adjustments["consecutive_losses"] = _round(loss_mult)

            # 6. Win streak
            if s.consecutive_wins >= 3 and s.consecutive_losses == 0:
                win_mult = 1 + min(s.consecutive_wins * 0.05, 0.2)
                risk_percent *= win_mult
                adjustments["consecutive_wins"] = _round(win_mult)

            # 7. Global multiplier
            risk_percent *= s.risk_multiplier
            adjustments["risk_multiplier"] = s.risk_multiplier

            risk_amount = req.account_balance * risk_percent / 100
            stop_pct = stop_distance / req.entry_price
            position_value = risk_amount / stop_pct
            position_value = min(position_value, req.account_balance * c.max_position_pct / 100)
            quantity = position_value / req.entry_price

            return PositionSize(
                allowed=True,
                risk_percent=_round(risk_percent),
                risk_amount=_round(risk_amount),
                position_value=_round(position_value),
                quantity=_round(quantity, 6),
                leverage=self._safe_leverage(position_value, req.account_balance, stop_pct),
                adjustments=adjustments,
            )

    def _kelly_inputs(self, req: PositionRequest) -> Optional[tuple]:
        if req.win_rate is not None and req.avg_win and req.avg_loss:
            return req.win_rate, req.avg_win, req.avg_loss
        history = self.state.trade_history
        if len(history) < self.config.kelly_min_trades:
            return None
        win_rate, avg_win, avg_loss = self._history_stats(history)
        return win_rate, avg_win, avg_loss

    @staticmethod
    def _history_stats(history: List[Dict[str, Any]]) -> tuple:
        wins = [t["pnl_percent"] for t in history if t.get("pnl_percent", 0) > 0]
        losses = [abs(t["pnl_percent"]) for t in history if t.get("pnl_percent", 0) < 0]
        win_rate = len(wins) / len(history) if history else 0.0
        avg_win = sum(wins) / len(wins) if wins else 0.0
        avg_loss = sum(losses) / len(losses) if losses else 0.0
        return win_rate, avg_win, avg_loss

    def _safe_leverage(self, position_value: float, balance: float, stop_pct: float) -> int:
        max_loss = balance * self.config.max_risk_per_trade / 100
        potential_loss = position_value * stop_pct
        if potential_loss <= 0:
            return 1
        return min(max(1, math.floor(max_loss / potential_loss)), self.config.max_leverage)

    # ── Recording ───────────────────────────────────────────────────────

    def record_trade(self, trade: TradeRecord) -> Dict[str, Any]:
        with self._lock:
            self._roll_calendar()
            s = self.state
            now = trade.timestamp if trade.timestamp is not None else self._clock()

            s.daily_pnl += trade.pnl_percent
            s.weekly_pnl += trade.pnl_percent
            s.monthly_pnl += trade.pnl_percent
            s.total_trades += 1
            if trade.pnl is not None:
                s.total_pnl += trade.pnl

            is_win = trade.result == "win" or (trade.pnl is not None and trade.pnl > 0)
            is_loss = trade.result in ("loss", "liquidation") or (trade.pnl is not None and trade.pnl < 0)
            if is_win and not is_loss:
                s.consecutive_wins += 1
                s.consecutive_losses = 0
                s.winning_trades += 1
            elif is_loss:
                s.consecutive_losses += 1
                s.consecutive_wins = 0
                s.losing_trades += 1

            s.today_trades += 1
            s.last_trade_time = now

            if trade.account_balance is not None:
                s.current_equity = trade.account_balance
            elif trade.pnl is not None:
                s.current_equity += trade.pnl
            if s.current_equity > s.peak_equity:
                s.peak_equity = s.current_equity
            if s.peak_equity > 0:
                s.current_drawdown = (s.peak_equity - s.current_equity) / s.peak_equity * 100

            s.trade_history.append({
                "timestamp": now,
                "symbol": trade.symbol,
                "direction": trade.direction,
                "pnl": trade.pnl,
                "pnl_percent": trade.pnl_percent,
                "result": trade.result,
            })
            if len(s.trade_history) > TRADE_HISTORY_LIMIT:
                s.trade_history = s.trade_history[-TRADE_HISTORY_LIMIT:]

            gate = self._gate()
            if not gate.allowed:
                logger.warning(f"🛑 Trading halted after {trade.symbol} {trade.result}: {gate.reason}")
            self.save()
            return self.get_risk_status()

    # ── Reporting ───────────────────────────────────────────────────────

    def get_risk_status(self) -> Dict[str, Any]:
        with self._lock:
            self._roll_calendar()
            s, c = self.state, self.config
            gate = self._gate()

            recent = s.trade_history[-50:]
            win_rate, avg_win, avg_loss = self._history_stats(recent)
            gross_win = sum(t["pnl_percent"] for t in recent if t.get("pnl_percent", 0) > 0)
            gross_loss = abs(sum(t["pnl_percent"] for t in recent if t.get("pnl_percent", 0) < 0))
            profit_factor = gross_win / gross_loss if gross_loss > 0 else None
            kelly_optimal = self.calculate_kelly_size(win_rate, avg_win, avg_loss) * 100

            if not gate.allowed:
                level = "STOPPED"
            elif s.current_drawdown >= 10 or s.consecutive_losses >= 4:
                level = "CRITICAL"
            elif s.current_drawdown >= 5 or s.consecutive_losses >= 3:
                level = "HIGH"
            elif s.daily_pnl < -c.max_daily_loss / 2:
                level = "ELEVATED"
            else:
                level = "NORMAL"

            return {
                "trading_allowed": gate.allowed,
                "reason": gate.reason,
                "risk_level": level,
                "current_state": {
                    "daily_pnl": _round(s.daily_pnl),
                    "weekly_pnl": _round(s.weekly_pnl),
                    "monthly_pnl": _round(s.monthly_pnl),
                    "current_drawdown": _round(s.current_drawdown),
                    "current_equity": _round(s.current_equity),
                    "peak_equity": _round(s.peak_equity),
                    "consecutive_losses": s.consecutive_losses,
                    "consecutive_wins": s.consecutive_wins,
                    "today_trades": s.today_trades,
                    "risk_multiplier": s.risk_multiplier,
                },
                "limits": {
                    "daily_loss_limit": c.max_daily_loss,
                    "weekly_loss_limit": c.max_weekly_loss,
                    "max_drawdown": c.max_drawdown,
                    "max_daily_trades": c.max_daily_trades,
                    "remaining_daily_loss": _round(c.max_daily_loss + min(s.daily_pnl, 0.0)),
                    "remaining_trades": max(0, c.max_daily_trades - s.today_trades),
                },
                "stats": {
                    "total_trades": s.total_trades,
                    "win_rate": _round(win_rate * 100, 1),
                    "avg_win": _round(avg_win),
                    "avg_loss": _round(avg_loss),
                    "profit_factor": _round(profit_factor) if profit_factor is not None else None,
                    "kelly_optimal": _round(kelly_optimal),
                    "recent_trades": len(recent),
                },
                "recommendations": self._recommendations(level),
            }

    def _recommendations(self, level: str) -> List[Dict[str, str]]:
        s = self.state
        recs = []
        if s.consecutive_losses >= 2:
            recs.append({"type": "WARNING",
                         "message": f"{s.consecutive_losses} consecutive losses - consider reducing position size"})
        if s.current_drawdown > 5:
            recs.append({"type": "CAUTION",
                         "message": f"In {s.current_drawdown:.1f}% drawdown - position sizes reduced"})
        if s.daily_pnl < -3:
            recs.append({"type": "WARNING",
                         "message": "Down more than 3% today - consider stopping for the day"})
        if level == "CRITICAL":
            recs.append({"type": "ALERT",
                         "message": "Critical risk level - manual review recommended before trading"})
        if s.consecutive_wins >= 5:
            recs.append({"type": "INFO",
                         "message": "Strong winning streak - avoid overconfidence, maintain discipline"})
        if not recs:
            recs.append({"type": "OK", "message": "Risk levels normal - trading parameters optimal"})
        return recs

    def calculate_var(self, portfolio_value: float, confidence_level: float = 0.95,
                      returns: Optional[Iterable[float]] = None) -> VarResult:
        """Historical-simulation VaR/CVaR; returns default to recorded trade returns."""
        with self._lock:
            if returns is None:
                samples = [t.get("pnl_percent", 0.0) / 100 for t in self.state.trade_history]
            else:
                samples = list(returns)

        n = len(samples)
        if n < 20:
            return VarResult(insufficient=True, confidence_level=confidence_level * 100, sample_size=n)

        ordered = sorted(samples)
        idx = math.floor((1 - confidence_level) * n)
        var = -ordered[idx]
        tail = ordered[:idx]
        cvar = -sum(tail) / len(tail) if tail else var
        return VarResult(
            insufficient=False,
            var=_round(var * portfolio_value),
            cvar=_round(cvar * portfolio_value),
            var_percent=_round(var * 100),
            cvar_percent=_round(cvar * 100),
            confidence_level=confidence_level * 100,
            sample_size=n,
        )

    def check_correlation(self, symbol: str, open_symbols: Iterable[str]) -> CorrelationCheck:
        group = next((g for g, members in CORRELATION_GROUPS.items() if symbol in members), None)
        if group is None:
            return CorrelationCheck(allowed=True, correlation="low")

        same = [s for s in open_symbols if s in CORRELATION_GROUPS[group]]
        if len(same) >= self.config.max_correlated_positions:
            return CorrelationCheck(
                allowed=False, correlation="high", group=group, existing_in_group=len(same),
                reason=f"Already have {len(same)} correlated positions in {group} group",
            )
        return CorrelationCheck(
            allowed=True, correlation="medium" if same else "low",
            group=group, existing_in_group=len(same),
        )

    # ── Controls ────────────────────────────────────────────────────────

    def update_config(self, **changes) -> RiskConfig:
        with self._lock:
            known = {f.name for f in fields(RiskConfig)}
            unknown = set(changes) - known
            if unknown:
                raise ValueError(f"Unknown risk config keys: {sorted(unknown)}")
            for k, v in changes.items():
                setattr(self.config, k, v)
            logger.info(f"Risk configuration updated: {changes}")
            return self.config

    def reset_limits(self, scope: str = "daily") -> Dict[str, Any]:
        """Manual override: ``daily``, ``weekly`` or ``all``."""
        if scope not in ("daily", "weekly", "all"):
            raise ValueError(f"Unknown reset scope: {scope}")
        with self._lock:
            s = self.state
            if scope in ("daily", "all"):
                s.daily_pnl = 0.0
                s.today_trades = 0
            if scope in ("weekly", "all"):
                s.weekly_pnl = 0.0
            if scope == "all":
                s.consecutive_losses = 0
                s.consecutive_wins = 0
                s.risk_multiplier = 1.0
            logger.info(f"Risk limits reset ({scope})")
            self.save()
            return self.get_risk_status()

    def set_risk_multiplier(self, value: float) -> float:
        with self._lock:
            self.state.risk_multiplier = max(0.1, min(2.0, float(value)))
            self.save()
            return self.state.risk_multiplier
