"""
Data models for the analysis pipeline.
Candle, IndicatorBundle, sniper sub-signals, structure setups and the
TradeCandidate emitted by one poll cycle.

Every indicator that can be missing for lack of data is typed Optional;
consumers check for None explicitly.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from sniperdesk.services.errors import InvalidTradeCandidate


# ── Candles ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Candle:
    """One OHLCV bar. Windows are always ordered by open_time ascending."""
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int = 0

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def upper_wick(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_wick(self) -> float:
        return min(self.open, self.close) - self.low

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open

    @classmethod
    def from_kline(cls, row: List[Any]) -> "Candle":
        """Parse a Binance kline row ``[open_time, o, h, l, c, v, close_time, ...]``."""
        return cls(
            open_time=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            close_time=int(row[6]) if len(row) > 6 else 0,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candle":
        return cls(
            open_time=int(data.get("open_time", 0)),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume", 0.0)),
            close_time=int(data.get("close_time", 0)),
        )


# ── Indicator values ────────────────────────────────────────────────────────

@dataclass
class MacdValue:
    line: float
    signal: float
    histogram: float


@dataclass
class BollingerValue:
    upper: float
    middle: float
    lower: float
    width_pct: float
    percent_b: Optional[float]  # None when upper <= lower; not clamped to [0, 1]


@dataclass
class KdjValue:
    k: float
    d: float
    j: float


@dataclass
class EmaSet:
    ema20: Optional[float] = None
    ema50: Optional[float] = None
    ema200: Optional[float] = None


@dataclass
class TrendInfo:
    direction: str = "NEUTRAL"   # STRONG_UP, UP, NEUTRAL, DOWN, STRONG_DOWN
    score: int = 0               # [-5, 5]
    slope_pct: float = 0.0       # regression slope of recent closes, % of price

    @property
    def is_up(self) -> bool:
        return self.direction in ("UP", "STRONG_UP")

    @property
    def is_down(self) -> bool:
        return self.direction in ("DOWN", "STRONG_DOWN")

    @property
    def is_strong(self) -> bool:
        return self.direction.startswith("STRONG_")


@dataclass
class Breakout:
    direction: Optional[str] = None  # "up" | "down" | None
    level: Optional[float] = None


# ── Sniper sub-signals ──────────────────────────────────────────────────────

@dataclass
class SubSignal:
    detected: bool = False
    direction: Optional[str] = None  # "bullish" | "bearish" | None
    strength: float = 0.0            # 0-100
    detail: str = ""


@dataclass
class VolumeSurge(SubSignal):
    intensity: float = 0.0
    acceleration: int = 0
    consecutive: int = 0
    surge_pct: float = 0.0
    is_explosive: bool = False


@dataclass
class SniperScore:
    score: int = 0
    direction: Optional[str] = None
    signals: List[str] = field(default_factory=list)
    is_sniper: bool = False


@dataclass
class SniperSignals:
    divergence: Optional[SubSignal] = None
    volume_accumulation: Optional[SubSignal] = None
    early_breakout: Optional[SubSignal] = None
    momentum_building: Optional[SubSignal] = None
    squeeze: Optional[SubSignal] = None
    volume_surge: Optional[VolumeSurge] = None
    score: SniperScore = field(default_factory=SniperScore)

    def detected(self) -> Dict[str, SubSignal]:
        """Sub-signals that fired, keyed by name."""
        out: Dict[str, SubSignal] = {}
        for name in ("divergence", "volume_accumulation", "early_breakout",
                     "momentum_building", "squeeze", "volume_surge"):
            sig = getattr(self, name)
            if sig is not None and sig.detected:
                out[name] = sig
        return out


# ── Trade levels ────────────────────────────────────────────────────────────

@dataclass
class LevelSet:
    entry: float
    stop_loss: float
    tp1: float
    tp2: float
    tp3: float
    risk_pct: float
    rr: float

    @property
    def take_profits(self) -> List[float]:
        return [self.tp1, self.tp2, self.tp3]


@dataclass
class TradeLevels:
    long: LevelSet
    short: LevelSet
    atr_pct: float
    low_volatility: bool


# ── Indicator bundle ────────────────────────────────────────────────────────

@dataclass
class IndicatorBundle:
    """Everything the indicator engine derives from one candle window."""
    current_price: float
    rsi: Optional[float] = None
    macd: Optional[MacdValue] = None
    bollinger: Optional[BollingerValue] = None
    kdj: Optional[KdjValue] = None
    atr: Optional[float] = None
    atr_pct: Optional[float] = None
    ema: EmaSet = field(default_factory=EmaSet)
    trend: TrendInfo = field(default_factory=TrendInfo)
    volume_ratio: float = 1.0
    volume_spike: bool = False
    support: Optional[float] = None
    resistance: Optional[float] = None
    breakout: Breakout = field(default_factory=Breakout)
    patterns: List[str] = field(default_factory=list)
    sniper_signals: Optional[SniperSignals] = None
    trade_levels: Optional[TradeLevels] = None
    momentum_score: int = 0
    errors: List[str] = field(default_factory=list)
    funding_rate: Optional[float] = None   # perpetual funding at snapshot time, if fetched

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndicatorBundle":
        """Rebuild a bundle from ``to_dict`` output (e.g. a posted trade event)."""
        return cls(
            current_price=float(data.get("current_price", 0.0)),
            rsi=data.get("rsi"),
            macd=_build(MacdValue, data.get("macd")),
            bollinger=_build(BollingerValue, data.get("bollinger")),
            kdj=_build(KdjValue, data.get("kdj")),
            atr=data.get("atr"),
            atr_pct=data.get("atr_pct"),
            ema=_build(EmaSet, data.get("ema")) or EmaSet(),
            trend=_build(TrendInfo, data.get("trend")) or TrendInfo(),
            volume_ratio=float(data.get("volume_ratio", 1.0)),
            volume_spike=bool(data.get("volume_spike", False)),
            support=data.get("support"),
            resistance=data.get("resistance"),
            breakout=_build(Breakout, data.get("breakout")) or Breakout(),
            patterns=list(data.get("patterns") or []),
            sniper_signals=_sniper_signals_from_dict(data.get("sniper_signals")),
            trade_levels=_trade_levels_from_dict(data.get("trade_levels")),
            momentum_score=int(data.get("momentum_score", 0)),
            errors=list(data.get("errors") or []),
            funding_rate=data.get("funding_rate"),
        )


def _build(cls, data: Optional[Dict[str, Any]]):
    if not data:
        return None
    return cls(**data)


def _sniper_signals_from_dict(data: Optional[Dict[str, Any]]) -> Optional[SniperSignals]:
    if not data:
        return None
    return SniperSignals(
        divergence=_build(SubSignal, data.get("divergence")),
        volume_accumulation=_build(SubSignal, data.get("volume_accumulation")),
        early_breakout=_build(SubSignal, data.get("early_breakout")),
        momentum_building=_build(SubSignal, data.get("momentum_building")),
        squeeze=_build(SubSignal, data.get("squeeze")),
        volume_surge=_build(VolumeSurge, data.get("volume_surge")),
        score=_build(SniperScore, data.get("score")) or SniperScore(),
    )


def _trade_levels_from_dict(data: Optional[Dict[str, Any]]) -> Optional[TradeLevels]:
    if not data:
        return None
    return TradeLevels(
        long=LevelSet(**data["long"]),
        short=LevelSet(**data["short"]),
        atr_pct=data["atr_pct"],
        low_volatility=data["low_volatility"],
    )


# ── Structure engine output ─────────────────────────────────────────────────

@dataclass
class StructureSignal:
    """One detected smart-money structure."""
    type: str                         # LIQUIDITY_GRAB, FVG, ORDER_BLOCK, ...
    direction: str                    # "bullish" | "bearish"
    confidence: float                 # 0-100
    entry_zone: float
    stop_loss: float
    target: Optional[float] = None
    description: str = ""


@dataclass
class KillZone:
    name: str
    hour: int
    is_optimal: bool


@dataclass
class StructureRecommendation:
    action: str = "WAIT"              # SNIPER_LONG | SNIPER_SHORT | WAIT
    direction: Optional[str] = None   # "bullish" | "bearish"
    confidence: float = 0.0
    entry_zone: Optional[float] = None
    stop_loss: Optional[float] = None
    target: Optional[float] = None
    reasons: List[str] = field(default_factory=list)


@dataclass
class SniperSetup:
    has_setup: bool = False
    entries: List[StructureSignal] = field(default_factory=list)
    best_entry: Optional[StructureSignal] = None
    sniper_score: int = 0
    killzone: Optional[KillZone] = None
    recommendation: StructureRecommendation = field(default_factory=StructureRecommendation)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Predictor output ────────────────────────────────────────────────────────

@dataclass
class TradeCandidate:
    """Directional call for one (symbol, interval) at one poll."""
    direction: str                    # "long" | "short" | "neutral"
    signal: str                       # LONG, STRONG_LONG, SNIPER_LONG, ..., HOLD
    confidence: float                 # 0-1
    symbol: Optional[str] = None
    interval: Optional[str] = None
    entry: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: List[float] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    bias: str = "neutral"             # scored lean, kept even when signal is HOLD
    bull_score: float = 0.0
    bear_score: float = 0.0
    risk_reward: Optional[float] = None
    risk_pct: Optional[float] = None
    position_size: Optional[str] = None
    is_sniper: bool = False
    actionable: bool = False
    min_confidence: float = 0.0
    timestamp: Optional[float] = None

    @property
    def action(self) -> str:
        """Q-table action label for this candidate."""
        if self.direction == "long":
            return "LONG"
        if self.direction == "short":
            return "SHORT"
        return "HOLD"

    def validate(self) -> None:
        """Raise InvalidTradeCandidate when a directional call lacks levels."""
        if self.direction not in ("long", "short", "neutral"):
            raise InvalidTradeCandidate(f"Unknown direction: {self.direction}")
        if self.direction == "neutral":
            return
        if self.entry is None or self.stop_loss is None or not self.take_profit:
            raise InvalidTradeCandidate(
                f"{self.signal} {self.symbol} has no entry/stop/target levels"
            )
        if self.direction == "long" and not (self.stop_loss < self.entry < self.take_profit[0]):
            raise InvalidTradeCandidate(f"Long levels out of order for {self.symbol}")
        if self.direction == "short" and not (self.take_profit[0] < self.entry < self.stop_loss):
            raise InvalidTradeCandidate(f"Short levels out of order for {self.symbol}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Completed-trade event ───────────────────────────────────────────────────

TRADE_RESULTS = ("win", "loss", "liquidation", "missed")


@dataclass
class TradeClosedEvent:
    """Realized outcome reported by the outside world."""
    symbol: str
    direction: str                    # "long" | "short"
    pnl_percent: float
    result: str                       # win | loss | liquidation | missed
    entry_indicators: Optional[IndicatorBundle] = None
    exit_indicators: Optional[IndicatorBundle] = None
    hold_time_ms: int = 0
    timestamp: Optional[float] = None
    signal: Optional[str] = None
    leverage: int = 1
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None       # quote-currency P&L, if known
    account_balance: Optional[float] = None

    def __post_init__(self):
        if self.result not in TRADE_RESULTS:
            raise ValueError(f"Unknown trade result: {self.result}")
        if self.direction not in ("long", "short"):
            raise ValueError(f"Unknown trade direction: {self.direction}")

    @property
    def action(self) -> str:
        return "LONG" if self.direction == "long" else "SHORT"


# ── Adaptive thresholds ─────────────────────────────────────────────────────

@dataclass
class AdaptiveThresholds:
    """Predictor thresholds tuned over time by the learning engine."""
    min_confidence: float = 0.65
    sniper_confidence: float = 0.50
    volume_surge_confidence: float = 0.45
    optimal_rsi_buy: float = 30.0
    optimal_rsi_sell: float = 70.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AdaptiveThresholds":
        data = data or {}
        defaults = cls()
        return cls(**{k: float(data.get(k, getattr(defaults, k))) for k in asdict(defaults)})
