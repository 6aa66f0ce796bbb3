"""
ExchangeAdapter — Abstract interface for trade execution.
=========================================================
Strategy Pattern: SignalService hands an actionable, risk-sized
TradeCandidate to an adapter.  Concrete implementations:

  • PaperExchangeAdapter  — in-memory simulation
  • CCXTExchangeAdapter   — real orders on Binance Futures via CCXT

The service computes direction, levels and size;
the adapter only *executes* the order and reports what happened.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sniperdesk.services.analysis.models import TradeCandidate


# ── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ExecutionResult:
    """Outcome of execute_trade."""
    executed: bool
    order: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None


@dataclass
class CloseResult:
    """Outcome of close_position; ``result`` carries fill and P&L when closed."""
    closed: bool
    result: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None


@dataclass
class PositionInfo:
    """Exchange-agnostic representation of an open position."""
    symbol: str
    side: str                       # "long" | "short"
    size: float
    entry_price: float
    mark_price: float
    unrealized_pnl: float
    leverage: int
    margin: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None


@dataclass
class BalanceInfo:
    """Exchange-agnostic account balance snapshot."""
    total: float
    available: float
    margin_used: float
    unrealized_pnl: float
    # Per-asset breakdown: {"USDT": {"wallet": ..., "available": ...}, ...}
    assets: Dict[str, Dict[str, float]] = field(default_factory=dict)


def order_side(direction: str) -> str:
    return "buy" if direction == "long" else "sell"


def close_side(direction: str) -> str:
    return "sell" if direction == "long" else "buy"


def position_pnl(direction: str, quantity: float, entry: float, exit_price: float) -> float:
    if direction == "long":
        return quantity * (exit_price - entry)
    return quantity * (entry - exit_price)


# ── Abstract Base Class ─────────────────────────────────────────────────────


class ExchangeAdapter(ABC):
    """Interface every execution adapter must implement.

    All methods are **synchronous**: poll cycles run in worker threads
    (``asyncio.to_thread``).  The CCXT adapter bridges to async
    internally.
    """

    # ── Core execution ──────────────────────────────────────────────────

    @abstractmethod
    def execute_trade(self, candidate: TradeCandidate, quantity: float,
                      leverage: int) -> ExecutionResult:
        """Open a position for ``candidate`` (market entry + SL/TP)."""
        ...

    @abstractmethod
    def close_position(self, symbol: str, reason: str = "manual",
                       mark_price: Optional[float] = None) -> CloseResult:
        """Close the open position on ``symbol``."""
        ...

    # ── Queries ─────────────────────────────────────────────────────────

    @abstractmethod
    def get_balance(self) -> BalanceInfo:
        ...

    @abstractmethod
    def get_positions(self) -> List[PositionInfo]:
        ...

    # ── Configuration ───────────────────────────────────────────────────

    @abstractmethod
    def set_leverage(self, symbol: str, leverage: int) -> bool:
        """Configure leverage for a symbol (no-op in paper)."""
        ...

    # ── Metadata ────────────────────────────────────────────────────────

    @property
    @abstractmethod
    def mode(self) -> str:
        """Return ``'paper'``, ``'testnet'``, or ``'live'``."""
        ...
