"""
PaperExchangeAdapter — Simulated execution in memory.
=====================================================
Fills market orders at the candidate's entry price, reserves margin from
a virtual balance and releases ``margin + pnl`` on close.  Nothing is
sent anywhere.
"""
from __future__ import annotations

import itertools
import logging
import threading
from typing import Dict, List, Optional

from sniperdesk.services.analysis.models import TradeCandidate
from sniperdesk.services.execution.exchange_adapter import (
    BalanceInfo,
    CloseResult,
    ExchangeAdapter,
    ExecutionResult,
    PositionInfo,
    position_pnl,
)

logger = logging.getLogger(__name__)


class PaperExchangeAdapter(ExchangeAdapter):
    """Paper trading — no real exchange interaction."""

    def __init__(self, initial_balance: float = 10000.0):
        self._balance = float(initial_balance)
        self._positions: Dict[str, PositionInfo] = {}
        self._order_ids = itertools.count(1)
        self._lock = threading.Lock()

    # ── Open ────────────────────────────────────────────────────────────

    def execute_trade(self, candidate: TradeCandidate, quantity: float,
                      leverage: int) -> ExecutionResult:
        symbol = candidate.symbol
        if not symbol or candidate.direction not in ("long", "short"):
            return ExecutionResult(executed=False, reason="Candidate is not directional")
        if candidate.entry is None or quantity <= 0:
            return ExecutionResult(executed=False, reason="Missing entry price or quantity")

        leverage = max(1, int(leverage))
        position_value = quantity * candidate.entry
        margin = position_value / leverage

        with self._lock:
            if symbol in self._positions:
                return ExecutionResult(executed=False, reason=f"Position already open on {symbol}")
            if margin > self._balance:
                return ExecutionResult(
                    executed=False,
                    reason=f"Insufficient paper balance ({self._balance:.2f} < margin {margin:.2f})",
                )

            self._balance -= margin
            self._positions[symbol] = PositionInfo(
                symbol=symbol,
                side=candidate.direction,
                size=quantity,
                entry_price=candidate.entry,
                mark_price=candidate.entry,
                unrealized_pnl=0.0,
                leverage=leverage,
                margin=margin,
                stop_loss=candidate.stop_loss,
                take_profit=candidate.take_profit[0] if candidate.take_profit else None,
            )
            order_id = f"paper-{next(self._order_ids)}"

        logger.info(f"📝 Paper {candidate.direction.upper()} {symbol}: {quantity:.6f} @ {candidate.entry} "
                    f"({leverage}x, margin {margin:.2f})")
        return ExecutionResult(
            executed=True,
            order={
                "id": order_id,
                "symbol": symbol,
                "side": candidate.direction,
                "quantity": quantity,
                "fill_price": candidate.entry,
                "leverage": leverage,
                "margin": margin,
                "stop_loss": candidate.stop_loss,
                "take_profit": list(candidate.take_profit),
            },
        )

    # ── Close ───────────────────────────────────────────────────────────

    def close_position(self, symbol: str, reason: str = "manual",
                       mark_price: Optional[float] = None) -> CloseResult:
        with self._lock:
            pos = self._positions.pop(symbol, None)
            if pos is None:
                return CloseResult(closed=False, reason=f"No open position on {symbol}")

            exit_price = mark_price if mark_price is not None else pos.mark_price
            pnl = position_pnl(pos.side, pos.size, pos.entry_price, exit_price)
            cash_return = max(pos.margin + pnl, 0)
            self._balance += cash_return

        pnl_percent = pnl / pos.margin * 100 if pos.margin > 0 else 0.0
        logger.info(f"📝 Paper close {symbol} ({reason}): pnl {pnl:+.2f} ({pnl_percent:+.2f}%)")
        return CloseResult(
            closed=True,
            result={
                "symbol": symbol,
                "side": pos.side,
                "entry_price": pos.entry_price,
                "exit_price": exit_price,
                "quantity": pos.size,
                "leverage": pos.leverage,
                "pnl": pnl,
                "pnl_percent": pnl_percent,
                "cash_returned": cash_return,
                "reason": reason,
            },
        )

    # ── Queries ─────────────────────────────────────────────────────────

    def get_balance(self) -> BalanceInfo:
        with self._lock:
            margin_used = sum(p.margin for p in self._positions.values())
            return BalanceInfo(
                total=self._balance + margin_used,
                available=self._balance,
                margin_used=margin_used,
                unrealized_pnl=0.0,  # would need live prices to compute
            )

    def get_positions(self) -> List[PositionInfo]:
        with self._lock:
            return list(self._positions.values())

    # ── Config ──────────────────────────────────────────────────────────

    def set_leverage(self, symbol: str, leverage: int) -> bool:
        return True  # no-op in paper mode

    # ── Metadata ────────────────────────────────────────────────────────

    @property
    def mode(self) -> str:
        return "paper"
