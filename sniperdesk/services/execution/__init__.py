"""Execution Package — exchange adapters for actionable trade candidates."""
from __future__ import annotations

__all__ = [
    "ExchangeAdapter", "PaperExchangeAdapter", "CCXTExchangeAdapter",
    "ExecutionResult", "CloseResult", "PositionInfo", "BalanceInfo",
    "build_exchange_adapter",
]

import logging

from sniperdesk.services.execution.exchange_adapter import (
    ExchangeAdapter,
    ExecutionResult,
    CloseResult,
    PositionInfo,
    BalanceInfo,
)
from sniperdesk.services.execution.paper_adapter import PaperExchangeAdapter
from sniperdesk.services.execution.ccxt_adapter import CCXTExchangeAdapter

logger = logging.getLogger(__name__)


def build_exchange_adapter(mode: str, api_key: str = "", api_secret: str = "",
                           initial_balance: float = 10000.0) -> ExchangeAdapter:
    """Adapter for EXECUTION_MODE: 'paper' (default) | 'testnet' | 'live'.

    testnet/live require API credentials and fall back to paper without them.
    """
    mode = (mode or "paper").lower().strip()

    if mode == "paper":
        logger.info("Execution mode: PAPER (simulated)")
        return PaperExchangeAdapter(initial_balance)

    if not api_key or not api_secret:
        logger.warning(
            f"EXECUTION_MODE={mode} but BINANCE_API_KEY/SECRET not set — "
            f"falling back to paper mode"
        )
        return PaperExchangeAdapter(initial_balance)

    if mode == "testnet":
        logger.info("Execution mode: TESTNET (Binance Futures demo)")
        return CCXTExchangeAdapter(api_key, api_secret, testnet=True)

    if mode == "live":
        logger.info("⚠️  Execution mode: LIVE — REAL MONEY ⚠️")
        return CCXTExchangeAdapter(api_key, api_secret, testnet=False)

    logger.warning(f"Unknown EXECUTION_MODE '{mode}' — falling back to paper")
    return PaperExchangeAdapter(initial_balance)
