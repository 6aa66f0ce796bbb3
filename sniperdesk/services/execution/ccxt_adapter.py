"""
CCXTExchangeAdapter — Real exchange execution via CCXT.
======================================================
Implements the ExchangeAdapter interface to execute real orders
on Binance Futures (USDT-M) through the CCXT library.

Supports:
  • Market orders (open / close)
  • Stop-loss & take-profit conditional orders (stop_market / take_profit_market)
  • Leverage / margin-mode configuration per symbol
  • Testnet toggle via constructor flag

Architecture decisions:
  - CCXT async exchange is used internally; sync bridge via a private event
    loop because poll cycles run in worker threads.
  - Exchange errors are logged and returned as ExecutionResult/CloseResult
    with ``executed=False`` / ``closed=False``.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, List, Optional

import ccxt.async_support as ccxt_async

from sniperdesk.services.analysis.models import TradeCandidate
from sniperdesk.services.execution.exchange_adapter import (
    BalanceInfo,
    CloseResult,
    ExchangeAdapter,
    ExecutionResult,
    PositionInfo,
    close_side,
    order_side,
)

logger = logging.getLogger(__name__)


# ── Symbol mapping (Binance futures symbol → CCXT unified symbol) ───────────

QUOTE_ASSETS = ("USDT", "USDC")


def ccxt_symbol(symbol: str) -> str:
    """``BTCUSDT`` → ``BTC/USDT:USDT``; unified symbols pass through."""
    if "/" in symbol:
        return symbol
    symbol = symbol.upper()
    for quote in QUOTE_ASSETS:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return f"{symbol[:-len(quote)]}/{quote}:{quote}"
    return symbol


def _commission(order: Dict) -> float:
    commission = 0.0
    if order.get("trades"):
        for t in order["trades"]:
            fee = t.get("fee") or {}
            commission += float(fee.get("cost", 0) or 0)
    elif order.get("fee"):
        commission = float(order["fee"].get("cost", 0) or 0)
    return commission


# ── Async-to-sync bridge ────────────────────────────────────────────────────

def _run_sync(coro):
    """Run an async coroutine from a sync context (worker thread).

    Creates a dedicated event loop per call to avoid conflicts with
    the server's running loop in the main thread.
    """
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ── Adapter ─────────────────────────────────────────────────────────────────


class CCXTExchangeAdapter(ExchangeAdapter):
    """Real Binance Futures execution via CCXT.

    Parameters
    ----------
    api_key : str
        Binance API key.
    api_secret : str
        Binance API secret.
    testnet : bool
        If True, connect to the Binance futures demo environment.
    """

    # CCXT's sandbox mode still targets the retired futures testnet host,
    # so the fapi endpoints are pointed at demo-fapi explicitly.
    _DEMO_FAPI_BASE = "https://demo-fapi.binance.com"
    _DEMO_FAPI_URLS = {
        "fapiPublic":    f"{_DEMO_FAPI_BASE}/fapi/v1",
        "fapiPrivate":   f"{_DEMO_FAPI_BASE}/fapi/v1",
        "fapiPublicV2":  f"{_DEMO_FAPI_BASE}/fapi/v2",
        "fapiPrivateV2": f"{_DEMO_FAPI_BASE}/fapi/v2",
        "fapiPublicV3":  f"{_DEMO_FAPI_BASE}/fapi/v3",
        "fapiPrivateV3": f"{_DEMO_FAPI_BASE}/fapi/v3",
    }

    def __init__(self, api_key: str, api_secret: str, *, testnet: bool = True):
        self._api_key = api_key
        self._api_secret = api_secret
        self._testnet = testnet
        # Serializes exchange calls from concurrent poll threads
        self._lock = threading.Lock()
        self._leverage_cache: Dict[str, int] = {}

    # ── Exchange instance (created per-call, closed after) ──────────────

    def _create_exchange(self) -> ccxt_async.binance:
        exchange = ccxt_async.binance({
            "apiKey": self._api_key,
            "secret": self._api_secret,
            "options": {
                "defaultType": "future",
                "adjustForTimeDifference": True,
            },
            "enableRateLimit": True,
        })
        if self._testnet:
            exchange.set_sandbox_mode(True)
            exchange.urls["api"].update(self._DEMO_FAPI_URLS)
        return exchange

    async def _execute(self, coro_factory):
        """Create exchange → run coroutine → close exchange."""
        exchange = self._create_exchange()
        try:
            return await coro_factory(exchange)
        finally:
            await exchange.close()

    # ── Core execution ──────────────────────────────────────────────────

    def execute_trade(self, candidate: TradeCandidate, quantity: float,
                      leverage: int) -> ExecutionResult:
        if not candidate.symbol or candidate.direction not in ("long", "short"):
            return ExecutionResult(executed=False, reason="Candidate is not directional")
        if quantity <= 0:
            return ExecutionResult(executed=False, reason="Quantity must be positive")

        sym = ccxt_symbol(candidate.symbol)
        tp_price = candidate.take_profit[0] if candidate.take_profit else None

        with self._lock:
            try:
                result = _run_sync(self._async_open(
                    sym, candidate.direction, quantity, int(leverage), candidate.stop_loss, tp_price,
                ))
            except Exception as exc:
                logger.error(f"CCXT execute_trade error for {candidate.symbol}: {exc}", exc_info=True)
                return ExecutionResult(executed=False, reason=str(exc))

        self._leverage_cache[sym] = int(leverage)
        logger.info(f"✅ {self.mode.upper()} {candidate.direction.upper()} {candidate.symbol}: "
                    f"{result['filled_qty']} @ {result['fill_price']} ({leverage}x)")
        return ExecutionResult(executed=True, order=result)

    def close_position(self, symbol: str, reason: str = "manual",
                       mark_price: Optional[float] = None) -> CloseResult:
        sym = ccxt_symbol(symbol)
        with self._lock:
            try:
                result = _run_sync(self._async_close(sym))
            except Exception as exc:
                logger.error(f"CCXT close_position error for {symbol}: {exc}", exc_info=True)
                return CloseResult(closed=False, reason=str(exc))

        if result is None:
            return CloseResult(closed=False, reason=f"No open position on {symbol}")
        result["reason"] = reason
        logger.info(f"CCXT closed {symbol} ({reason}) @ {result['fill_price']}")
        return CloseResult(closed=True, result=result)

    # ── Queries ─────────────────────────────────────────────────────────

    def get_balance(self) -> BalanceInfo:
        """Fetch real account balance from Binance Futures."""
        result = _run_sync(self._async_get_balance())
        return BalanceInfo(
            total=result.get("total", 0.0),
            available=result.get("free", 0.0),
            margin_used=result.get("used", 0.0),
            unrealized_pnl=result.get("unrealized_pnl", 0.0),
            assets=result.get("assets", {}),
        )

    def get_positions(self) -> List[PositionInfo]:
        """Fetch real open positions from Binance Futures."""
        positions = []
        for pos_data in _run_sync(self._async_get_positions()):
            positions.append(PositionInfo(
                symbol=pos_data.get("symbol", ""),
                side=(pos_data.get("side") or "").lower(),
                size=abs(float(pos_data.get("contracts", 0) or 0)),
                entry_price=float(pos_data.get("entryPrice", 0) or 0),
                mark_price=float(pos_data.get("markPrice", 0) or 0),
                unrealized_pnl=float(pos_data.get("unrealizedPnl", 0) or 0),
                leverage=int(pos_data.get("leverage", 1) or 1),
                margin=float(pos_data.get("initialMargin", 0) or 0),
            ))
        return positions

    # ── Configuration ───────────────────────────────────────────────────

    def set_leverage(self, symbol: str, leverage: int) -> bool:
        """Set leverage for a symbol; cached to skip redundant calls."""
        sym = ccxt_symbol(symbol)
        if self._leverage_cache.get(sym) == leverage:
            return True

        try:
            _run_sync(self._execute(lambda ex: ex.set_leverage(leverage, sym)))
            self._leverage_cache[sym] = leverage
            return True
        except Exception as exc:
            # Binance errors when leverage is already at this value
            if "No need to change" in str(exc):
                self._leverage_cache[sym] = leverage
                return True
            logger.error(f"CCXT set_leverage error ({sym}, {leverage}x): {exc}")
            return False

    # ── Metadata ────────────────────────────────────────────────────────

    @property
    def mode(self) -> str:
        return "testnet" if self._testnet else "live"

    # ── Private async methods ───────────────────────────────────────────

    async def _async_open(self, sym: str, direction: str, qty: float, leverage: int,
                          sl_price: Optional[float], tp_price: Optional[float]) -> Dict:
        """Open position: set leverage → market order → SL/TP orders."""

        async def _run(exchange):
            try:
                await exchange.set_leverage(leverage, sym)
            except ccxt_async.ExchangeError as e:
                if "No need to change" not in str(e):
                    logger.warning(f"set_leverage warning: {e}")

            try:
                await exchange.set_margin_mode("cross", sym)
            except ccxt_async.ExchangeError as e:
                logger.debug(f"set_margin_mode info: {e}")

            order = await exchange.create_order(
                symbol=sym,
                type="market",
                side=order_side(direction),
                amount=qty,
            )
            fill_price = float(order.get("average", 0) or order.get("price", 0) or 0)
            filled_qty = float(order.get("filled") or qty)

            protective = {}
            for kind, price in (("stop_market", sl_price), ("take_profit_market", tp_price)):
                if price is None:
                    continue
                try:
                    o = await exchange.create_order(
                        symbol=sym,
                        type=kind,
                        side=close_side(direction),
                        amount=filled_qty,
                        price=None,
                        params={"stopPrice": price, "reduceOnly": True},
                    )
                    protective[kind] = o.get("id")
                    logger.info(f"{kind} order placed: {o.get('id')} @ {price}")
                except ccxt_async.BaseError as e:
                    logger.warning(f"Failed to place {kind} order for {sym}: {e}")

            return {
                "id": order.get("id", ""),
                "symbol": sym,
                "side": direction,
                "fill_price": fill_price,
                "filled_qty": filled_qty,
                "commission": _commission(order),
                "leverage": leverage,
                "sl_order_id": protective.get("stop_market"),
                "tp_order_id": protective.get("take_profit_market"),
            }

        return await self._execute(_run)

    async def _async_close(self, sym: str) -> Optional[Dict]:
        """Close position: reduceOnly market order → cancel residual SL/TP."""

        async def _run(exchange):
            positions = await exchange.fetch_positions([sym])
            open_pos = next((p for p in positions if abs(float(p.get("contracts", 0) or 0)) > 0), None)
            if open_pos is None:
                return None

            side = (open_pos.get("side") or "long").lower()
            qty = abs(float(open_pos["contracts"]))
            order = await exchange.create_order(
                symbol=sym,
                type="market",
                side=close_side(side),
                amount=qty,
                params={"reduceOnly": True},
            )
            fill_price = float(order.get("average", 0) or order.get("price", 0) or 0)

            try:
                for oo in await exchange.fetch_open_orders(sym):
                    await exchange.cancel_order(oo["id"], sym)
                    logger.info(f"Cancelled residual order {oo['id']} for {sym}")
            except ccxt_async.BaseError as e:
                logger.warning(f"Residual order cleanup failed for {sym}: {e}")

            entry = float(open_pos.get("entryPrice", 0) or 0)
            pnl = qty * (fill_price - entry) if side == "long" else qty * (entry - fill_price)
            pnl -= _commission(order)
            margin = float(open_pos.get("initialMargin", 0) or 0)
            return {
                "symbol": sym,
                "side": side,
                "entry_price": entry,
                "exit_price": fill_price,
                "fill_price": fill_price,
                "quantity": qty,
                "leverage": int(open_pos.get("leverage", 1) or 1),
                "pnl": pnl,
                "pnl_percent": pnl / margin * 100 if margin > 0 else 0.0,
                "order_id": order.get("id", ""),
            }

        return await self._execute(_run)

    async def _async_get_balance(self) -> Dict:
        """Fetch full futures balance — USDT totals + per-asset breakdown."""

        async def _run(exchange):
            balance = await exchange.fetch_balance({"type": "future"})
            usdt = balance.get("USDT", {})

            unrealized = 0.0
            info = balance.get("info", {})
            assets_detail: Dict[str, Dict[str, float]] = {}

            if isinstance(info, dict):
                for asset in info.get("assets", []):
                    wallet = float(asset.get("walletBalance", 0))
                    available = float(asset.get("availableBalance", 0))
                    upnl = float(asset.get("unrealizedProfit", 0))
                    if wallet != 0 or available != 0:
                        assets_detail[asset.get("asset", "UNKNOWN")] = {
                            "wallet": round(wallet, 4),
                            "available": round(available, 4),
                            "unrealized_pnl": round(upnl, 4),
                        }
                    if asset.get("asset") == "USDT":
                        unrealized = upnl

            return {
                "total": float(usdt.get("total", 0) or 0),
                "free": float(usdt.get("free", 0) or 0),
                "used": float(usdt.get("used", 0) or 0),
                "unrealized_pnl": unrealized,
                "assets": assets_detail,
            }

        return await self._execute(_run)

    async def _async_get_positions(self) -> List[Dict]:
        async def _run(exchange):
            positions = await exchange.fetch_positions()
            return [p for p in positions if abs(float(p.get("contracts", 0) or 0)) > 0]

        return await self._execute(_run)
