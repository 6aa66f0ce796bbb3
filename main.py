"""
Main FastAPI application
"""
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from fastapi import FastAPI, Depends, HTTPException
from sqlalchemy.orm import sessionmaker
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime
import logging
import asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import BaseModel, Field

from sniperdesk.config import Settings, load_settings
from sniperdesk.database import init_db, make_engine
from sniperdesk.services.analysis.confirmation import SniperConfirmationTracker
from sniperdesk.services.analysis.models import IndicatorBundle, TradeClosedEvent
from sniperdesk.services.analysis.predictor import ConsensusPredictor
from sniperdesk.services.execution import ExchangeAdapter, build_exchange_adapter
from sniperdesk.services.learning import LearningConfig, LearningEngine
from sniperdesk.services.market_data import BinanceFuturesCandleSource
from sniperdesk.services.persistence import DatabaseStateStore, JsonFileStateStore, StateStore
from sniperdesk.services.risk import RiskConfig, RiskManager
from sniperdesk.services.signal_service import SignalService

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# ── Service container ───────────────────────────────────────────────────

@dataclass
class Services:
    settings: Settings
    learning: LearningEngine
    risk: RiskManager
    adapter: ExchangeAdapter
    confirmation: Optional[SniperConfirmationTracker]
    signals: SignalService


def _build_state_store(settings: Settings) -> StateStore:
    if settings.state_backend == "database":
        engine = make_engine(settings.database_url)
        init_db(engine)
        logger.info(f"State backend: database ({settings.database_url})")
        return DatabaseStateStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    logger.info(f"State backend: JSON files in {settings.data_dir}")
    return JsonFileStateStore(settings.data_dir)


def build_services(settings: Settings) -> Services:
    store = _build_state_store(settings)

    learning = LearningEngine(store=store, config=LearningConfig(
        save_every=settings.learning_save_every,
        exploration_rate=settings.learning_exploration_rate,
    ))
    risk = RiskManager(RiskConfig(
        max_risk_per_trade=settings.risk_max_per_trade,
        max_daily_loss=settings.risk_max_daily_loss,
        max_drawdown=settings.risk_max_drawdown,
        initial_equity=settings.account_balance,
    ), store=store)

    adapter = build_exchange_adapter(
        settings.execution_mode, settings.binance_api_key, settings.binance_api_secret,
        initial_balance=settings.account_balance,
    )
    confirmation = SniperConfirmationTracker() if settings.confirmation_enabled else None

    signals = SignalService(
        source=BinanceFuturesCandleSource(),
        predictor=ConsensusPredictor(thresholds_provider=learning.get_thresholds),
        learning=learning,
        risk=risk,
        adapter=adapter,
        confirmation=confirmation,
        trading_enabled=settings.trading_enabled,
        candle_limit=settings.candle_limit,
    )
    return Services(settings, learning, risk, adapter, confirmation, signals)


_services: Optional[Services] = None


def get_services() -> Services:
    if _services is None:
        raise HTTPException(status_code=503, detail="Services are not started")
    return _services


# Scheduler for background tasks
scheduler = AsyncIOScheduler()


# ── Background jobs ─────────────────────────────────────────────────────

async def run_poll_cycle(symbol: str, interval: str):
    """One poll cycle; blocking fetch + analysis run in a worker thread."""
    services = _services
    if services is None:
        return
    try:
        await asyncio.to_thread(services.signals.poll_symbol, symbol, interval)
    except Exception as e:
        logger.exception(f"Error in poll cycle {symbol} {interval}: {e}")


async def run_housekeeping():
    """Expire stale sniper waits and checkpoint learned state."""
    services = _services
    if services is None:
        return
    if services.confirmation is not None:
        expired = services.confirmation.cleanup_expired()
        if expired:
            logger.info(f"Dropped {expired} expired sniper confirmation(s)")
    await asyncio.to_thread(services.learning.save)


# ── Lifespan ────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup → yield → shutdown."""
    global _services

    settings = load_settings()
    logger.info("Starting SniperDesk...")
    _services = build_services(settings)

    for symbol in settings.symbols:
        for interval in settings.intervals:
            scheduler.add_job(
                run_poll_cycle, 'interval', seconds=settings.poll_seconds,
                args=[symbol, interval], id=f"poll_{symbol}_{interval}",
                max_instances=2, coalesce=True, next_run_time=datetime.now(),
            )
    scheduler.add_job(run_housekeeping, 'interval', minutes=5, id='housekeeping')
    scheduler.start()

    logger.info(
        f"Application started — {len(settings.symbols)} symbols x {len(settings.intervals)} intervals "
        f"every {settings.poll_seconds}s | trading {'ON' if settings.trading_enabled else 'OFF'} "
        f"({_services.adapter.mode})"
    )

    yield

    logger.info("Shutting down...")
    scheduler.shutdown(wait=False)
    _services.learning.save()
    _services.risk.save()
    _services = None


app = FastAPI(title="SniperDesk - Futures Signal Desk", version="1.0.0", lifespan=lifespan)


# ── Pydantic models for API ─────────────────────────────────────────────

class TradeClosedRequest(BaseModel):
    symbol: str
    direction: Literal["long", "short"]
    pnl_percent: float
    result: Literal["win", "loss", "liquidation", "missed"]
    entry_indicators: Optional[Dict[str, Any]] = None
    exit_indicators: Optional[Dict[str, Any]] = None
    hold_time_ms: int = Field(default=0, ge=0)
    timestamp: Optional[float] = None
    signal: Optional[str] = None
    leverage: int = Field(default=1, ge=1)
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    account_balance: Optional[float] = None

    def to_event(self) -> TradeClosedEvent:
        return TradeClosedEvent(
            symbol=self.symbol.upper(),
            direction=self.direction,
            pnl_percent=self.pnl_percent,
            result=self.result,
            entry_indicators=IndicatorBundle.from_dict(self.entry_indicators) if self.entry_indicators else None,
            exit_indicators=IndicatorBundle.from_dict(self.exit_indicators) if self.exit_indicators else None,
            hold_time_ms=self.hold_time_ms,
            timestamp=self.timestamp,
            signal=self.signal,
            leverage=self.leverage,
            entry_price=self.entry_price,
            exit_price=self.exit_price,
            pnl=self.pnl,
            account_balance=self.account_balance,
        )


class RiskMultiplierRequest(BaseModel):
    value: float = Field(gt=0)


class RiskResetRequest(BaseModel):
    scope: Literal["daily", "weekly", "all"] = "daily"


class ClosePositionRequest(BaseModel):
    reason: str = "manual"


# ── API Endpoints ───────────────────────────────────────────────────────

@app.get("/api/health")
def health_check(services: Services = Depends(get_services)):
    """Check API and service health"""
    return {
        "status": "ok",
        "execution_mode": services.adapter.mode,
        "trading_enabled": services.signals.trading_enabled,
        "symbols": services.settings.symbols,
        "intervals": services.settings.intervals,
        "tracked_signals": len(services.signals.latest_signals()),
        "open_positions": len(services.signals.open_positions()),
        "timestamp": datetime.utcnow().isoformat()
    }


@app.get("/api/signals")
def list_signals(actionable_only: bool = False, services: Services = Depends(get_services)):
    signals = services.signals.latest_signals()
    if actionable_only:
        signals = [s for s in signals if s["actionable"]]
    return {"signals": signals, "count": len(signals)}


@app.get("/api/signals/{symbol}")
def get_symbol_signals(symbol: str, services: Services = Depends(get_services)):
    snapshots = services.signals.latest_signal(symbol)
    if not snapshots:
        raise HTTPException(status_code=404, detail=f"No signal yet for {symbol.upper()}")
    return {
        "symbol": symbol.upper(),
        "snapshots": [s.to_dict() for s in snapshots],
        "symbol_stats": services.learning.get_symbol_recommendation(symbol.upper()),
    }


@app.post("/api/poll/{symbol}")
def poll_symbol(symbol: str, interval: str = "15m", services: Services = Depends(get_services)):
    """Run one cycle on demand (blocking, threadpool)."""
    try:
        snapshot = services.signals.poll_symbol(symbol, interval)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if snapshot is None:
        raise HTTPException(status_code=503, detail=f"No data for {symbol.upper()} {interval}")
    return snapshot.to_dict()


@app.get("/api/positions")
def list_positions(services: Services = Depends(get_services)):
    return {"positions": services.signals.open_positions(), "mode": services.adapter.mode}


@app.post("/api/positions/{symbol}/close")
def close_position(symbol: str, req: Optional[ClosePositionRequest] = None,
                   services: Services = Depends(get_services)):
    outcome = services.signals.close_position(symbol, reason=req.reason if req else "manual")
    if not outcome["closed"]:
        raise HTTPException(status_code=404, detail=outcome["reason"])
    return outcome


@app.get("/api/risk")
def risk_status(services: Services = Depends(get_services)):
    return services.risk.get_risk_status()


@app.get("/api/risk/var")
def risk_var(portfolio_value: Optional[float] = None, confidence: float = 0.95,
             services: Services = Depends(get_services)):
    if not 0.5 <= confidence < 1:
        raise HTTPException(status_code=400, detail="confidence must be in [0.5, 1)")
    value = portfolio_value if portfolio_value is not None else services.risk.state.current_equity
    return asdict(services.risk.calculate_var(value, confidence))


@app.post("/api/risk/multiplier")
def set_risk_multiplier(req: RiskMultiplierRequest, services: Services = Depends(get_services)):
    return {"risk_multiplier": services.risk.set_risk_multiplier(req.value)}


@app.post("/api/risk/reset")
def reset_risk_limits(req: RiskResetRequest, services: Services = Depends(get_services)):
    return services.risk.reset_limits(req.scope)


@app.get("/api/learning/insights")
def learning_insights(services: Services = Depends(get_services)):
    return services.learning.get_learning_insights()


@app.get("/api/learning/thresholds")
def learning_thresholds(services: Services = Depends(get_services)):
    return services.learning.get_thresholds().to_dict()


@app.get("/api/learning/entry-conditions")
def learning_entry_conditions(services: Services = Depends(get_services)):
    return services.learning.get_best_entry_conditions()


@app.get("/api/confirmations")
def pending_confirmations(services: Services = Depends(get_services)):
    if services.confirmation is None:
        return {"enabled": False, "pending": []}
    return {"enabled": True, "pending": services.confirmation.pending()}


@app.post("/api/trades/closed")
def trade_closed(req: TradeClosedRequest, services: Services = Depends(get_services)):
    try:
        event = req.to_event()
    except (ValueError, KeyError, TypeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid trade event: {e}")
    return services.signals.handle_trade_closed(event)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
