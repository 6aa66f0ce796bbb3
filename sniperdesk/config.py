"""
Runtime settings read from the environment (.env supported)
"""
import os
import logging
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

EXECUTION_MODES = ("paper", "testnet", "live")
STATE_BACKENDS = ("json", "database")


def _csv(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using {default}")
        return default


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using {default}")
        return default


@dataclass
class Settings:
    symbols: List[str] = field(default_factory=lambda: ["BTCUSDT", "ETHUSDT"])
    intervals: List[str] = field(default_factory=lambda: ["15m", "1h"])
    poll_seconds: int = 60
    candle_limit: int = 200

    trading_enabled: bool = False
    execution_mode: str = "paper"
    binance_api_key: str = ""
    binance_api_secret: str = ""
    account_balance: float = 10000.0

    state_backend: str = "json"
    data_dir: str = "./data"
    database_url: str = "sqlite:///./sniperdesk.db"

    risk_max_per_trade: float = 2.0
    risk_max_daily_loss: float = 5.0
    risk_max_drawdown: float = 15.0

    learning_save_every: int = 10
    learning_exploration_rate: float = 0.1

    confirmation_enabled: bool = True


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    mode = os.getenv("EXECUTION_MODE", "paper").lower().strip()
    if mode not in EXECUTION_MODES:
        logger.warning(f"Unknown EXECUTION_MODE '{mode}' — falling back to paper")
        mode = "paper"

    backend = os.getenv("STATE_BACKEND", "json").lower().strip()
    if backend not in STATE_BACKENDS:
        logger.warning(f"Unknown STATE_BACKEND '{backend}' — using json files")
        backend = "json"

    return Settings(
        symbols=[s.upper() for s in _csv("SYMBOLS", "BTCUSDT,ETHUSDT")],
        intervals=_csv("INTERVALS", "15m,1h"),
        poll_seconds=max(5, _int("POLL_SECONDS", 60)),
        candle_limit=max(50, _int("CANDLE_LIMIT", 200)),
        trading_enabled=_bool("TRADING_ENABLED", False),
        execution_mode=mode,
        binance_api_key=os.getenv("BINANCE_API_KEY", ""),
        binance_api_secret=os.getenv("BINANCE_API_SECRET", ""),
        account_balance=_float("ACCOUNT_BALANCE", 10000.0),
        state_backend=backend,
        data_dir=os.getenv("DATA_DIR", "./data"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./sniperdesk.db"),
        risk_max_per_trade=_float("RISK_MAX_PER_TRADE", 2.0),
        risk_max_daily_loss=_float("RISK_MAX_DAILY_LOSS", 5.0),
        risk_max_drawdown=_float("RISK_MAX_DRAWDOWN", 15.0),
        learning_save_every=max(1, _int("LEARNING_SAVE_EVERY", 10)),
        learning_exploration_rate=min(1.0, max(0.0, _float("LEARNING_EXPLORATION_RATE", 0.1))),
        confirmation_enabled=_bool("CONFIRMATION_ENABLED", True),
    )
