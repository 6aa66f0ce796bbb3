from sniperdesk.services.risk.risk_manager import (
    RISK_SCHEMA_VERSION,
    CorrelationCheck,
    PositionRequest,
    PositionSize,
    RiskConfig,
    RiskManager,
    RiskState,
    TradeRecord,
    TradingGate,
    VarResult,
    migrate_risk_state,
)

__all__ = [
    "RISK_SCHEMA_VERSION",
    "CorrelationCheck",
    "PositionRequest",
    "PositionSize",
    "RiskConfig",
    "RiskManager",
    "RiskState",
    "TradeRecord",
    "TradingGate",
    "VarResult",
    "migrate_risk_state",
]
