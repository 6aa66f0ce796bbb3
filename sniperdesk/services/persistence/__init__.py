from sniperdesk.services.persistence.state_store import (
    LEARNING_STATE_KEY,
    RISK_STATE_KEY,
    DatabaseStateStore,
    JsonFileStateStore,
    StateStore,
)

__all__ = [
    "LEARNING_STATE_KEY",
    "RISK_STATE_KEY",
    "DatabaseStateStore",
    "JsonFileStateStore",
    "StateStore",
]
