from sniperdesk.services.learning.state import (
    ACTIONS,
    LEARNING_SCHEMA_VERSION,
    REGIMES,
    LearningConfig,
    LearningState,
    RewardConfig,
    migrate_learning_state,
)
from sniperdesk.services.learning.failure_patterns import (
    FAILURE_PATTERNS,
    FailureContext,
    FailureRisk,
    assess_pre_trade,
    detect_failures,
)
from sniperdesk.services.learning.entry_conditions import EntryQuality, extract_entry_conditions
from sniperdesk.services.learning.learning_engine import (
    DangerCheck,
    LearnedRecommendation,
    LearningEngine,
    LearningResult,
)

__all__ = [
    "ACTIONS",
    "LEARNING_SCHEMA_VERSION",
    "REGIMES",
    "LearningConfig",
    "LearningState",
    "RewardConfig",
    "migrate_learning_state",
    "FAILURE_PATTERNS",
    "FailureContext",
    "FailureRisk",
    "assess_pre_trade",
    "detect_failures",
    "EntryQuality",
    "extract_entry_conditions",
    "DangerCheck",
    "LearnedRecommendation",
    "LearningEngine",
    "LearningResult",
]
