"""
Analysis Package — indicator bundle, structure setups and the consensus call.

    from sniperdesk.services.analysis import calculate_indicators, ConsensusPredictor
"""
from sniperdesk.services.analysis.models import (
    AdaptiveThresholds,
    Candle,
    IndicatorBundle,
    SniperSetup,
    TradeCandidate,
    TradeClosedEvent,
)
from sniperdesk.services.analysis.params import IndicatorParams, PredictorParams, StructureParams
from sniperdesk.services.analysis.indicators import Indicators
from sniperdesk.services.analysis.engine import calculate_indicators
from sniperdesk.services.analysis.structure import analyze_sniper_setup, detect_killzone
from sniperdesk.services.analysis.predictor import ConsensusPredictor, filter_high_probability
from sniperdesk.services.analysis.confirmation import SniperConfirmationTracker

__all__ = [
    "AdaptiveThresholds",
    "Candle",
    "IndicatorBundle",
    "SniperSetup",
    "TradeCandidate",
    "TradeClosedEvent",
    "IndicatorParams",
    "PredictorParams",
    "StructureParams",
    "Indicators",
    "calculate_indicators",
    "analyze_sniper_setup",
    "detect_killzone",
    "ConsensusPredictor",
    "filter_high_probability",
    "SniperConfirmationTracker",
]
