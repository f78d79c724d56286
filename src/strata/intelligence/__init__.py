"""Topic shift detection for Strata.

- AdaptiveThresholdManager: EWMA mean/variance and the clamped threshold
- AdaptiveThresholdEngine: shift decisions, seeding and checkpointing
- TopicShiftDetector: distances between consecutive observation vectors
- DecisionLogger: persisted record of every decision
"""

from strata.intelligence.adaptive_threshold import (
    AdaptiveThresholdEngine,
    AdaptiveThresholdManager,
    ShiftDecision,
    ThresholdState,
)
from strata.intelligence.decision_logger import DecisionLogger
from strata.intelligence.topic_detector import TopicShiftDetector, cosine_distance

__all__ = [
    "AdaptiveThresholdEngine",
    "AdaptiveThresholdManager",
    "DecisionLogger",
    "ShiftDecision",
    "ThresholdState",
    "TopicShiftDetector",
    "cosine_distance",
]
