"""Adaptive topic-shift threshold (EWMA mean and variance).

The threshold tracks how far apart consecutive observations usually are in
a partition: mean distance plus a multiple of its standard deviation. Both
moments are exponentially weighted so the threshold follows the working
style of the current session instead of a global constant.

Update rule, with alpha the decay factor and d the new distance:

    ewma     = alpha * d + (1 - alpha) * ewma
    diff     = d - ewma                 # against the updated mean
    variance = alpha * diff**2 + (1 - alpha) * variance
    threshold = clamp(ewma + multiplier * sqrt(variance), min, max)

A shift decision always compares the distance against the threshold from
*before* that distance is folded in, otherwise a large jump would raise
its own bar.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from strata.config import TopicDetectionSettings
from strata.constants import (
    DEFAULT_EWMA_ALPHA,
    DEFAULT_EWMA_DISTANCE,
    DEFAULT_EWMA_VARIANCE,
    DEFAULT_SENSITIVITY_MULTIPLIER,
    DEFAULT_THRESHOLD_MAX,
    DEFAULT_THRESHOLD_MIN,
)
from strata.storage.threshold_store import ThresholdStore

logger = logging.getLogger(__name__)

__all__ = ["AdaptiveThresholdEngine", "AdaptiveThresholdManager", "ShiftDecision", "ThresholdState"]


@dataclass(frozen=True)
class ThresholdState:
    """Snapshot of the EWMA state."""

    ewma_distance: float
    ewma_variance: float
    alpha: float
    sensitivity_multiplier: float
    observation_count: int


@dataclass(frozen=True)
class ShiftDecision:
    """Outcome of comparing one distance against the threshold.

    Attributes:
        shifted: Whether the distance exceeded the threshold
        confidence: min((distance - threshold) / threshold, 1.0) when
            shifted, else 0.0
        distance: Cosine distance that was evaluated
        threshold: Threshold it was compared against
        ewma_distance: EWMA mean after the update (None in manual mode)
        ewma_variance: EWMA variance after the update (None in manual mode)
        sensitivity_multiplier: Multiplier in effect
    """

    shifted: bool
    confidence: float
    distance: float
    threshold: float
    ewma_distance: Optional[float] = None
    ewma_variance: Optional[float] = None
    sensitivity_multiplier: float = DEFAULT_SENSITIVITY_MULTIPLIER


def _confidence(distance: float, threshold: float) -> float:
    if threshold <= 0:
        return 1.0
    return min((distance - threshold) / threshold, 1.0)


class AdaptiveThresholdManager:
    """EWMA state and the clamped threshold derived from it.

    Args:
        alpha: Decay factor, 0 < alpha <= 1. Higher reacts faster.
        sensitivity_multiplier: Standard deviations above the mean
        bounds: (min, max) clamp applied to every threshold
    """

    def __init__(
        self,
        alpha: float = DEFAULT_EWMA_ALPHA,
        sensitivity_multiplier: float = DEFAULT_SENSITIVITY_MULTIPLIER,
        bounds: tuple[float, float] = (DEFAULT_THRESHOLD_MIN, DEFAULT_THRESHOLD_MAX),
    ) -> None:
        if not 0 < alpha <= 1:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        if bounds[0] >= bounds[1]:
            raise ValueError(f"Invalid threshold bounds {bounds}")
        self.alpha = alpha
        self.sensitivity_multiplier = sensitivity_multiplier
        self.bounds = bounds
        self.reset()

    def reset(self) -> None:
        """Return to static defaults."""
        self.ewma_distance = DEFAULT_EWMA_DISTANCE
        self.ewma_variance = DEFAULT_EWMA_VARIANCE
        self.observation_count = 0

    def seed_from_history(self, ewma_distance: float, ewma_variance: float) -> None:
        # Negative variance can only come from a corrupted row
        self.ewma_distance = ewma_distance
        self.ewma_variance = max(ewma_variance, 0.0)

    @property
    def threshold(self) -> float:
        lo, hi = self.bounds
        raw = self.ewma_distance + self.sensitivity_multiplier * math.sqrt(self.ewma_variance)
        if math.isnan(raw):
            return lo
        return max(lo, min(hi, raw))

    def update(self, distance: float) -> float:
        """Fold a distance into the EWMA state.

        Returns:
            The new (clamped) threshold.
        """
        self.ewma_distance = self.alpha * distance + (1 - self.alpha) * self.ewma_distance
        diff = distance - self.ewma_distance
        self.ewma_variance = self.alpha * diff * diff + (1 - self.alpha) * self.ewma_variance
        self.observation_count += 1
        return self.threshold

    def state(self) -> ThresholdState:
        return ThresholdState(
            ewma_distance=self.ewma_distance,
            ewma_variance=self.ewma_variance,
            alpha=self.alpha,
            sensitivity_multiplier=self.sensitivity_multiplier,
            observation_count=self.observation_count,
        )


class AdaptiveThresholdEngine:
    """Per-partition shift decisions driven by TopicDetectionSettings.

    Args:
        settings: Sensitivity dial. Disabled detection never shifts and
            never touches the EWMA state; a manual threshold replaces the
            adaptive one and likewise leaves the state alone.
        store: Checkpoint persistence. Without one, seed() and
            checkpoint() are no-ops.
    """

    def __init__(
        self,
        settings: Optional[TopicDetectionSettings] = None,
        store: Optional[ThresholdStore] = None,
    ) -> None:
        self.settings = settings or TopicDetectionSettings()
        self.store = store
        self.manager = AdaptiveThresholdManager(
            alpha=self.settings.ewma_alpha,
            sensitivity_multiplier=self.settings.multiplier,
            bounds=self.settings.bounds,
        )

    @property
    def threshold(self) -> float:
        if self.settings.manual_threshold is not None:
            return self.settings.manual_threshold
        return self.manager.threshold

    def seed(self, project_hash: str) -> Optional[tuple[float, float]]:
        """Start a session from the partition's recent checkpoints.

        Returns:
            The (distance, variance) seed used, or None when there is no
            history and static defaults apply.
        """
        self.manager.reset()
        if self.store is None:
            return None
        seed = self.store.load_historical_seed(project_hash)
        if seed is None:
            logger.debug(f"No threshold history for {project_hash}, using defaults")
            return None
        self.manager.seed_from_history(*seed)
        logger.debug(f"Seeded threshold for {project_hash}: {seed}")
        return seed

    def observe(self, distance: float) -> ShiftDecision:
        """Decide whether a distance is a topic shift, then learn from it."""
        multiplier = self.manager.sensitivity_multiplier

        # A non-finite distance would poison the EWMA state for good
        if not self.settings.enabled or not math.isfinite(distance):
            return ShiftDecision(
                shifted=False,
                confidence=0.0,
                distance=distance,
                threshold=self.manager.threshold,
                sensitivity_multiplier=multiplier,
            )

        manual = self.settings.manual_threshold
        if manual is not None:
            shifted = distance > manual
            return ShiftDecision(
                shifted=shifted,
                confidence=_confidence(distance, manual) if shifted else 0.0,
                distance=distance,
                threshold=manual,
                sensitivity_multiplier=multiplier,
            )

        threshold = self.manager.threshold
        shifted = distance > threshold
        self.manager.update(distance)
        return ShiftDecision(
            shifted=shifted,
            confidence=_confidence(distance, threshold) if shifted else 0.0,
            distance=distance,
            threshold=threshold,
            ewma_distance=self.manager.ewma_distance,
            ewma_variance=self.manager.ewma_variance,
            sensitivity_multiplier=multiplier,
        )

    def checkpoint(self, project_hash: str, session_id: Optional[str]) -> bool:
        """Persist the final state at session end.

        Sessions that saw no distances are not checkpointed; they would
        only pull the next seed toward the static defaults.
        """
        state = self.manager.state()
        if self.store is None or state.observation_count == 0:
            return False
        self.store.save_session_threshold(
            project_hash,
            session_id,
            state.ewma_distance,
            state.ewma_variance,
            state.observation_count,
        )
        return True
