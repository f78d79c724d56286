"""Topic shift detection over consecutive observation vectors."""

import logging
from collections.abc import Sequence
from typing import Optional

import numpy as np

from strata.intelligence.adaptive_threshold import AdaptiveThresholdEngine, ShiftDecision

logger = logging.getLogger(__name__)


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """1 - cosine similarity, in [0, 2].

    A zero vector on either side gives 0.0 rather than NaN.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    magnitude = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if magnitude == 0.0:
        return 0.0
    similarity = float(np.dot(va, vb)) / magnitude
    # Clamp floating-point overshoot
    return 1.0 - max(-1.0, min(1.0, similarity))


class TopicShiftDetector:
    """Feeds distances between consecutive vectors of one partition to an engine.

    Args:
        engine: Threshold engine for the same partition
    """

    def __init__(self, engine: AdaptiveThresholdEngine):
        self.engine = engine
        self._last: Optional[np.ndarray] = None

    def observe(self, embedding: Sequence[float]) -> Optional[ShiftDecision]:
        """Compare an embedding with the previous one.

        Returns:
            The decision, or None for the first embedding (nothing to
            compare against, so it is never a shift).
        """
        current = np.asarray(embedding, dtype=np.float64)
        previous = self._last
        self._last = current
        if previous is None:
            return None
        return self.engine.observe(cosine_distance(previous, current))

    def reset(self) -> None:
        self._last = None
