"""Persistence for adaptive threshold state across sessions.

At session end the final EWMA distance and variance are appended to
threshold_history. A new session seeds itself from the average of the
partition's most recent checkpoints so it starts calibrated instead of
from static defaults.
"""

import logging
import sqlite3
from typing import Optional

from strata.constants import SEED_HISTORY_SESSIONS

logger = logging.getLogger(__name__)


class ThresholdStore:
    """Read and write threshold_history rows."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def save_session_threshold(
        self,
        project_id: str,
        session_id: Optional[str],
        ewma_distance: float,
        ewma_variance: float,
        observation_count: int,
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO threshold_history (
                project_id, session_id, final_ewma_distance,
                final_ewma_variance, observation_count
            )
            VALUES (?, ?, ?, ?, ?)
            """,
            (project_id, session_id, ewma_distance, ewma_variance, observation_count),
        )
        logger.debug(
            f"Saved threshold checkpoint for {project_id}: "
            f"ewma={ewma_distance:.4f} var={ewma_variance:.5f} n={observation_count}"
        )

    def load_historical_seed(
        self, project_id: str, sessions: int = SEED_HISTORY_SESSIONS
    ) -> Optional[tuple[float, float]]:
        """Average the partition's most recent checkpoints.

        Args:
            project_id: Partition key
            sessions: How many recent checkpoints to average

        Returns:
            (ewma_distance, ewma_variance), or None with no history.
        """
        row = self._conn.execute(
            """
            SELECT AVG(final_ewma_distance) AS avg_distance,
                   AVG(final_ewma_variance) AS avg_variance
            FROM (
                SELECT final_ewma_distance, final_ewma_variance
                FROM threshold_history
                WHERE project_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
            )
            """,
            (project_id, sessions),
        ).fetchone()
        if row is None or row["avg_distance"] is None:
            return None
        return float(row["avg_distance"]), float(row["avg_variance"])
