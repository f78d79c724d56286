"""Append-only log of topic shift decisions, shifted or not.

Every input that went into a decision is recorded so threshold behaviour
can be tuned after the fact.
"""

import logging
import sqlite3
from typing import Any, Optional

from strata.intelligence.adaptive_threshold import ShiftDecision

logger = logging.getLogger(__name__)


class DecisionLogger:
    """Write and read shift_decisions rows."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def log(
        self,
        decision: ShiftDecision,
        project_id: str,
        session_id: Optional[str] = None,
        observation_id: Optional[str] = None,
    ) -> None:
        """Record a decision. Failures are logged, never raised."""
        try:
            self._conn.execute(
                """
                INSERT INTO shift_decisions (
                    project_id, session_id, observation_id, distance, threshold,
                    ewma_distance, ewma_variance, sensitivity_multiplier, shifted, confidence
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id,
                    session_id,
                    observation_id,
                    decision.distance,
                    decision.threshold,
                    decision.ewma_distance,
                    decision.ewma_variance,
                    decision.sensitivity_multiplier,
                    1 if decision.shifted else 0,
                    decision.confidence,
                ),
            )
        except sqlite3.Error as e:
            logger.warning(f"Failed to log shift decision: {e}")

    def recent(
        self, project_id: str, session_id: Optional[str] = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        """Latest decisions for a partition, optionally one session, newest first."""
        sql = "SELECT * FROM shift_decisions WHERE project_id = ?"
        params: list[Any] = [project_id]
        if session_id is not None:
            sql += " AND session_id = ?"
            params.append(session_id)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [{**dict(row), "shifted": bool(row["shifted"])} for row in rows]

    def shift_rate(self, project_id: str, window: int = 100) -> float:
        """Fraction of the last `window` decisions that were shifts."""
        row = self._conn.execute(
            """
            SELECT COUNT(*) AS total, COALESCE(SUM(shifted), 0) AS shifted_count
            FROM (
                SELECT shifted FROM shift_decisions
                WHERE project_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
            )
            """,
            (project_id, window),
        ).fetchone()
        if not row["total"]:
            return 0.0
        return row["shifted_count"] / row["total"]
