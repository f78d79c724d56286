"""Vector index over observations (sqlite-vec, cosine distance).

All methods degrade instead of raising: a missing extension, a missing
table or a query error is logged at DEBUG and the caller gets an empty
result, so keyword search keeps working on its own.
"""

import logging
import sqlite3
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np

from strata.constants import EMBEDDING_DIM

if TYPE_CHECKING:
    from strata.storage.database import Database

logger = logging.getLogger(__name__)

__all__ = ["EmbeddingStore", "deserialize_vector", "serialize_vector"]


def serialize_vector(vector: Sequence[float]) -> bytes:
    """Pack a vector as little-endian float32, the layout sqlite-vec reads."""
    return np.asarray(vector, dtype="<f4").tobytes()


def deserialize_vector(blob: Optional[bytes]) -> Optional[list[float]]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype="<f4").astype(float).tolist()


class EmbeddingStore:
    """Store and query observation vectors.

    The vector table has no partition column; KNN restricts candidates to
    live rows of one partition by joining back to observations.

    Args:
        db: Open database. When it lacks vector support every query
            returns its empty default.
    """

    def __init__(self, db: "Database"):
        self.db = db
        self._conn = db.conn

    @property
    def available(self) -> bool:
        return self.db.has_vector_support

    def upsert(self, observation_id: str, vector: Sequence[float]) -> bool:
        """Insert or replace the vector for an observation.

        Returns:
            True if stored, False if vector support is missing or the write failed.
        """
        if not self.available:
            return False
        if len(vector) != EMBEDDING_DIM:
            logger.debug(f"Rejecting vector for {observation_id}: dim {len(vector)}")
            return False
        try:
            # vec0 has no upsert; delete-then-insert in one transaction
            with self.db.transaction() as conn:
                conn.execute(
                    "DELETE FROM observation_embeddings WHERE observation_id = ?",
                    (observation_id,),
                )
                conn.execute(
                    "INSERT INTO observation_embeddings (observation_id, embedding) VALUES (?, ?)",
                    (observation_id, serialize_vector(vector)),
                )
            return True
        except sqlite3.Error as e:
            logger.debug(f"Vector upsert failed for {observation_id}: {e}")
            return False

    def knn(
        self, vector: Sequence[float], project_hash: str, limit: int = 20
    ) -> list[tuple[str, float]]:
        """Nearest neighbours within one partition.

        Args:
            vector: Query vector
            project_hash: Partition to search
            limit: Maximum number of hits

        Returns:
            (observation_id, cosine_distance) pairs, nearest first.
        """
        if not self.available or limit <= 0:
            return []
        try:
            rows = self._conn.execute(
                """
                SELECT observation_id, distance
                FROM observation_embeddings
                WHERE embedding MATCH ?
                  AND k = ?
                  AND observation_id IN (
                      SELECT id FROM observations
                      WHERE project_hash = ? AND deleted_at IS NULL
                  )
                ORDER BY distance
                """,
                (serialize_vector(vector), limit, project_hash),
            ).fetchall()
            return [(row["observation_id"], float(row["distance"])) for row in rows]
        except sqlite3.Error as e:
            logger.debug(f"Vector search failed: {e}")
            return []

    def has_vector(self, observation_id: str) -> bool:
        if not self.available:
            return False
        try:
            row = self._conn.execute(
                "SELECT 1 FROM observation_embeddings WHERE observation_id = ?",
                (observation_id,),
            ).fetchone()
            return row is not None
        except sqlite3.Error as e:
            logger.debug(f"Vector lookup failed for {observation_id}: {e}")
            return False

    def delete(self, observation_id: str) -> None:
        if not self.available:
            return
        try:
            self._conn.execute(
                "DELETE FROM observation_embeddings WHERE observation_id = ?",
                (observation_id,),
            )
        except sqlite3.Error as e:
            logger.debug(f"Vector delete failed for {observation_id}: {e}")

    def find_unvectorized(self, limit: int = 10, project_hash: Optional[str] = None) -> list[str]:
        """Live observations that still need a vector.

        With vector support that means "absent from the vector table", which
        also picks up rows embedded before the extension became available.
        Without it, rows whose embedding column is still empty.

        Args:
            limit: Batch size
            project_hash: Restrict to one partition (all partitions when None)

        Returns:
            Observation ids, oldest first.
        """
        if self.available:
            missing = "id NOT IN (SELECT observation_id FROM observation_embeddings)"
        else:
            missing = "embedding IS NULL"
        sql = f"SELECT id FROM observations WHERE deleted_at IS NULL AND {missing}"
        params: list[object] = []
        if project_hash is not None:
            sql += " AND project_hash = ?"
            params.append(project_hash)
        sql += " ORDER BY rowid LIMIT ?"
        params.append(limit)
        try:
            return [row["id"] for row in self._conn.execute(sql, params).fetchall()]
        except sqlite3.Error as e:
            logger.debug(f"find_unvectorized failed: {e}")
            return []

    def backlog(self) -> int:
        """Number of live observations still waiting for a vector."""
        if self.available:
            missing = "id NOT IN (SELECT observation_id FROM observation_embeddings)"
        else:
            missing = "embedding IS NULL"
        try:
            row = self._conn.execute(
                f"SELECT COUNT(*) FROM observations WHERE deleted_at IS NULL AND {missing}"
            ).fetchone()
            return int(row[0])
        except sqlite3.Error as e:
            logger.debug(f"Backlog count failed: {e}")
            return 0
