"""Partition-scoped observation repository.

Every query is bound to the project_hash given at construction, so a
repository can never read or modify another partition's rows. Soft-deleted
rows are invisible to listing and lookup, but remain addressable through
the *_including_deleted methods so they can be restored.

Example:
    >>> repo = ObservationRepository(db.conn, project_hash="ab12cd34ef56ab78")
    >>> obs = repo.create(ObservationInsert(content="Switched to WAL", source="manual"))
    >>> repo.get_by_id(obs.id[:8]).id == obs.id
    True
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Optional

from strata.constants import FULL_ID_LENGTH, UNCLASSIFIED_GRACE_SECONDS
from strata.storage.embeddings import deserialize_vector, serialize_vector
from strata.storage.errors import StorageError
from strata.storage.types import Classification, Observation, ObservationInsert, ObservationKind

logger = logging.getLogger(__name__)

__all__ = [
    "ObservationRepository",
    "kind_for_source",
    "observation_columns",
    "row_to_observation",
]

_COLUMNS = (
    "rowid, id, project_hash, title, content, source, kind, session_id, "
    "classification, classified_at, embedding, embedding_model, embedding_version, "
    "created_at, updated_at, deleted_at"
)


def observation_columns(alias: str) -> str:
    """Standard column list qualified with a table alias, for joins."""
    return ", ".join(f"{alias}.{name.strip()}" for name in _COLUMNS.split(","))


_SOURCE_KINDS = {
    "hook:Write": ObservationKind.CHANGE,
    "hook:Edit": ObservationKind.CHANGE,
    "hook:Bash": ObservationKind.VERIFICATION,
    "hook:WebFetch": ObservationKind.REFERENCE,
    "hook:WebSearch": ObservationKind.REFERENCE,
}


def kind_for_source(source: str) -> ObservationKind:
    """Default kind for a provenance tag."""
    return _SOURCE_KINDS.get(source, ObservationKind.FINDING)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def row_to_observation(row: sqlite3.Row) -> Observation:
    """Convert a row selected with the standard column list."""
    return Observation(
        rowid=row["rowid"],
        id=row["id"],
        project_hash=row["project_hash"],
        title=row["title"],
        content=row["content"],
        source=row["source"],
        kind=row["kind"],
        session_id=row["session_id"],
        classification=row["classification"],
        classified_at=row["classified_at"],
        embedding=deserialize_vector(row["embedding"]),
        embedding_model=row["embedding_model"],
        embedding_version=row["embedding_version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row["deleted_at"],
    )


class ObservationRepository:
    """CRUD for one partition's observations.

    Args:
        conn: Connection from an open Database (autocommit mode)
        project_hash: Partition this repository is bound to
        has_vector_support: Whether the vector table is usable on this
            connection (purge also removes the vector)
    """

    def __init__(
        self, conn: sqlite3.Connection, project_hash: str, has_vector_support: bool = False
    ):
        self._conn = conn
        self.project_hash = project_hash
        self.has_vector_support = has_vector_support

    # =========================================================================
    # Create
    # =========================================================================

    def create(self, data: ObservationInsert) -> Observation:
        """Insert an observation and return the stored row.

        Raises:
            StorageError: If the insert fails (including SQLITE_BUSY after
                the busy timeout).
        """
        return self._insert(data, classification=None)

    def create_classified(
        self, data: ObservationInsert, classification: Classification
    ) -> Observation:
        """Insert an observation that already carries a classifier label.

        Used for explicit saves, which skip the asynchronous classifier.
        """
        return self._insert(data, classification=classification)

    def _insert(
        self, data: ObservationInsert, classification: Optional[Classification]
    ) -> Observation:
        embedding = serialize_vector(data.embedding) if data.embedding is not None else None
        label = classification.value if classification is not None else None
        kind = data.kind or kind_for_source(data.source)
        try:
            cursor = self._conn.execute(
                """
                INSERT INTO observations (
                    project_hash, title, content, source, kind, session_id,
                    embedding, embedding_model, embedding_version,
                    classification, classified_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                        CASE WHEN ? IS NULL THEN NULL ELSE datetime('now') END)
                """,
                (
                    self.project_hash,
                    data.title,
                    data.content,
                    data.source,
                    kind.value,
                    data.session_id,
                    embedding,
                    data.embedding_model,
                    data.embedding_version,
                    label,
                    label,
                ),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create observation: {e}") from e

        logger.debug(
            f"Created observation rowid={cursor.lastrowid} source={data.source} "
            f"len={len(data.content)}"
        )
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM observations WHERE rowid = ?", (cursor.lastrowid,)
        ).fetchone()
        return row_to_observation(row)

    # =========================================================================
    # Read
    # =========================================================================

    def _resolve(self, id_or_prefix: str, include_deleted: bool) -> Optional[Observation]:
        deleted_clause = "" if include_deleted else " AND deleted_at IS NULL"

        if len(id_or_prefix) >= FULL_ID_LENGTH:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM observations "
                f"WHERE id = ? AND project_hash = ?{deleted_clause}",
                (id_or_prefix, self.project_hash),
            ).fetchone()
            return row_to_observation(row) if row else None

        if not id_or_prefix:
            return None

        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM observations "
            f"WHERE id LIKE ? ESCAPE '\\' AND project_hash = ?{deleted_clause} LIMIT 2",
            (_escape_like(id_or_prefix) + "%", self.project_hash),
        ).fetchall()
        if len(rows) != 1:
            if rows:
                logger.debug(f"Ambiguous id prefix {id_or_prefix!r}")
            return None
        return row_to_observation(rows[0])

    def get_by_id(self, id_or_prefix: str) -> Optional[Observation]:
        """Look up a live observation by full id or unambiguous prefix.

        Args:
            id_or_prefix: Full 32-char id or a prefix of one

        Returns:
            The observation, or None when missing, deleted, in another
            partition, or when the prefix matches more than one row.
        """
        return self._resolve(id_or_prefix, include_deleted=False)

    def get_by_id_including_deleted(self, id_or_prefix: str) -> Optional[Observation]:
        return self._resolve(id_or_prefix, include_deleted=True)

    def get_by_title(self, title: str) -> list[Observation]:
        """Live observations whose title matches exactly (case-insensitive)."""
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM observations "
            "WHERE project_hash = ? AND deleted_at IS NULL AND title = ? COLLATE NOCASE "
            "ORDER BY created_at DESC, rowid DESC",
            (self.project_hash, title),
        ).fetchall()
        return [row_to_observation(row) for row in rows]

    def list(
        self,
        limit: int = 50,
        offset: int = 0,
        session_id: Optional[str] = None,
        since: Optional[str] = None,
        kind: Optional[ObservationKind] = None,
        classification: Optional[Classification] = None,
        include_unclassified: bool = False,
    ) -> list[Observation]:
        """List live observations, newest first.

        By default only rows the classifier has accepted (anything but
        noise) are listed, plus unclassified rows younger than the grace
        window so fresh captures are visible before classification.

        Args:
            limit: Page size
            offset: Rows to skip
            session_id: Restrict to one session
            since: Only rows created at or after this timestamp
            kind: Restrict to one kind
            classification: Restrict to one label
            include_unclassified: List every live row regardless of label

        Returns:
            Observations ordered by created_at then rowid, descending.
        """
        conditions = ["project_hash = ?", "deleted_at IS NULL"]
        params: list[Any] = [self.project_hash]

        if not include_unclassified:
            conditions.append(
                "((classification IS NOT NULL AND classification != 'noise') "
                "OR created_at >= datetime('now', ?))"
            )
            params.append(f"-{UNCLASSIFIED_GRACE_SECONDS} seconds")
        if session_id is not None:
            conditions.append("session_id = ?")
            params.append(session_id)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(since)
        if kind is not None:
            conditions.append("kind = ?")
            params.append(kind.value)
        if classification is not None:
            conditions.append("classification = ?")
            params.append(classification.value)

        params.extend([limit, offset])
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM observations WHERE {' AND '.join(conditions)} "
            "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            params,
        ).fetchall()
        return [row_to_observation(row) for row in rows]

    def list_including_deleted(self, limit: int = 50, offset: int = 0) -> list[Observation]:
        """Every row of the partition, soft-deleted ones included, newest first."""
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM observations WHERE project_hash = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (self.project_hash, limit, offset),
        ).fetchall()
        return [row_to_observation(row) for row in rows]

    def list_unclassified(self, limit: int = 20) -> list[Observation]:
        """Oldest live rows still waiting for a classifier label."""
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM observations "
            "WHERE project_hash = ? AND deleted_at IS NULL AND classification IS NULL "
            "ORDER BY created_at ASC, rowid ASC LIMIT ?",
            (self.project_hash, limit),
        ).fetchall()
        return [row_to_observation(row) for row in rows]

    def count(self) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM observations WHERE project_hash = ? AND deleted_at IS NULL",
            (self.project_hash,),
        ).fetchone()
        return int(row[0])

    # =========================================================================
    # Update
    # =========================================================================

    def update(
        self,
        observation_id: str,
        *,
        content: Optional[str] = None,
        title: Optional[str] = None,
        embedding: Optional[list[float]] = None,
        embedding_model: Optional[str] = None,
        embedding_version: Optional[str] = None,
    ) -> Optional[Observation]:
        """Patch a live observation. Fields left as None are unchanged.

        Returns:
            The updated row, or None if no live row has this id.
        """
        sets: list[str] = []
        params: list[Any] = []
        if content is not None:
            sets.append("content = ?")
            params.append(content)
        if title is not None:
            sets.append("title = ?")
            params.append(title)
        if embedding is not None:
            sets.append("embedding = ?")
            params.append(serialize_vector(embedding))
        if embedding_model is not None:
            sets.append("embedding_model = ?")
            params.append(embedding_model)
        if embedding_version is not None:
            sets.append("embedding_version = ?")
            params.append(embedding_version)
        if not sets:
            return self.get_by_id(observation_id)

        sets.append("updated_at = datetime('now')")
        params.extend([observation_id, self.project_hash])
        try:
            cursor = self._conn.execute(
                f"UPDATE observations SET {', '.join(sets)} "
                "WHERE id = ? AND project_hash = ? AND deleted_at IS NULL",
                params,
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to update observation {observation_id}: {e}") from e
        if cursor.rowcount == 0:
            return None
        return self.get_by_id(observation_id)

    def update_classification(self, observation_id: str, classification: Classification) -> bool:
        """Attach a classifier label. Returns False if no live row matched."""
        try:
            cursor = self._conn.execute(
                """
                UPDATE observations
                SET classification = ?, classified_at = datetime('now'),
                    updated_at = datetime('now')
                WHERE id = ? AND project_hash = ? AND deleted_at IS NULL
                """,
                (classification.value, observation_id, self.project_hash),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to classify observation {observation_id}: {e}") from e
        return cursor.rowcount > 0

    def soft_delete(self, id_or_prefix: str) -> bool:
        """Hide an observation from every retrieval path.

        Args:
            id_or_prefix: Full id or an unambiguous prefix of a live row

        Returns:
            True if a live row was deleted. False for missing, ambiguous or
            already deleted rows, so calling it twice is harmless.
        """
        try:
            observation = self._resolve(id_or_prefix, include_deleted=False)
            if observation is None:
                return False
            cursor = self._conn.execute(
                """
                UPDATE observations
                SET deleted_at = datetime('now'), updated_at = datetime('now')
                WHERE id = ? AND project_hash = ? AND deleted_at IS NULL
                """,
                (observation.id, self.project_hash),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete observation {id_or_prefix}: {e}") from e
        return cursor.rowcount > 0

    def restore(self, id_or_prefix: str) -> bool:
        """Undo a soft delete. Returns False if no deleted row matched."""
        try:
            observation = self._resolve(id_or_prefix, include_deleted=True)
            if observation is None or not observation.is_deleted:
                return False
            cursor = self._conn.execute(
                """
                UPDATE observations
                SET deleted_at = NULL, updated_at = datetime('now')
                WHERE id = ? AND project_hash = ? AND deleted_at IS NOT NULL
                """,
                (observation.id, self.project_hash),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to restore observation {id_or_prefix}: {e}") from e
        return cursor.rowcount > 0

    def purge(self, observation_id: str) -> bool:
        """Permanently remove a soft-deleted observation and its vector.

        Live rows are never purged; soft-delete them first.
        """
        row = self._conn.execute(
            "SELECT 1 FROM observations "
            "WHERE id = ? AND project_hash = ? AND deleted_at IS NOT NULL",
            (observation_id, self.project_hash),
        ).fetchone()
        if row is None:
            return False

        self._conn.execute("BEGIN IMMEDIATE")
        try:
            if self.has_vector_support:
                self._conn.execute(
                    "DELETE FROM observation_embeddings WHERE observation_id = ?",
                    (observation_id,),
                )
            self._conn.execute(
                "DELETE FROM observations WHERE id = ? AND project_hash = ?",
                (observation_id, self.project_hash),
            )
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            raise StorageError(f"Failed to purge observation {observation_id}: {e}") from e
        return True
