"""Session repository, bound to one partition.

Nothing prevents two open sessions in a partition (a crashed process may
never end its session), so callers ask for the most recent open one
instead of assuming there is exactly one.
"""

import logging
import sqlite3
from typing import Optional

from strata.storage.errors import StorageError
from strata.storage.types import Session

logger = logging.getLogger(__name__)

_COLUMNS = "id, project_hash, started_at, ended_at, summary"


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        project_hash=row["project_hash"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        summary=row["summary"],
    )


class SessionRepository:
    """Create, end and look up sessions in one partition."""

    def __init__(self, conn: sqlite3.Connection, project_hash: str):
        self._conn = conn
        self.project_hash = project_hash

    def create(self, session_id: str) -> Session:
        """Start a session.

        Raises:
            StorageError: If the id already exists or the insert fails.
        """
        try:
            self._conn.execute(
                "INSERT INTO sessions (id, project_hash) VALUES (?, ?)",
                (session_id, self.project_hash),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create session {session_id}: {e}") from e
        logger.debug(f"Session {session_id} started")
        session = self.get_by_id(session_id)
        if session is None:
            raise StorageError(f"Session {session_id} vanished after insert")
        return session

    def end(self, session_id: str, summary: Optional[str] = None) -> Optional[Session]:
        """Close a session, optionally attaching a summary.

        Returns:
            The ended session, or None if it does not exist in this partition.
        """
        cursor = self._conn.execute(
            """
            UPDATE sessions
            SET ended_at = COALESCE(ended_at, datetime('now')),
                summary = COALESCE(?, summary)
            WHERE id = ? AND project_hash = ?
            """,
            (summary, session_id, self.project_hash),
        )
        if cursor.rowcount == 0:
            return None
        logger.debug(f"Session {session_id} ended")
        return self.get_by_id(session_id)

    def get_by_id(self, session_id: str) -> Optional[Session]:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM sessions WHERE id = ? AND project_hash = ?",
            (session_id, self.project_hash),
        ).fetchone()
        return _row_to_session(row) if row else None

    def get_latest(self, limit: int = 10) -> list[Session]:
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM sessions WHERE project_hash = ? "
            "ORDER BY started_at DESC, rowid DESC LIMIT ?",
            (self.project_hash, limit),
        ).fetchall()
        return [_row_to_session(row) for row in rows]

    def get_active(self) -> Optional[Session]:
        """Most recently started session that has not ended."""
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM sessions "
            "WHERE project_hash = ? AND ended_at IS NULL "
            "ORDER BY started_at DESC, rowid DESC LIMIT 1",
            (self.project_hash,),
        ).fetchone()
        return _row_to_session(row) if row else None
