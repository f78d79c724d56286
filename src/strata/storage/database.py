"""Connection lifecycle for the Strata store.

open_database() produces a Database: a single SQLite connection configured
for concurrent access from a short-lived capture process and a long-lived
serving process sharing one file.

Order matters. WAL must be active before any other pragma so readers never
block the writer, busy_timeout is per connection and must be set on every
open, and migrations run last so they see the final configuration and the
sqlite-vec capability.

Example:
    >>> db = open_database(Path("~/.strata/strata.db").expanduser())
    >>> db.has_vector_support
    True
    >>> db.close()
"""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import sqlite_vec

from strata.constants import CACHE_SIZE_KIB, MIN_BUSY_TIMEOUT_MS, WAL_AUTOCHECKPOINT_PAGES
from strata.storage.errors import StorageError
from strata.storage.migrations import apply_pending

logger = logging.getLogger(__name__)

__all__ = ["Database", "open_database"]


def _load_vector_extension(conn: sqlite3.Connection) -> bool:
    """Try to load sqlite-vec. Returns False instead of raising."""
    try:
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)  # Disable for security
        return True
    except (AttributeError, sqlite3.Error) as e:
        # AttributeError: interpreter built without extension loading
        logger.info(f"sqlite-vec unavailable, running keyword-only: {e}")
        return False


class Database:
    """An open, configured, migrated SQLite connection.

    Every component receives a Database (or its connection) explicitly;
    there is no module-level handle.

    Attributes:
        path: Database file path (or ':memory:')
        conn: The underlying connection, in autocommit mode
        has_vector_support: Whether sqlite-vec loaded. Fixed for the
            lifetime of this object.
    """

    def __init__(self, path: Path, conn: sqlite3.Connection, has_vector_support: bool):
        self.path = path
        self.conn = conn
        self.has_vector_support = has_vector_support
        self._closed = False

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT.

        The write lock is taken up front so the block never upgrades from a
        read lock mid-way (which fails immediately instead of waiting).
        Rolls back and re-raises on any exception.
        """
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    def checkpoint(self) -> None:
        """Flush the WAL into the main file without blocking readers."""
        self.conn.execute("PRAGMA wal_checkpoint(PASSIVE)")

    def count(self) -> int:
        """Count live observations across all partitions."""
        row = self.conn.execute(
            "SELECT COUNT(*) FROM observations WHERE deleted_at IS NULL"
        ).fetchone()
        return int(row[0])

    def rebuild_text_index(self) -> None:
        """Rebuild the observation and registry text indexes from their tables."""
        try:
            with self.transaction() as conn:
                conn.execute("INSERT INTO observations_fts(observations_fts) VALUES('rebuild')")
                conn.execute("INSERT INTO tool_registry_fts(tool_registry_fts) VALUES('rebuild')")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to rebuild text index: {e}") from e
        logger.info("Rebuilt text indexes")

    def close(self) -> None:
        """Checkpoint (best effort) and close. Safe to call twice."""
        if self._closed:
            return
        try:
            self.checkpoint()
        except sqlite3.Error as e:
            logger.debug(f"WAL checkpoint on close failed: {e}")
        finally:
            self.conn.close()
            self._closed = True


def open_database(
    path: Path | str,
    busy_timeout_ms: int = MIN_BUSY_TIMEOUT_MS,
    *,
    load_vector_extension: bool = True,
) -> Database:
    """Open, configure and migrate the store.

    Args:
        path: Database file. Parent directories are created. ':memory:' is
            accepted for tests.
        busy_timeout_ms: Lock wait before SQLITE_BUSY surfaces.
        load_vector_extension: Set False to force keyword-only mode.

    Returns:
        A ready Database.

    Raises:
        StorageError: If the file cannot be opened or configured.
        MigrationError: If a schema migration fails.
    """
    db_path = Path(path)
    in_memory = str(path) == ":memory:"
    conn: Optional[sqlite3.Connection] = None

    try:
        if not in_memory:
            db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            isolation_level=None,  # Transactions are explicit
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        mode = conn.execute("PRAGMA journal_mode = WAL").fetchone()[0]
        if str(mode).lower() != "wal":
            logger.warning(f"WAL mode not active for {db_path} (journal_mode={mode})")

        conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute(f"PRAGMA cache_size = {CACHE_SIZE_KIB}")
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA temp_store = MEMORY")
        conn.execute(f"PRAGMA wal_autocheckpoint = {WAL_AUTOCHECKPOINT_PAGES}")

    except (OSError, sqlite3.Error) as e:
        if conn is not None:
            conn.close()
        raise StorageError(f"Failed to open database at {db_path}: {e}") from e

    has_vector_support = _load_vector_extension(conn) if load_vector_extension else False

    try:
        applied = apply_pending(conn, has_vector_support)
    except Exception:
        conn.close()
        raise

    if applied:
        logger.debug(f"Database {db_path} migrated: {applied}")
    return Database(db_path, conn, has_vector_support)
