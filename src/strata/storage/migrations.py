"""Versioned schema migrations.

Migrations form an ordered, append-only list. Each one is either a
sequence of SQL statements or a procedure that inspects the live schema
before changing it (used where SQLite has no ADD COLUMN IF NOT EXISTS or
where rows need backfilling).

Every pending migration runs inside its own BEGIN IMMEDIATE transaction
together with its bookkeeping row, so a failure leaves the database at the
previous version. Migrations that create sqlite-vec tables are skipped
when the extension is unavailable and picked up on a later open that has
it; pending work is computed as "every version not yet recorded", not
"every version above the maximum".

Example:
    >>> conn = sqlite3.connect("strata.db", isolation_level=None)
    >>> applied = apply_pending(conn, has_vector_support=False)
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable, Union

from strata.constants import EMBEDDING_DIM
from strata.storage.errors import MigrationError

logger = logging.getLogger(__name__)

__all__ = ["MIGRATIONS", "Migration", "Procedure", "Statements", "apply_pending", "applied_versions"]


@dataclass(frozen=True)
class Statements:
    """Migration body made of plain SQL statements, executed in order."""

    sql: tuple[str, ...]


@dataclass(frozen=True)
class Procedure:
    """Migration body that needs Python logic (conditional DDL, backfills)."""

    fn: Callable[[sqlite3.Connection], None]


MigrationBody = Union[Statements, Procedure]


@dataclass(frozen=True)
class Migration:
    """One schema step.

    Attributes:
        version: Unique, strictly increasing version number
        name: Human-readable name stored alongside the version
        up: Statements or Procedure to run
        requires_vector: Skip (without recording) unless sqlite-vec is loaded
    """

    version: int
    name: str
    up: MigrationBody
    requires_vector: bool = False


# =============================================================================
# Procedures
# =============================================================================


def _column_names(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_classification(conn: sqlite3.Connection) -> None:
    columns = _column_names(conn, "observations")
    if "classification" not in columns:
        conn.execute("ALTER TABLE observations ADD COLUMN classification TEXT")
    if "classified_at" not in columns:
        conn.execute("ALTER TABLE observations ADD COLUMN classified_at TEXT")
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_observations_classification
        ON observations(classification) WHERE classification IS NOT NULL
        """
    )


def _add_observation_kind(conn: sqlite3.Connection) -> None:
    if "kind" not in _column_names(conn, "observations"):
        conn.execute("ALTER TABLE observations ADD COLUMN kind TEXT NOT NULL DEFAULT 'finding'")

    # Backfill from provenance
    conn.execute(
        "UPDATE observations SET kind = 'change' WHERE source IN ('hook:Write', 'hook:Edit')"
    )
    conn.execute("UPDATE observations SET kind = 'verification' WHERE source = 'hook:Bash'")
    conn.execute(
        """
        UPDATE observations SET kind = 'reference'
        WHERE source IN ('hook:WebFetch', 'hook:WebSearch')
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_observations_kind ON observations(kind)")


# =============================================================================
# Migration list (append only)
# =============================================================================

_OBSERVATION_FTS_TRIGGERS = (
    """
    CREATE TRIGGER observations_ai AFTER INSERT ON observations BEGIN
        INSERT INTO observations_fts(rowid, title, content)
        VALUES (new.rowid, new.title, new.content);
    END
    """,
    """
    CREATE TRIGGER observations_au AFTER UPDATE OF title, content ON observations BEGIN
        INSERT INTO observations_fts(observations_fts, rowid, title, content)
        VALUES ('delete', old.rowid, old.title, old.content);
        INSERT INTO observations_fts(rowid, title, content)
        VALUES (new.rowid, new.title, new.content);
    END
    """,
    """
    CREATE TRIGGER observations_ad AFTER DELETE ON observations BEGIN
        INSERT INTO observations_fts(observations_fts, rowid, title, content)
        VALUES ('delete', old.rowid, old.title, old.content);
    END
    """,
)

_TOOL_FTS_TRIGGERS = (
    """
    CREATE TRIGGER tool_registry_ai AFTER INSERT ON tool_registry BEGIN
        INSERT INTO tool_registry_fts(rowid, name, description)
        VALUES (new.id, new.name, new.description);
    END
    """,
    """
    CREATE TRIGGER tool_registry_au AFTER UPDATE OF name, description ON tool_registry BEGIN
        INSERT INTO tool_registry_fts(tool_registry_fts, rowid, name, description)
        VALUES ('delete', old.id, old.name, old.description);
        INSERT INTO tool_registry_fts(rowid, name, description)
        VALUES (new.id, new.name, new.description);
    END
    """,
    """
    CREATE TRIGGER tool_registry_ad AFTER DELETE ON tool_registry BEGIN
        INSERT INTO tool_registry_fts(tool_registry_fts, rowid, name, description)
        VALUES ('delete', old.id, old.name, old.description);
    END
    """,
)

MIGRATIONS: list[Migration] = [
    Migration(
        version=1,
        name="create_observations",
        up=Statements(
            (
                """
                CREATE TABLE observations (
                    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE DEFAULT (lower(hex(randomblob(16)))),
                    project_hash TEXT NOT NULL,
                    title TEXT,
                    content TEXT NOT NULL,
                    source TEXT NOT NULL DEFAULT 'unknown',
                    session_id TEXT,
                    embedding BLOB,
                    embedding_model TEXT,
                    embedding_version TEXT,
                    created_at TEXT NOT NULL DEFAULT (datetime('now')),
                    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                    deleted_at TEXT
                )
                """,
                "CREATE INDEX idx_observations_project ON observations(project_hash)",
                "CREATE INDEX idx_observations_session ON observations(session_id)",
                "CREATE INDEX idx_observations_created ON observations(created_at)",
                """
                CREATE INDEX idx_observations_deleted
                ON observations(deleted_at) WHERE deleted_at IS NOT NULL
                """,
            )
        ),
    ),
    Migration(
        version=2,
        name="create_sessions",
        up=Statements(
            (
                """
                CREATE TABLE sessions (
                    id TEXT PRIMARY KEY,
                    project_hash TEXT NOT NULL,
                    started_at TEXT NOT NULL DEFAULT (datetime('now')),
                    ended_at TEXT,
                    summary TEXT
                )
                """,
                "CREATE INDEX idx_sessions_project ON sessions(project_hash)",
                "CREATE INDEX idx_sessions_started ON sessions(started_at)",
            )
        ),
    ),
    Migration(
        version=3,
        name="create_observations_fts",
        up=Statements(
            (
                """
                CREATE VIRTUAL TABLE observations_fts USING fts5(
                    title,
                    content,
                    content='observations',
                    content_rowid='rowid',
                    tokenize='porter unicode61'
                )
                """,
                *_OBSERVATION_FTS_TRIGGERS,
                "INSERT INTO observations_fts(observations_fts) VALUES('rebuild')",
            )
        ),
    ),
    Migration(
        version=4,
        name="create_observation_embeddings",
        up=Statements(
            (
                f"""
                CREATE VIRTUAL TABLE observation_embeddings USING vec0(
                    observation_id TEXT PRIMARY KEY,
                    embedding float[{EMBEDDING_DIM}] distance_metric=cosine
                )
                """,
            )
        ),
        requires_vector=True,
    ),
    Migration(
        version=5,
        name="create_threshold_history",
        up=Statements(
            (
                """
                CREATE TABLE threshold_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT NOT NULL,
                    session_id TEXT,
                    final_ewma_distance REAL NOT NULL,
                    final_ewma_variance REAL NOT NULL,
                    observation_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
                """,
                """
                CREATE INDEX idx_threshold_history_project
                ON threshold_history(project_id, created_at DESC)
                """,
            )
        ),
    ),
    Migration(
        version=6,
        name="create_shift_decisions",
        up=Statements(
            (
                """
                CREATE TABLE shift_decisions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT NOT NULL,
                    session_id TEXT,
                    observation_id TEXT,
                    distance REAL NOT NULL,
                    threshold REAL NOT NULL,
                    ewma_distance REAL,
                    ewma_variance REAL,
                    sensitivity_multiplier REAL,
                    shifted INTEGER NOT NULL,
                    confidence REAL NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
                """,
                """
                CREATE INDEX idx_shift_decisions_session
                ON shift_decisions(project_id, session_id, created_at DESC)
                """,
            )
        ),
    ),
    Migration(version=7, name="add_observation_classification", up=Procedure(_add_classification)),
    Migration(version=8, name="add_observation_kind", up=Procedure(_add_observation_kind)),
    Migration(
        version=9,
        name="create_tool_registry",
        up=Statements(
            (
                """
                CREATE TABLE tool_registry (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    tool_type TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    source TEXT NOT NULL,
                    project_hash TEXT,
                    description TEXT,
                    server_name TEXT,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    last_used_at TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    discovered_at TEXT NOT NULL DEFAULT (datetime('now')),
                    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
                """,
                """
                CREATE UNIQUE INDEX idx_tool_registry_name_project
                ON tool_registry(name, COALESCE(project_hash, ''))
                """,
                "CREATE INDEX idx_tool_registry_scope ON tool_registry(scope)",
                "CREATE INDEX idx_tool_registry_status ON tool_registry(status)",
            )
        ),
    ),
    Migration(
        version=10,
        name="create_tool_usage_events",
        up=Statements(
            (
                """
                CREATE TABLE tool_usage_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tool_name TEXT NOT NULL,
                    session_id TEXT,
                    project_hash TEXT,
                    success INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL DEFAULT (datetime('now'))
                )
                """,
                """
                CREATE INDEX idx_tool_usage_events_tool
                ON tool_usage_events(tool_name, created_at DESC)
                """,
                "CREATE INDEX idx_tool_usage_events_session ON tool_usage_events(session_id)",
            )
        ),
    ),
    Migration(
        version=11,
        name="create_tool_registry_fts",
        up=Statements(
            (
                """
                CREATE VIRTUAL TABLE tool_registry_fts USING fts5(
                    name,
                    description,
                    content='tool_registry',
                    content_rowid='id',
                    tokenize='porter unicode61'
                )
                """,
                *_TOOL_FTS_TRIGGERS,
                "INSERT INTO tool_registry_fts(tool_registry_fts) VALUES('rebuild')",
            )
        ),
    ),
    Migration(
        version=12,
        name="create_tool_registry_embeddings",
        up=Statements(
            (
                f"""
                CREATE VIRTUAL TABLE tool_registry_embeddings USING vec0(
                    tool_id INTEGER PRIMARY KEY,
                    embedding float[{EMBEDDING_DIM}] distance_metric=cosine
                )
                """,
            )
        ),
        requires_vector=True,
    ),
]


# =============================================================================
# Runner
# =============================================================================


def _ensure_ledger(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _migrations (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL DEFAULT (datetime('now'))
        )
        """
    )


def applied_versions(conn: sqlite3.Connection) -> set[int]:
    """Return the set of recorded migration versions."""
    return {row[0] for row in conn.execute("SELECT version FROM _migrations").fetchall()}


def _run_body(conn: sqlite3.Connection, body: MigrationBody) -> None:
    match body:
        case Statements(sql=statements):
            for statement in statements:
                conn.execute(statement)
        case Procedure(fn=fn):
            fn(conn)


def apply_pending(
    conn: sqlite3.Connection,
    has_vector_support: bool,
    migrations: list[Migration] | None = None,
) -> list[int]:
    """Apply every unrecorded migration in ascending version order.

    The connection must be in autocommit mode (isolation_level=None); this
    function manages its own transactions.

    Args:
        conn: Open SQLite connection
        has_vector_support: Whether sqlite-vec loaded on this connection
        migrations: Override the migration list (tests)

    Returns:
        Versions applied during this call, in order.

    Raises:
        MigrationError: If a migration fails. It is rolled back and nothing
            after it is attempted.
    """
    migrations = MIGRATIONS if migrations is None else migrations
    _ensure_ledger(conn)

    done = applied_versions(conn)
    applied: list[int] = []

    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version in done:
            continue
        if migration.requires_vector and not has_vector_support:
            logger.debug(
                f"Skipping migration {migration.version} ({migration.name}): "
                "vector support unavailable"
            )
            continue

        conn.execute("BEGIN IMMEDIATE")
        try:
            # Another process may have applied it while we waited for the lock
            already = conn.execute(
                "SELECT 1 FROM _migrations WHERE version = ?", (migration.version,)
            ).fetchone()
            if already:
                conn.execute("COMMIT")
                continue

            _run_body(conn, migration.up)
            conn.execute(
                "INSERT INTO _migrations (version, name) VALUES (?, ?)",
                (migration.version, migration.name),
            )
            conn.execute("COMMIT")
        except Exception as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise MigrationError(migration.version, migration.name, e) from e

        applied.append(migration.version)
        logger.info(f"Applied migration {migration.version} ({migration.name})")

    return applied
