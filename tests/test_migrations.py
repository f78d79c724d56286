"""Tests for connection setup and schema migrations.

This module tests:
- Connection pragmas (WAL, busy timeout) on every open
- Idempotent migration passes
- Vector-gated migrations skipped, then caught up on a later open
- Failed migrations rolled back and reported as MigrationError
"""

import sqlite3
from pathlib import Path

import pytest

from strata.storage import MigrationError, StorageError, open_database
from strata.storage.migrations import (
    MIGRATIONS,
    Migration,
    Procedure,
    Statements,
    applied_versions,
    apply_pending,
)

# ============================================================================
# Connection
# ============================================================================


class TestOpenDatabase:
    """Test open_database() configuration."""

    def test_wal_mode_enabled(self, db) -> None:
        mode = db.conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"

    def test_busy_timeout_applied(self, db_path: Path) -> None:
        with open_database(db_path, busy_timeout_ms=7500) as database:
            timeout = database.conn.execute("PRAGMA busy_timeout").fetchone()[0]
        assert timeout == 7500

    def test_creates_parent_directories(self, temp_dir: Path) -> None:
        path = temp_dir / "nested" / "dir" / "strata.db"
        with open_database(path) as database:
            assert database.count() == 0
        assert path.exists()

    def test_unopenable_path_raises_storage_error(self, temp_dir: Path) -> None:
        """A directory in place of the file cannot be opened as a database."""
        blocker = temp_dir / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(StorageError):
            open_database(blocker / "strata.db")

    def test_close_is_idempotent(self, db_path: Path) -> None:
        database = open_database(db_path)
        database.close()
        database.close()
        assert database.closed

    def test_keyword_only_when_extension_disabled(self, keyword_db) -> None:
        assert keyword_db.has_vector_support is False


# ============================================================================
# Migrations
# ============================================================================


class TestMigrations:
    """Test the migration runner."""

    def test_versions_strictly_increasing(self) -> None:
        versions = [m.version for m in MIGRATIONS]
        assert versions == sorted(set(versions))

    def test_rerun_is_noop(self, db_path: Path) -> None:
        """Reopening an up-to-date database applies nothing."""
        with open_database(db_path) as database:
            before = applied_versions(database.conn)
            assert apply_pending(database.conn, database.has_vector_support) == []
            assert applied_versions(database.conn) == before

    def test_gated_migrations_skipped_without_vector_support(self, keyword_db) -> None:
        applied = applied_versions(keyword_db.conn)
        gated = {m.version for m in MIGRATIONS if m.requires_vector}
        ungated = {m.version for m in MIGRATIONS if not m.requires_vector}
        assert gated
        assert applied == ungated

    def test_gated_migrations_caught_up_later(self, db_path: Path) -> None:
        """Versions skipped for lack of sqlite-vec are applied on a later open that has it."""
        with open_database(db_path, load_vector_extension=False):
            pass

        with open_database(db_path) as database:
            if not database.has_vector_support:
                pytest.skip("sqlite-vec extension not loadable in this environment")
            applied = applied_versions(database.conn)
            tables = {
                row[0]
                for row in database.conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table'"
                ).fetchall()
            }

        assert applied == {m.version for m in MIGRATIONS}
        assert "observation_embeddings" in tables
        assert "tool_registry_embeddings" in tables

    def test_failed_migration_rolls_back(self, temp_dir: Path) -> None:
        """A failing step leaves no partial schema and no ledger row."""

        def explode(conn: sqlite3.Connection) -> None:
            conn.execute("CREATE TABLE half_done (id INTEGER)")
            raise sqlite3.OperationalError("boom")

        migrations = [
            Migration(1, "first", Statements(("CREATE TABLE first (id INTEGER)",))),
            Migration(2, "broken", Procedure(explode)),
            Migration(3, "never", Statements(("CREATE TABLE never (id INTEGER)",))),
        ]
        conn = sqlite3.connect(str(temp_dir / "m.db"), isolation_level=None)
        try:
            with pytest.raises(MigrationError) as exc_info:
                apply_pending(conn, has_vector_support=False, migrations=migrations)

            assert exc_info.value.version == 2
            assert "broken" in str(exc_info.value)
            assert applied_versions(conn) == {1}
            tables = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
            assert "first" in tables
            assert "half_done" not in tables
            assert "never" not in tables
            assert not conn.in_transaction
        finally:
            conn.close()

    def test_out_of_order_gap_is_filled(self, temp_dir: Path) -> None:
        """Pending work is every unrecorded version, not just those above the maximum."""
        conn = sqlite3.connect(str(temp_dir / "m.db"), isolation_level=None)
        try:
            gated = [
                Migration(1, "a", Statements(("CREATE TABLE a (id INTEGER)",))),
                Migration(2, "b", Statements(("CREATE TABLE b (id INTEGER)",)), requires_vector=True),
                Migration(3, "c", Statements(("CREATE TABLE c (id INTEGER)",))),
            ]
            assert apply_pending(conn, False, gated) == [1, 3]
            assert apply_pending(conn, True, gated) == [2]
            assert applied_versions(conn) == {1, 2, 3}
        finally:
            conn.close()

    def test_kind_backfilled_from_source(self, db_path: Path) -> None:
        """Rows that predate the kind column are classified by their source."""
        conn = sqlite3.connect(str(db_path), isolation_level=None)
        before_kind = [m for m in MIGRATIONS if m.version < 8]
        apply_pending(conn, has_vector_support=False, migrations=before_kind)
        conn.execute(
            "INSERT INTO observations (project_hash, content, source) VALUES (?, ?, ?)",
            ("p" * 16, "edited a file", "hook:Edit"),
        )
        conn.close()

        with open_database(db_path, load_vector_extension=False) as database:
            kind = database.conn.execute("SELECT kind FROM observations").fetchone()[0]
        assert kind == "change"
