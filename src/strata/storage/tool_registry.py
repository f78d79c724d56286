"""Tool registry: the usage ledger of tools the assistant can call.

Rows are unique on (name, COALESCE(project_hash, '')), so a global tool
and a project-scoped tool may share a name. Usage counting is one
INSERT ... ON CONFLICT DO UPDATE statement; concurrent writers never lose
an increment and a first sighting starts the count at 1.

Registry writes are side effects of capturing an observation. They never
raise: failures are logged and the caller carries on.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any, Optional

from strata.constants import (
    BM25_CONTENT_WEIGHT,
    BM25_TITLE_WEIGHT,
    DEMOTION_EVENT_WINDOW,
    DEMOTION_FAILURE_THRESHOLD,
    EMBEDDING_DIM,
)
from strata.storage.embeddings import serialize_vector
from strata.storage.hybrid import reciprocal_rank_fusion
from strata.storage.search import sanitize_query
from strata.storage.types import (
    DiscoveredTool,
    MatchType,
    ToolRegistryEntry,
    ToolSearchResult,
    ToolUsageEvent,
)

if TYPE_CHECKING:
    from strata.storage.database import Database

logger = logging.getLogger(__name__)

__all__ = ["ToolRegistryRepository"]

_SAME_KEY = "name = ? AND COALESCE(project_hash, '') = COALESCE(?, '')"


# Tools visible from a partition: globals, its own project tools, and
# plugins that are either global or installed for it
def _visible(alias: str = "") -> str:
    p = f"{alias}." if alias else ""
    return (
        f"({p}scope = 'global' "
        f"OR ({p}scope = 'project' AND {p}project_hash = ?) "
        f"OR ({p}scope = 'plugin' AND ({p}project_hash IS NULL OR {p}project_hash = ?)))"
    )


_AVAILABILITY_ORDER = """
    CASE status WHEN 'active' THEN 0 WHEN 'stale' THEN 1 WHEN 'demoted' THEN 2 ELSE 3 END,
    CASE tool_type
        WHEN 'mcp_server' THEN 0
        WHEN 'slash_command' THEN 1
        WHEN 'skill' THEN 2
        WHEN 'plugin' THEN 3
        ELSE 4
    END,
    usage_count DESC,
    discovered_at DESC
"""


def _row_to_entry(row: sqlite3.Row) -> ToolRegistryEntry:
    return ToolRegistryEntry(
        id=row["id"],
        name=row["name"],
        tool_type=row["tool_type"],
        scope=row["scope"],
        source=row["source"],
        project_hash=row["project_hash"],
        description=row["description"],
        server_name=row["server_name"],
        usage_count=row["usage_count"],
        last_used_at=row["last_used_at"],
        discovered_at=row["discovered_at"],
        updated_at=row["updated_at"],
        status=row["status"],
    )


def _row_to_event(row: sqlite3.Row) -> ToolUsageEvent:
    return ToolUsageEvent(
        id=row["id"],
        tool_name=row["tool_name"],
        session_id=row["session_id"],
        project_hash=row["project_hash"],
        success=bool(row["success"]),
        created_at=row["created_at"],
    )


class ToolRegistryRepository:
    """Registry rows, usage events, and tool search.

    Args:
        db: Open database. Vector methods are no-ops without vector support.
    """

    def __init__(self, db: Database):
        self.db = db
        self._conn = db.conn

    # =========================================================================
    # Writes (non-fatal)
    # =========================================================================

    def upsert(self, tool: DiscoveredTool) -> None:
        """Insert a discovered tool, or refresh it if already known.

        A rediscovered tool keeps its usage count, takes the new source,
        keeps its old description unless a new one is given, and becomes
        active again.
        """
        try:
            self._conn.execute(
                """
                INSERT INTO tool_registry
                    (name, tool_type, scope, source, project_hash, description, server_name)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (name, COALESCE(project_hash, '')) DO UPDATE SET
                    description = COALESCE(excluded.description, tool_registry.description),
                    source = excluded.source,
                    status = 'active',
                    updated_at = datetime('now')
                """,
                (
                    tool.name,
                    tool.tool_type,
                    tool.scope.value,
                    tool.source,
                    tool.project_hash,
                    tool.description,
                    tool.server_name,
                ),
            )
        except sqlite3.Error as e:
            logger.warning(f"Failed to upsert tool {tool.name}: {e}")

    def record_usage(self, name: str, project_hash: Optional[str]) -> bool:
        """Increment usage of a known tool. Returns False if it is not registered."""
        try:
            cursor = self._conn.execute(
                f"""
                UPDATE tool_registry
                SET usage_count = usage_count + 1,
                    last_used_at = datetime('now'),
                    updated_at = datetime('now')
                WHERE {_SAME_KEY}
                """,
                (name, project_hash),
            )
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.warning(f"Failed to record usage for {name}: {e}")
            return False

    def record_or_create(
        self,
        tool: DiscoveredTool,
        session_id: Optional[str] = None,
        success: bool = True,
    ) -> None:
        """Count one use of a tool, registering it on first sight.

        Args:
            tool: Identity and defaults used if the tool is new
            session_id: When given, a usage event is appended as well
            success: Outcome recorded on the usage event
        """
        try:
            self._conn.execute(
                """
                INSERT INTO tool_registry (
                    name, tool_type, scope, source, project_hash, description,
                    server_name, usage_count, last_used_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, datetime('now'))
                ON CONFLICT (name, COALESCE(project_hash, '')) DO UPDATE SET
                    usage_count = tool_registry.usage_count + 1,
                    last_used_at = datetime('now'),
                    updated_at = datetime('now')
                """,
                (
                    tool.name,
                    tool.tool_type,
                    tool.scope.value,
                    tool.source,
                    tool.project_hash,
                    tool.description,
                    tool.server_name,
                ),
            )
            if session_id is not None:
                self.record_event(tool.name, session_id, tool.project_hash, success)
        except sqlite3.Error as e:
            logger.warning(f"Failed record_or_create for {tool.name}: {e}")

    def record_event(
        self,
        tool_name: str,
        session_id: Optional[str],
        project_hash: Optional[str],
        success: bool = True,
    ) -> None:
        try:
            self._conn.execute(
                """
                INSERT INTO tool_usage_events (tool_name, session_id, project_hash, success)
                VALUES (?, ?, ?, ?)
                """,
                (tool_name, session_id, project_hash, 1 if success else 0),
            )
        except sqlite3.Error as e:
            logger.warning(f"Failed to record usage event for {tool_name}: {e}")

    def _set_status(self, name: str, project_hash: Optional[str], status: str) -> bool:
        # Guard keeps repeated calls from touching updated_at
        try:
            cursor = self._conn.execute(
                f"""
                UPDATE tool_registry
                SET status = ?, updated_at = datetime('now')
                WHERE {_SAME_KEY} AND status != ?
                """,
                (status, name, project_hash, status),
            )
        except sqlite3.Error as e:
            logger.warning(f"Failed to mark tool {name} {status}: {e}")
            return False
        if cursor.rowcount > 0:
            logger.debug(f"Marked tool {name} {status}")
        return cursor.rowcount > 0

    def mark_stale(self, name: str, project_hash: Optional[str]) -> bool:
        """Tool disappeared from configuration. Idempotent."""
        return self._set_status(name, project_hash, "stale")

    def mark_demoted(self, name: str, project_hash: Optional[str]) -> bool:
        """Tool has been failing. Idempotent."""
        return self._set_status(name, project_hash, "demoted")

    def mark_active(self, name: str, project_hash: Optional[str]) -> bool:
        """Tool is back in use or back in configuration. Idempotent."""
        return self._set_status(name, project_hash, "active")

    def apply_outcome(self, name: str, project_hash: Optional[str], success: bool) -> None:
        """Update status after an invocation.

        A success reactivates the tool. A failure demotes it once enough of
        its most recent events in this partition are failures.
        """
        if success:
            self.mark_active(name, project_hash)
            return
        recent = self.get_recent_events_for_tool(name, project_hash or "", DEMOTION_EVENT_WINDOW)
        failures = sum(1 for ok in recent if not ok)
        if failures >= DEMOTION_FAILURE_THRESHOLD:
            if self.mark_demoted(name, project_hash):
                logger.info(f"Demoted tool {name} after {failures} recent failures")

    def detect_removed_tools(
        self, scanned: Iterable[DiscoveredTool], project_hash: Optional[str]
    ) -> list[str]:
        """Mark config-sourced tools missing from a fresh config scan as stale.

        Tools belonging to a removed MCP server are marked stale with it.

        Returns:
            Names newly marked stale.
        """
        scanned_names = {tool.name for tool in scanned}
        removed_servers: set[str] = set()
        marked: list[str] = []

        for entry in self.get_config_sourced(project_hash):
            if entry.name in scanned_names:
                continue
            if self.mark_stale(entry.name, entry.project_hash):
                marked.append(entry.name)
            if entry.tool_type == "mcp_server" and entry.server_name:
                removed_servers.add(entry.server_name)

        if removed_servers and project_hash is not None:
            for entry in self.get_available_for_session(project_hash):
                if (
                    entry.tool_type == "mcp_tool"
                    and entry.server_name in removed_servers
                    and self.mark_stale(entry.name, entry.project_hash)
                ):
                    marked.append(entry.name)
        return marked

    def sweep_staleness(self, stale_after_days: int) -> int:
        """Mark active tools unused for stale_after_days as stale.

        Never-used tools age from their discovery time.

        Returns:
            Number of tools marked stale.
        """
        try:
            cursor = self._conn.execute(
                """
                UPDATE tool_registry
                SET status = 'stale', updated_at = datetime('now')
                WHERE status = 'active'
                  AND COALESCE(last_used_at, discovered_at) < datetime('now', ?)
                """,
                (f"-{int(stale_after_days)} days",),
            )
        except sqlite3.Error as e:
            logger.warning(f"Staleness sweep failed: {e}")
            return 0
        if cursor.rowcount:
            logger.info(f"Staleness sweep marked {cursor.rowcount} tools stale")
        return cursor.rowcount

    def store_embedding(self, tool_id: int, vector: Sequence[float]) -> bool:
        if not self.db.has_vector_support or len(vector) != EMBEDDING_DIM:
            return False
        try:
            with self.db.transaction() as conn:
                conn.execute("DELETE FROM tool_registry_embeddings WHERE tool_id = ?", (tool_id,))
                conn.execute(
                    "INSERT INTO tool_registry_embeddings (tool_id, embedding) VALUES (?, ?)",
                    (tool_id, serialize_vector(vector)),
                )
            return True
        except sqlite3.Error as e:
            logger.debug(f"Failed to store tool embedding for {tool_id}: {e}")
            return False

    # =========================================================================
    # Reads
    # =========================================================================

    def get_by_name(self, name: str, project_hash: Optional[str] = None) -> Optional[ToolRegistryEntry]:
        row = self._conn.execute(
            f"SELECT * FROM tool_registry WHERE {_SAME_KEY}", (name, project_hash)
        ).fetchone()
        return _row_to_entry(row) if row else None

    def get_available_for_session(self, project_hash: str) -> list[ToolRegistryEntry]:
        """Tools visible from a partition, active first, then by type and usage."""
        rows = self._conn.execute(
            f"SELECT * FROM tool_registry WHERE {_visible()} ORDER BY {_AVAILABILITY_ORDER}",
            (project_hash, project_hash),
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def get_config_sourced(self, project_hash: Optional[str]) -> list[ToolRegistryEntry]:
        rows = self._conn.execute(
            """
            SELECT * FROM tool_registry
            WHERE source LIKE 'config:%'
              AND status = 'active'
              AND (project_hash = ? OR project_hash IS NULL)
            """,
            (project_hash,),
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def get_all(self) -> list[ToolRegistryEntry]:
        rows = self._conn.execute(
            "SELECT * FROM tool_registry ORDER BY usage_count DESC, discovered_at DESC"
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def count(self) -> int:
        return int(self._conn.execute("SELECT COUNT(*) FROM tool_registry").fetchone()[0])

    def get_recent_events(self, project_hash: str, limit: int = 50) -> list[ToolUsageEvent]:
        rows = self._conn.execute(
            """
            SELECT * FROM tool_usage_events
            WHERE project_hash = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (project_hash, limit),
        ).fetchall()
        return [_row_to_event(row) for row in rows]

    def get_recent_events_for_tool(
        self, tool_name: str, project_hash: str, limit: int = DEMOTION_EVENT_WINDOW
    ) -> list[bool]:
        """Outcomes of the tool's latest events, newest first (True = success)."""
        try:
            rows = self._conn.execute(
                """
                SELECT success FROM tool_usage_events
                WHERE tool_name = ? AND COALESCE(project_hash, '') = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (tool_name, project_hash, limit),
            ).fetchall()
        except sqlite3.Error as e:
            logger.debug(f"Failed to read recent events for {tool_name}: {e}")
            return []
        return [bool(row["success"]) for row in rows]

    def get_usage_for_session(self, session_id: str) -> list[dict[str, Any]]:
        """Per-tool counts for one session, most used first."""
        rows = self._conn.execute(
            """
            SELECT tool_name, COUNT(*) AS usage_count, MAX(created_at) AS last_used
            FROM tool_usage_events
            WHERE session_id = ?
            GROUP BY tool_name
            ORDER BY usage_count DESC
            """,
            (session_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    def get_usage_since(self, project_hash: str, time_modifier: str = "-7 days") -> list[dict[str, Any]]:
        """Per-tool counts in a partition since a SQLite datetime offset."""
        rows = self._conn.execute(
            """
            SELECT tool_name, COUNT(*) AS usage_count, MAX(created_at) AS last_used
            FROM tool_usage_events
            WHERE project_hash = ? AND created_at >= datetime('now', ?)
            GROUP BY tool_name
            ORDER BY usage_count DESC
            """,
            (project_hash, time_modifier),
        ).fetchall()
        return [dict(row) for row in rows]

    def find_unembedded(self, limit: int = 5) -> list[ToolRegistryEntry]:
        """Described tools without a vector yet."""
        if not self.db.has_vector_support:
            return []
        try:
            rows = self._conn.execute(
                """
                SELECT * FROM tool_registry
                WHERE description IS NOT NULL
                  AND id NOT IN (SELECT tool_id FROM tool_registry_embeddings)
                ORDER BY id
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        except sqlite3.Error as e:
            logger.debug(f"Failed to find unembedded tools: {e}")
            return []
        return [_row_to_entry(row) for row in rows]

    # =========================================================================
    # Search
    # =========================================================================

    def search_keyword(self, query: str, project_hash: str, limit: int = 10) -> list[ToolSearchResult]:
        match = sanitize_query(query)
        if match is None:
            return []
        try:
            rows = self._conn.execute(
                f"""
                SELECT t.*,
                       bm25(tool_registry_fts, {BM25_TITLE_WEIGHT}, {BM25_CONTENT_WEIGHT}) AS rank
                FROM tool_registry_fts
                JOIN tool_registry t ON t.id = tool_registry_fts.rowid
                WHERE tool_registry_fts MATCH ?
                  AND {_visible("t")}
                ORDER BY rank
                LIMIT ?
                """,
                (match, project_hash, project_hash, limit),
            ).fetchall()
        except sqlite3.Error as e:
            logger.debug(f"Tool keyword search failed: {e}")
            return []
        return [
            ToolSearchResult(tool=_row_to_entry(row), score=abs(row["rank"]), match_type=MatchType.FTS)
            for row in rows
        ]

    def search_vector(
        self, vector: Sequence[float], project_hash: str, limit: int = 10
    ) -> list[tuple[ToolRegistryEntry, float]]:
        if not self.db.has_vector_support:
            return []
        try:
            rows = self._conn.execute(
                f"""
                SELECT t.*, v.distance
                FROM (
                    SELECT tool_id, distance
                    FROM tool_registry_embeddings
                    WHERE embedding MATCH ? AND k = ?
                ) v
                JOIN tool_registry t ON t.id = v.tool_id
                WHERE {_visible("t")}
                ORDER BY v.distance
                """,
                (serialize_vector(vector), limit, project_hash, project_hash),
            ).fetchall()
        except sqlite3.Error as e:
            logger.debug(f"Tool vector search failed: {e}")
            return []
        return [(_row_to_entry(row), float(row["distance"])) for row in rows]

    def search_tools(
        self,
        query: str,
        project_hash: str,
        query_vector: Optional[Sequence[float]] = None,
        limit: int = 10,
    ) -> list[ToolSearchResult]:
        """Hybrid tool search, fused with the same RRF as observation search."""
        keyword = self.search_keyword(query, project_hash, limit=limit)
        if query_vector is None:
            return keyword
        vector = self.search_vector(query_vector, project_hash, limit=limit * 2)
        if not vector:
            return keyword

        entries = {str(r.tool.id): r.tool for r in keyword}
        keyword_ids = list(entries)
        vector_ids: list[str] = []
        for entry, _ in vector:
            entries.setdefault(str(entry.id), entry)
            vector_ids.append(str(entry.id))

        in_keyword, in_vector = set(keyword_ids), set(vector_ids)
        results: list[ToolSearchResult] = []
        for tool_id, score in reciprocal_rank_fusion([keyword_ids, vector_ids])[:limit]:
            if tool_id in in_keyword and tool_id in in_vector:
                match_type = MatchType.HYBRID
            elif tool_id in in_keyword:
                match_type = MatchType.FTS
            else:
                match_type = MatchType.VECTOR
            results.append(ToolSearchResult(tool=entries[tool_id], score=score, match_type=match_type))
        return results
