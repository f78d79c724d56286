"""Tests for the tool registry ledger.

This module tests:
- Upsert-increment counting (including concurrent writers)
- Scope visibility per partition
- Guarded status transitions, demotion and staleness
- Removed-tool detection after a config rescan
- Keyword, vector and fused tool search
"""

import threading
from pathlib import Path

import pytest
from conftest import PROJECT_A, PROJECT_B, axis_vector

from strata.storage import (
    DiscoveredTool,
    MatchType,
    ToolRegistryRepository,
    ToolScope,
    ToolStatus,
    open_database,
)


def _tool(
    name: str,
    scope: ToolScope = ToolScope.GLOBAL,
    project_hash=None,
    tool_type: str = "builtin",
    source: str = "hook:PostToolUse",
    description=None,
    server_name=None,
) -> DiscoveredTool:
    return DiscoveredTool(
        name=name,
        tool_type=tool_type,
        scope=scope,
        source=source,
        project_hash=project_hash,
        description=description,
        server_name=server_name,
    )


@pytest.fixture
def registry(db) -> ToolRegistryRepository:
    return ToolRegistryRepository(db)


# ============================================================================
# Counting
# ============================================================================


class TestUsageCounting:
    """Test record_or_create and record_usage."""

    def test_first_sighting_counts_one(self, registry: ToolRegistryRepository) -> None:
        registry.record_or_create(_tool("Edit"))
        entry = registry.get_by_name("Edit")
        assert entry.usage_count == 1
        assert entry.last_used_at is not None

    def test_repeated_use_increments(self, registry: ToolRegistryRepository) -> None:
        for _ in range(4):
            registry.record_or_create(_tool("Bash"))
        assert registry.get_by_name("Bash").usage_count == 4
        assert registry.count() == 1

    def test_global_and_project_tools_share_name(self, registry: ToolRegistryRepository) -> None:
        registry.record_or_create(_tool("search"))
        registry.record_or_create(_tool("search", ToolScope.PROJECT, PROJECT_A, "mcp_tool"))
        assert registry.count() == 2
        assert registry.get_by_name("search").scope == ToolScope.GLOBAL
        assert registry.get_by_name("search", PROJECT_A).scope == ToolScope.PROJECT

    def test_record_usage_unknown_tool(self, registry: ToolRegistryRepository) -> None:
        assert registry.record_usage("Nope", None) is False

    def test_events_recorded_with_session(self, registry: ToolRegistryRepository) -> None:
        tool = _tool("Read", ToolScope.PROJECT, PROJECT_A)
        registry.record_or_create(tool, session_id="s-1")
        registry.record_or_create(tool, session_id="s-1", success=False)
        registry.record_or_create(tool)

        events = registry.get_recent_events(PROJECT_A)
        assert len(events) == 2
        assert [e.success for e in events] == [False, True]
        assert registry.get_usage_for_session("s-1") == [
            {"tool_name": "Read", "usage_count": 2, "last_used": events[0].created_at}
        ]
        assert registry.get_usage_since(PROJECT_A)[0]["usage_count"] == 2

    def test_concurrent_writers_lose_nothing(self, db, db_path: Path) -> None:
        """N record_or_create calls from separate connections leave one row with count N."""
        threads_count, per_thread = 8, 5
        errors: list[BaseException] = []

        def worker() -> None:
            try:
                with open_database(db_path) as own:
                    registry = ToolRegistryRepository(own)
                    for _ in range(per_thread):
                        registry.record_or_create(_tool("Grep"))
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        registry = ToolRegistryRepository(db)
        assert registry.count() == 1
        assert registry.get_by_name("Grep").usage_count == threads_count * per_thread

    def test_write_failure_is_swallowed(self, db, registry: ToolRegistryRepository) -> None:
        db.close()
        registry.record_or_create(_tool("Edit"))
        registry.upsert(_tool("Edit"))
        assert registry.mark_stale("Edit", None) is False


# ============================================================================
# Visibility
# ============================================================================


class TestVisibility:
    """Test which tools a partition can see."""

    def test_scope_rules(self, registry: ToolRegistryRepository) -> None:
        registry.upsert(_tool("Edit"))
        registry.upsert(_tool("mine", ToolScope.PROJECT, PROJECT_A, "mcp_tool"))
        registry.upsert(_tool("theirs", ToolScope.PROJECT, PROJECT_B, "mcp_tool"))
        registry.upsert(_tool("plugin_global", ToolScope.PLUGIN, None, "plugin"))
        registry.upsert(_tool("plugin_theirs", ToolScope.PLUGIN, PROJECT_B, "plugin"))

        names = {e.name for e in registry.get_available_for_session(PROJECT_A)}

        assert names == {"Edit", "mine", "plugin_global"}

    def test_active_listed_before_stale(self, registry: ToolRegistryRepository) -> None:
        registry.upsert(_tool("old"))
        registry.upsert(_tool("new"))
        registry.mark_stale("new", None)
        names = [e.name for e in registry.get_available_for_session(PROJECT_A)]
        assert names.index("old") < names.index("new")


# ============================================================================
# Status
# ============================================================================


class TestStatus:
    """Test guarded transitions, demotion and staleness."""

    def test_guarded_transitions(self, registry: ToolRegistryRepository) -> None:
        registry.upsert(_tool("Edit"))
        assert registry.mark_stale("Edit", None) is True
        assert registry.mark_stale("Edit", None) is False
        assert registry.get_by_name("Edit").status == ToolStatus.STALE
        assert registry.mark_active("Edit", None) is True
        assert registry.mark_active("Edit", None) is False

    def test_repeat_transition_keeps_updated_at(self, registry: ToolRegistryRepository, db) -> None:
        registry.upsert(_tool("Edit"))
        registry.mark_demoted("Edit", None)
        db.conn.execute("UPDATE tool_registry SET updated_at = '2000-01-01 00:00:00'")
        registry.mark_demoted("Edit", None)
        assert registry.get_by_name("Edit").updated_at == "2000-01-01 00:00:00"

    def test_rediscovery_reactivates(self, registry: ToolRegistryRepository) -> None:
        registry.upsert(_tool("Edit", description="Edits files"))
        registry.mark_stale("Edit", None)
        registry.upsert(_tool("Edit"))
        entry = registry.get_by_name("Edit")
        assert entry.status == ToolStatus.ACTIVE
        assert entry.description == "Edits files"

    def test_demoted_after_repeated_failures(self, registry: ToolRegistryRepository) -> None:
        tool = _tool("mcp__flaky__call", ToolScope.PROJECT, PROJECT_A, "mcp_tool")
        for _ in range(2):
            registry.record_or_create(tool, session_id="s-1", success=False)
            registry.apply_outcome(tool.name, PROJECT_A, success=False)
        assert registry.get_by_name(tool.name, PROJECT_A).status == ToolStatus.ACTIVE

        registry.record_or_create(tool, session_id="s-1", success=False)
        registry.apply_outcome(tool.name, PROJECT_A, success=False)
        assert registry.get_by_name(tool.name, PROJECT_A).status == ToolStatus.DEMOTED

        registry.record_or_create(tool, session_id="s-1", success=True)
        registry.apply_outcome(tool.name, PROJECT_A, success=True)
        assert registry.get_by_name(tool.name, PROJECT_A).status == ToolStatus.ACTIVE

    def test_staleness_sweep(self, registry: ToolRegistryRepository, db) -> None:
        registry.upsert(_tool("idle"))
        registry.record_or_create(_tool("busy"))
        db.conn.execute(
            "UPDATE tool_registry SET discovered_at = datetime('now', '-90 days') WHERE name = 'idle'"
        )

        assert registry.sweep_staleness(30) == 1
        assert registry.get_by_name("idle").status == ToolStatus.STALE
        assert registry.get_by_name("busy").status == ToolStatus.ACTIVE
        assert registry.sweep_staleness(30) == 0

    def test_detect_removed_tools(self, registry: ToolRegistryRepository) -> None:
        server = _tool(
            "github", ToolScope.PROJECT, PROJECT_A, "mcp_server", "config:.mcp.json", server_name="github"
        )
        server_tool = _tool(
            "mcp__github__create_issue", ToolScope.PROJECT, PROJECT_A, "mcp_tool", server_name="github"
        )
        kept = _tool("lint", ToolScope.PROJECT, PROJECT_A, "slash_command", "config:commands")
        for tool in (server, server_tool, kept):
            registry.upsert(tool)

        marked = registry.detect_removed_tools([kept], PROJECT_A)

        assert set(marked) == {"github", "mcp__github__create_issue"}
        assert registry.get_by_name("lint", PROJECT_A).status == ToolStatus.ACTIVE
        assert registry.detect_removed_tools([kept], PROJECT_A) == []


# ============================================================================
# Search
# ============================================================================


class TestToolSearch:
    """Test tool search."""

    def test_keyword_search(self, registry: ToolRegistryRepository) -> None:
        registry.upsert(_tool("Grep", description="Search file contents with regular expressions"))
        registry.upsert(_tool("Edit", description="Modify a file in place"))

        results = registry.search_keyword("regular expressions", PROJECT_A)

        assert [r.tool.name for r in results] == ["Grep"]
        assert results[0].match_type == MatchType.FTS

    def test_keyword_search_respects_scope(self, registry: ToolRegistryRepository) -> None:
        registry.upsert(_tool("deploy", ToolScope.PROJECT, PROJECT_B, "mcp_tool", description="Deploy app"))
        assert registry.search_keyword("deploy", PROJECT_A) == []

    def test_unembedded_without_vector_support(self, keyword_db) -> None:
        registry = ToolRegistryRepository(keyword_db)
        registry.upsert(_tool("Grep", description="search"))
        assert registry.find_unembedded() == []
        assert registry.store_embedding(1, axis_vector(0)) is False

    def test_fused_search(self, vec_db) -> None:
        registry = ToolRegistryRepository(vec_db)
        registry.upsert(_tool("Grep", description="Search file contents"))
        registry.upsert(_tool("WebSearch", description="Query the web"))
        grep = registry.get_by_name("Grep")
        web = registry.get_by_name("WebSearch")

        assert {t.name for t in registry.find_unembedded()} == {"Grep", "WebSearch"}
        assert registry.store_embedding(grep.id, axis_vector(0))
        assert registry.store_embedding(web.id, axis_vector(1))
        assert registry.find_unembedded() == []

        results = registry.search_tools("file contents", PROJECT_A, query_vector=axis_vector(1))
        by_name = {r.tool.name: r for r in results}

        # Both tools come back from KNN; only Grep also matches the keywords
        assert results[0].tool.name == "Grep"
        assert by_name["Grep"].match_type == MatchType.HYBRID
        assert by_name["WebSearch"].match_type == MatchType.VECTOR

    def test_no_query_vector_is_keyword_only(self, vec_db) -> None:
        registry = ToolRegistryRepository(vec_db)
        registry.upsert(_tool("Grep", description="Search file contents"))
        results = registry.search_tools("contents", PROJECT_A)
        assert [r.match_type for r in results] == [MatchType.FTS]
