"""Capture path: record one tool invocation and exit.

Runs inside a short-lived process per event, concurrently with the serving
process. Each call opens its own connection, does one primary write (the
observation) and one best-effort side effect (the tool ledger), then
closes. The return value reflects only the primary write: a ledger
failure is logged and never fails the capture.

Example:
    >>> obs = capture_tool_event(
    ...     Path("~/.strata/strata.db").expanduser(),
    ...     project_hash,
    ...     tool_name="Edit",
    ...     content="Edited src/app.py: switch to WAL",
    ...     session_id="s-1",
    ... )
"""

import logging
import re
from pathlib import Path
from typing import Optional

from strata.constants import MIN_BUSY_TIMEOUT_MS
from strata.storage.database import Database, open_database
from strata.storage.observations import ObservationRepository
from strata.storage.sessions import SessionRepository
from strata.storage.tool_registry import ToolRegistryRepository
from strata.storage.types import (
    DiscoveredTool,
    Observation,
    ObservationInsert,
    Session,
    ToolScope,
)

logger = logging.getLogger(__name__)

__all__ = [
    "capture_observation",
    "capture_tool_event",
    "end_session",
    "extract_server_name",
    "infer_scope",
    "infer_tool_type",
    "start_session",
    "tool_from_name",
]

_PLUGIN_TOOL = re.compile(r"^mcp__plugin_([^_]+(?:_[^_]+)*)_([^_]+(?:_[^_]+)*)__")
_PROJECT_TOOL = re.compile(r"^mcp__([^_]+(?:_[^_]+)*)__")
_BUILTIN_TOOL = re.compile(r"^[A-Z][a-zA-Z]+$")


def infer_tool_type(tool_name: str) -> str:
    if tool_name.startswith("mcp__"):
        return "mcp_tool"
    if _BUILTIN_TOOL.match(tool_name):
        return "builtin"
    return "unknown"


def infer_scope(tool_name: str) -> ToolScope:
    """Plugin MCP tools are plugin-scoped, other MCP tools project-scoped,
    everything else global."""
    if tool_name.startswith("mcp__plugin_"):
        return ToolScope.PLUGIN
    if tool_name.startswith("mcp__"):
        return ToolScope.PROJECT
    return ToolScope.GLOBAL


def extract_server_name(tool_name: str) -> Optional[str]:
    """MCP server name from 'mcp__<server>__<tool>' or
    'mcp__plugin_<plugin>_<server>__<tool>'. None for non-MCP tools."""
    match = _PLUGIN_TOOL.match(tool_name)
    if match:
        return match.group(2)
    match = _PROJECT_TOOL.match(tool_name)
    if match:
        return match.group(1)
    return None


def tool_from_name(tool_name: str, project_hash: Optional[str]) -> DiscoveredTool:
    """Registry identity for a tool seen only by name in a usage event.

    Global tools are registered without a partition so every project
    shares one row.
    """
    scope = infer_scope(tool_name)
    return DiscoveredTool(
        name=tool_name,
        tool_type=infer_tool_type(tool_name),
        scope=scope,
        source="hook:PostToolUse",
        project_hash=None if scope == ToolScope.GLOBAL else project_hash,
        server_name=extract_server_name(tool_name),
    )


def _record_tool_usage(
    db: Database, tool: DiscoveredTool, session_id: Optional[str], success: bool
) -> None:
    try:
        registry = ToolRegistryRepository(db)
        registry.record_or_create(tool, session_id=session_id, success=success)
        registry.apply_outcome(tool.name, tool.project_hash, success)
    except Exception as e:
        logger.warning(f"Tool usage not recorded for {tool.name}: {e}")


def capture_observation(
    db: Database,
    project_hash: str,
    data: ObservationInsert,
    tool: Optional[DiscoveredTool] = None,
    success: bool = True,
) -> Observation:
    """Write an observation, then update the tool ledger if a tool is given.

    Raises:
        StorageError: Only if the observation write fails.
    """
    repo = ObservationRepository(db.conn, project_hash, has_vector_support=db.has_vector_support)
    observation = repo.create(data)
    if tool is not None:
        _record_tool_usage(db, tool, data.session_id, success)
    return observation


def capture_tool_event(
    db_path: Path,
    project_hash: str,
    tool_name: str,
    content: str,
    session_id: Optional[str] = None,
    title: Optional[str] = None,
    success: bool = True,
    busy_timeout_ms: int = MIN_BUSY_TIMEOUT_MS,
) -> Observation:
    """Open the store, capture one tool event, close.

    Args:
        db_path: Database file shared with the serving process
        project_hash: Partition key
        tool_name: Name of the tool that ran (also the observation source)
        content: Observation text
        session_id: Current session, if known
        title: Optional observation title
        success: Whether the tool call succeeded
        busy_timeout_ms: Lock wait for this connection

    Returns:
        The stored observation.

    Raises:
        StorageError: If the database cannot be opened or the write fails.
    """
    data = ObservationInsert(
        content=content,
        title=title,
        source=f"hook:{tool_name}",
        session_id=session_id,
    )
    with open_database(db_path, busy_timeout_ms) as db:
        return capture_observation(
            db, project_hash, data, tool=tool_from_name(tool_name, project_hash), success=success
        )


def start_session(
    db_path: Path,
    project_hash: str,
    session_id: str,
    busy_timeout_ms: int = MIN_BUSY_TIMEOUT_MS,
) -> Session:
    """Record the start of an assistant session.

    Raises:
        StorageError: If the session cannot be created.
    """
    with open_database(db_path, busy_timeout_ms) as db:
        return SessionRepository(db.conn, project_hash).create(session_id)


def end_session(
    db_path: Path,
    project_hash: str,
    session_id: str,
    summary: Optional[str] = None,
    busy_timeout_ms: int = MIN_BUSY_TIMEOUT_MS,
) -> Optional[Session]:
    """Mark a session ended. Ending twice keeps the first end time.

    Returns:
        The session, or None if it was never started in this partition.
    """
    with open_database(db_path, busy_timeout_ms) as db:
        return SessionRepository(db.conn, project_hash).end(session_id, summary)
