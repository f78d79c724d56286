"""Type definitions for the storage layer.

Pydantic models for rows read from and written to the store:
- Observation / ObservationInsert: the partitioned record
- Session: a bounded work session inside a partition
- SearchResult: a ranked hit with snippet and match provenance
- ToolRegistryEntry / DiscoveredTool / ToolUsageEvent: the usage ledger

Timestamps are kept as the text SQLite produces with datetime('now')
("YYYY-MM-DD HH:MM:SS", UTC) so they compare lexically in SQL.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from strata.constants import EMBEDDING_DIM


class Classification(str, Enum):
    """Labels produced by the external classifier. NOISE is never searched."""

    DISCOVERY = "discovery"
    PROBLEM = "problem"
    SOLUTION = "solution"
    NOISE = "noise"


class ObservationKind(str, Enum):
    """Coarse category of an observation, derived from its source."""

    CHANGE = "change"
    REFERENCE = "reference"
    FINDING = "finding"
    DECISION = "decision"
    VERIFICATION = "verification"


class MatchType(str, Enum):
    """How a search result was matched.

    - VECTOR: Found via vector similarity search only
    - FTS: Found via full-text search only
    - HYBRID: Found by both and fused
    """

    VECTOR = "vector"
    FTS = "fts"
    HYBRID = "hybrid"


class ToolScope(str, Enum):
    GLOBAL = "global"
    PROJECT = "project"
    PLUGIN = "plugin"


class ToolStatus(str, Enum):
    ACTIVE = "active"
    STALE = "stale"
    DEMOTED = "demoted"


def _check_vector(v: Optional[list[float]]) -> Optional[list[float]]:
    if v is not None and len(v) != EMBEDDING_DIM:
        raise ValueError(f"Embedding must have {EMBEDDING_DIM} dimensions, got {len(v)}")
    return v


class Observation(BaseModel):
    """A stored observation row.

    Attributes:
        rowid: Integer key shared with the text index
        id: 32-char hex identifier exposed to callers
        project_hash: Partition key
        content: Observation body
        title: Optional short title (weighted 2x in keyword ranking)
        source: Provenance tag such as 'hook:Write' or 'manual'
        kind: Coarse category
        session_id: Owning session, if any
        classification: Classifier label, None until classified
        embedding: Stored vector, None until the background loop embeds it
        deleted_at: Soft-delete marker
    """

    model_config = ConfigDict(frozen=False)

    rowid: int
    id: str
    project_hash: str
    content: str
    title: Optional[str] = None
    source: str = "unknown"
    kind: ObservationKind = ObservationKind.FINDING
    session_id: Optional[str] = None
    classification: Optional[Classification] = None
    classified_at: Optional[str] = None
    embedding: Optional[list[float]] = None
    embedding_model: Optional[str] = None
    embedding_version: Optional[str] = None
    created_at: str
    updated_at: str
    deleted_at: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def embedding_text(self) -> str:
        """Text handed to the embedder: title and content on separate lines."""
        if self.title:
            return f"{self.title}\n{self.content}"
        return self.content


class ObservationInsert(BaseModel):
    """Fields accepted when creating an observation."""

    content: str
    title: Optional[str] = None
    source: str = "unknown"
    kind: Optional[ObservationKind] = None  # derived from source when omitted
    session_id: Optional[str] = None
    embedding: Optional[list[float]] = None
    embedding_model: Optional[str] = None
    embedding_version: Optional[str] = None

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        """Validate that content is not empty."""
        if not v or not v.strip():
            raise ValueError("Content cannot be empty or whitespace-only")
        return v

    @field_validator("embedding")
    @classmethod
    def validate_embedding(cls, v: Optional[list[float]]) -> Optional[list[float]]:
        return _check_vector(v)


class Session(BaseModel):
    """A work session within a partition. Open while ended_at is None."""

    id: str
    project_hash: str
    started_at: str
    ended_at: Optional[str] = None
    summary: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


class SearchResult(BaseModel):
    """A ranked search hit.

    Attributes:
        observation: The matched observation
        score: Relevance (abs(bm25) for keyword-only, fused RRF score otherwise)
        match_type: Which index or indexes produced the hit
        snippet: Highlighted excerpt
    """

    observation: Observation
    score: float = Field(ge=0.0)
    match_type: MatchType
    snippet: str = ""


class DiscoveredTool(BaseModel):
    """A tool seen in configuration or usage, before it is persisted."""

    name: str
    tool_type: str
    scope: ToolScope
    source: str
    project_hash: Optional[str] = None
    description: Optional[str] = None
    server_name: Optional[str] = None


class ToolRegistryEntry(BaseModel):
    """A persisted registry row."""

    id: int
    name: str
    tool_type: str
    scope: ToolScope
    source: str
    project_hash: Optional[str] = None
    description: Optional[str] = None
    server_name: Optional[str] = None
    usage_count: int = 0
    last_used_at: Optional[str] = None
    discovered_at: str
    updated_at: str
    status: ToolStatus = ToolStatus.ACTIVE


class ToolUsageEvent(BaseModel):
    """One recorded tool invocation."""

    id: int
    tool_name: str
    session_id: Optional[str] = None
    project_hash: Optional[str] = None
    success: bool = True
    created_at: str


class ToolSearchResult(BaseModel):
    """A registry entry returned from tool search."""

    tool: ToolRegistryEntry
    score: float
    match_type: MatchType
