"""Storage layer for Strata.

This package provides the embedded SQLite store with:
- WAL-mode connections tuned for one capture writer and one serving process
- Versioned migrations, gated on sqlite-vec availability
- FTS5 keyword search with BM25 ranking
- sqlite-vec cosine KNN over observation vectors
- Hybrid search combining both with reciprocal rank fusion
- Partition-scoped observation and session repositories
- A tool registry ledger with usage events

Example:
    >>> from strata.storage import open_database, ObservationRepository, ObservationInsert
    >>> db = open_database(Path("~/.strata/strata.db").expanduser())
    >>> repo = ObservationRepository(db.conn, project_hash)
    >>> obs = repo.create(ObservationInsert(content="Enabled WAL", source="manual"))
    >>> HybridSearch(db, project_hash).search("WAL")
"""

from strata.storage.database import Database, open_database
from strata.storage.embeddings import EmbeddingStore
from strata.storage.errors import MigrationError, StorageError
from strata.storage.hybrid import HybridSearch, reciprocal_rank_fusion
from strata.storage.observations import ObservationRepository
from strata.storage.search import SearchEngine, sanitize_query
from strata.storage.sessions import SessionRepository
from strata.storage.threshold_store import ThresholdStore
from strata.storage.tool_registry import ToolRegistryRepository
from strata.storage.types import (
    Classification,
    DiscoveredTool,
    MatchType,
    Observation,
    ObservationInsert,
    ObservationKind,
    SearchResult,
    Session,
    ToolRegistryEntry,
    ToolScope,
    ToolStatus,
)

__all__ = [
    "Classification",
    "Database",
    "DiscoveredTool",
    "EmbeddingStore",
    "HybridSearch",
    "MatchType",
    "MigrationError",
    "Observation",
    "ObservationInsert",
    "ObservationKind",
    "ObservationRepository",
    "SearchEngine",
    "SearchResult",
    "Session",
    "SessionRepository",
    "StorageError",
    "ThresholdStore",
    "ToolRegistryEntry",
    "ToolRegistryRepository",
    "ToolScope",
    "ToolStatus",
    "open_database",
    "reciprocal_rank_fusion",
    "sanitize_query",
]
