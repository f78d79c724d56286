"""Strata configuration constants.

Split into two categories:
1. HARDCODED: Implementation details that don't change
2. DEFAULTS: Fallback values for settings read from environment (.env)
"""

from pathlib import Path

# =============================================================================
# HARDCODED CONSTANTS (implementation details)
# =============================================================================

# Vector width produced by the embedding collaborator (all-MiniLM class models)
EMBEDDING_DIM = 384

# Observation ids are 16 random bytes rendered as lowercase hex
FULL_ID_LENGTH = 32

# Reciprocal rank fusion smoothing constant
RRF_K = 60

# Vector results are over-fetched relative to the requested limit
VECTOR_OVERFETCH = 2

# bm25 column weights: title counts double against content
BM25_TITLE_WEIGHT = 2.0
BM25_CONTENT_WEIGHT = 1.0

# Snippet rendering for keyword hits
SNIPPET_OPEN = "<mark>"
SNIPPET_CLOSE = "</mark>"
SNIPPET_ELLIPSIS = "..."
SNIPPET_TOKENS = 32
VECTOR_SNIPPET_CHARS = 100

# Unclassified observations stay visible in listings for this long
UNCLASSIFIED_GRACE_SECONDS = 60

# Connection pragmas
MIN_BUSY_TIMEOUT_MS = 5000
CACHE_SIZE_KIB = -64000
WAL_AUTOCHECKPOINT_PAGES = 1000

# Adaptive threshold defaults
DEFAULT_EWMA_DISTANCE = 0.3
DEFAULT_EWMA_VARIANCE = 0.01
DEFAULT_EWMA_ALPHA = 0.3
DEFAULT_SENSITIVITY_MULTIPLIER = 1.5
DEFAULT_THRESHOLD_MIN = 0.15
DEFAULT_THRESHOLD_MAX = 0.6
THRESHOLD_FLOOR = 0.05
THRESHOLD_CEILING = 0.95
SEED_HISTORY_SESSIONS = 10

SENSITIVITY_PRESETS = {
    "sensitive": 1.0,
    "balanced": 1.5,
    "relaxed": 2.5,
}

# Only edits, shell commands and explicit saves drive topic detection
TOPIC_SHIFT_SOURCES = frozenset({"hook:Write", "hook:Edit", "hook:Bash", "manual"})

# Registry staleness sweep
DEMOTION_EVENT_WINDOW = 5
DEMOTION_FAILURE_THRESHOLD = 3

# =============================================================================
# DEFAULTS (overridable through STRATA_* environment variables)
# =============================================================================

DEFAULT_DATA_DIR = Path.home() / ".strata"
DEFAULT_SQLITE_PATH = DEFAULT_DATA_DIR / "strata.db"
DEFAULT_OLLAMA_HOST = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "all-minilm"
