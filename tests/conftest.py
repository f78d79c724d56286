"""Pytest configuration and shared fixtures for strata tests.

This module provides reusable fixtures for testing:
- env_setup: (autouse) Sets STRATA_* environment variables
- temp_dir: Temporary directory for database files
- db: Migrated database on a temporary file (vector support if available)
- keyword_db: Migrated database with sqlite-vec deliberately not loaded
- vec_db: Like db, but skips the test when sqlite-vec cannot load
- mock_embedder: Deterministic 384-dim vectors without Ollama

Usage:
    def test_something(db, mock_embedder):
        # Tests run against a real SQLite file
        pass
"""

import hashlib
import os
import tempfile
from collections.abc import Generator
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest

from strata.constants import EMBEDDING_DIM
from strata.storage import Database, ObservationInsert, ObservationRepository, open_database

PROJECT_A = "a" * 16
PROJECT_B = "b" * 16


@pytest.fixture(autouse=True)
def env_setup() -> Generator[None, None, None]:
    """Set STRATA_* environment variables for all tests.

    Keeps a developer's own .env or shell settings from leaking into
    test runs.
    """
    env_vars = {
        "STRATA_LOG_LEVEL": "DEBUG",
        "STRATA_EMBEDDING_BACKEND": "none",
        "STRATA_BUSY_TIMEOUT_MS": "5000",
        "STRATA_WORKER_INTERVAL_SECONDS": "0.05",
        "STRATA_WORKER_BATCH_SIZE": "10",
        "STRATA_TOPIC_ENABLED": "true",
        "STRATA_TOPIC_SENSITIVITY_PRESET": "balanced",
    }
    # Store original values
    original = {k: os.environ.get(k) for k in env_vars}
    os.environ.update(env_vars)
    yield
    # Restore original values
    for key, value in original.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


# Configure pytest-asyncio
pytest_plugins = ["pytest_asyncio"]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test databases.

    Yields:
        Path: Path to the temporary directory (cleaned up after test)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    return temp_dir / "strata.db"


@pytest.fixture
def db(db_path: Path) -> Generator[Database, None, None]:
    """Open a migrated database on a temporary file."""
    database = open_database(db_path)
    yield database
    database.close()


@pytest.fixture
def keyword_db(db_path: Path) -> Generator[Database, None, None]:
    """Open a migrated database without loading sqlite-vec."""
    database = open_database(db_path, load_vector_extension=False)
    yield database
    database.close()


@pytest.fixture
def vec_db(db: Database) -> Database:
    """The db fixture, or skip when sqlite-vec is unavailable here."""
    if not db.has_vector_support:
        pytest.skip("sqlite-vec extension not loadable in this environment")
    return db


@pytest.fixture
def repo(db: Database) -> ObservationRepository:
    return ObservationRepository(db.conn, PROJECT_A, has_vector_support=db.has_vector_support)


def fake_vector(text: str) -> list[float]:
    """Deterministic unit vector derived from the text's sha256."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "little")
    vector = np.random.default_rng(seed).standard_normal(EMBEDDING_DIM)
    return (vector / np.linalg.norm(vector)).tolist()


def axis_vector(index: int) -> list[float]:
    """Unit vector along one axis; distinct axes are orthogonal."""
    vector = [0.0] * EMBEDDING_DIM
    vector[index] = 1.0
    return vector


@pytest.fixture
def mock_embedder() -> MagicMock:
    """Create a mock embedding provider for testing without Ollama.

    The mock implements the EmbeddingProvider protocol:
    - name: provider label stored with each vector
    - embed_texts(texts: list[str]) -> list[list[float]] - batch embedding
    - embed_query(text: str) -> list[float] - query embedding
    - health_check() -> bool
    - close() -> None

    Returns:
        MagicMock: A mock embedder implementing EmbeddingProvider protocol
    """
    embedder = MagicMock()
    embedder.name = "fake:test"
    embedder.embed_query = MagicMock(side_effect=fake_vector)
    embedder.embed_texts = MagicMock(side_effect=lambda texts: [fake_vector(t) for t in texts])
    embedder.health_check = MagicMock(return_value=True)
    embedder.close = MagicMock()
    return embedder


def make_observation(content: str, source: str = "manual", **kwargs) -> ObservationInsert:
    return ObservationInsert(content=content, source=source, **kwargs)
