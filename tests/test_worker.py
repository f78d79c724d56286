"""Tests for the background worker.

This module tests:
- Observation embedding per tick (vector table or embedding column)
- Topic shift decisions, at most one shift per tick
- Threshold checkpoints when the session changes
- Tool embedding and the periodic staleness sweep
- Start/stop lifecycle and status reporting
"""

import asyncio

import pytest
from conftest import PROJECT_A, PROJECT_B, axis_vector, make_observation

from strata.config import StrataSettings, TopicDetectionSettings
from strata.daemon import BackgroundWorker
from strata.intelligence import DecisionLogger
from strata.storage import (
    DiscoveredTool,
    ObservationRepository,
    ThresholdStore,
    ToolRegistryRepository,
    ToolScope,
    ToolStatus,
    open_database,
)
from strata.storage.embeddings import EmbeddingStore


def _axis_embedder(mock_embedder, axes: dict[str, int]):
    """Make the mock embed each text onto the axis named by its first word."""
    mock_embedder.embed_texts.side_effect = lambda texts: [
        axis_vector(axes[text.split()[0]]) for text in texts
    ]
    return mock_embedder


# ============================================================================
# Tick
# ============================================================================


class TestTick:
    """Test a single processing cycle."""

    @pytest.mark.asyncio
    async def test_embeds_new_observations(self, db, repo: ObservationRepository, mock_embedder) -> None:
        obs = repo.create(make_observation("Switched journal mode to WAL"))
        worker = BackgroundWorker(db, PROJECT_A, provider=mock_embedder)

        assert await worker.tick() == 1

        stored = repo.get_by_id(obs.id)
        assert stored.embedding is not None
        assert stored.embedding_model == "fake:test"
        assert stored.embedding_version == "1"
        assert EmbeddingStore(db).backlog() == 0
        assert await worker.tick() == 0

    @pytest.mark.asyncio
    async def test_keyword_only_store_keeps_vector_column(self, keyword_db, mock_embedder) -> None:
        repo = ObservationRepository(keyword_db.conn, PROJECT_A)
        obs = repo.create(make_observation("no vector table here"))
        worker = BackgroundWorker(keyword_db, PROJECT_A, provider=mock_embedder)

        assert await worker.tick() == 1
        assert repo.get_by_id(obs.id).embedding is not None

    @pytest.mark.asyncio
    async def test_existing_column_vector_reused(self, vec_db, mock_embedder) -> None:
        repo = ObservationRepository(vec_db.conn, PROJECT_A, has_vector_support=True)
        obs = repo.create(make_observation("embedded at capture", embedding=axis_vector(7)))
        worker = BackgroundWorker(vec_db, PROJECT_A, provider=mock_embedder)

        assert await worker.tick() == 1
        mock_embedder.embed_texts.assert_not_called()
        assert EmbeddingStore(vec_db).has_vector(obs.id)

    @pytest.mark.asyncio
    async def test_only_own_partition(self, db, mock_embedder) -> None:
        ObservationRepository(db.conn, PROJECT_B).create(make_observation("someone else's"))
        worker = BackgroundWorker(db, PROJECT_A, provider=mock_embedder)
        assert await worker.tick() == 0

    @pytest.mark.asyncio
    async def test_without_provider_nothing_embedded(self, db, repo: ObservationRepository) -> None:
        repo.create(make_observation("waits for an embedder"))
        worker = BackgroundWorker(db, PROJECT_A)

        assert await worker.tick() == 0
        assert worker.stats()["backlog"] == 1

    @pytest.mark.asyncio
    async def test_embedding_failure_counted(self, db, repo: ObservationRepository, mock_embedder) -> None:
        repo.create(make_observation("unlucky"))
        mock_embedder.embed_texts.side_effect = RuntimeError("model not loaded")
        worker = BackgroundWorker(db, PROJECT_A, provider=mock_embedder)

        assert await worker.tick() == 0
        stats = worker.stats()
        assert stats["failed"] == 1
        assert stats["backlog"] == 1


# ============================================================================
# Topic detection
# ============================================================================


class TestTopicDetection:
    """Test topic shift detection inside the tick."""

    @pytest.mark.asyncio
    async def test_one_shift_per_tick(self, db, repo: ObservationRepository, mock_embedder) -> None:
        _axis_embedder(mock_embedder, {"cache": 0, "auth": 1, "deploy": 2})
        for content in ("cache sizing", "cache eviction", "auth tokens", "deploy script"):
            repo.create(make_observation(content, source="hook:Edit", session_id="s-1"))
        worker = BackgroundWorker(db, PROJECT_A, provider=mock_embedder)

        assert await worker.tick() == 4

        decisions = DecisionLogger(db.conn).recent(PROJECT_A)
        # First vector has nothing to compare to; the jump to "deploy" comes
        # after this tick's shift and is not evaluated
        assert len(decisions) == 2
        assert [d["shifted"] for d in decisions] == [True, False]
        assert worker.stats()["shifts"] == 1

    @pytest.mark.asyncio
    async def test_vector_backfill_not_detected_again(self, db_path, mock_embedder) -> None:
        _axis_embedder(mock_embedder, {"cache": 0, "auth": 1})
        with open_database(db_path, load_vector_extension=False) as keyword_db:
            repo = ObservationRepository(keyword_db.conn, PROJECT_A)
            for content in ("cache sizing", "cache eviction", "auth tokens", "auth refresh"):
                repo.create(make_observation(content, source="hook:Edit", session_id="s-1"))
            await BackgroundWorker(keyword_db, PROJECT_A, provider=mock_embedder).tick()
            logged = len(DecisionLogger(keyword_db.conn).recent(PROJECT_A))
        assert logged > 0

        with open_database(db_path) as vec_db:
            if not vec_db.has_vector_support:
                pytest.skip("sqlite-vec extension not loadable in this environment")
            worker = BackgroundWorker(vec_db, PROJECT_A, provider=mock_embedder)

            assert await worker.tick() == 4

            assert EmbeddingStore(vec_db).backlog() == 0
            assert len(DecisionLogger(vec_db.conn).recent(PROJECT_A)) == logged
            assert worker.stats()["shifts"] == 0
        # Column vectors were reused, nothing re-embedded
        assert mock_embedder.embed_texts.call_count == 4

    @pytest.mark.asyncio
    async def test_other_sources_skip_detection(self, db, repo: ObservationRepository, mock_embedder) -> None:
        _axis_embedder(mock_embedder, {"read": 0, "fetched": 1})
        repo.create(make_observation("read config.py", source="hook:Read"))
        repo.create(make_observation("fetched docs", source="hook:WebFetch"))
        worker = BackgroundWorker(db, PROJECT_A, provider=mock_embedder)

        assert await worker.tick() == 2
        assert DecisionLogger(db.conn).recent(PROJECT_A) == []

    @pytest.mark.asyncio
    async def test_session_change_checkpoints(self, db, repo: ObservationRepository, mock_embedder) -> None:
        _axis_embedder(mock_embedder, {"first": 0, "second": 0, "third": 1})
        repo.create(make_observation("first edit", source="hook:Edit", session_id="s-1"))
        repo.create(make_observation("second edit", source="hook:Edit", session_id="s-1"))
        repo.create(make_observation("third edit", source="hook:Edit", session_id="s-2"))
        worker = BackgroundWorker(db, PROJECT_A, provider=mock_embedder)

        await worker.tick()

        assert ThresholdStore(db.conn).load_historical_seed(PROJECT_A) is not None
        # The new session starts without a previous vector
        assert len(DecisionLogger(db.conn).recent(PROJECT_A)) == 1

    @pytest.mark.asyncio
    async def test_disabled_detection_never_shifts(
        self, db, repo: ObservationRepository, mock_embedder
    ) -> None:
        _axis_embedder(mock_embedder, {"a": 0, "b": 1})
        repo.create(make_observation("a", source="manual"))
        repo.create(make_observation("b", source="manual"))
        worker = BackgroundWorker(
            db, PROJECT_A, provider=mock_embedder, topic_settings=TopicDetectionSettings(enabled=False)
        )

        await worker.tick()

        assert worker.stats()["shifts"] == 0


# ============================================================================
# Tools
# ============================================================================


class TestToolMaintenance:
    """Test tool embedding and the staleness sweep."""

    @pytest.mark.asyncio
    async def test_described_tools_embedded(self, vec_db, mock_embedder) -> None:
        registry = ToolRegistryRepository(vec_db)
        registry.upsert(
            DiscoveredTool(
                name="Grep",
                tool_type="builtin",
                scope=ToolScope.GLOBAL,
                source="config:builtin",
                description="Search file contents",
            )
        )
        worker = BackgroundWorker(vec_db, PROJECT_A, provider=mock_embedder)

        await worker.tick()

        assert registry.find_unembedded() == []
        mock_embedder.embed_texts.assert_called_with(["Grep Search file contents"])

    @pytest.mark.asyncio
    async def test_periodic_sweep(self, db) -> None:
        registry = ToolRegistryRepository(db)
        registry.upsert(
            DiscoveredTool(name="idle", tool_type="builtin", scope=ToolScope.GLOBAL, source="config:x")
        )
        db.conn.execute("UPDATE tool_registry SET discovered_at = datetime('now', '-90 days')")
        worker = BackgroundWorker(
            db, PROJECT_A, settings=StrataSettings(staleness_sweep_every=2, stale_after_days=30)
        )

        await worker.tick()
        assert registry.get_by_name("idle").status == ToolStatus.ACTIVE
        await worker.tick()
        assert registry.get_by_name("idle").status == ToolStatus.STALE


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    """Test start, stop and status."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, db, repo: ObservationRepository, mock_embedder) -> None:
        repo.create(make_observation("picked up by the loop"))
        worker = BackgroundWorker(db, PROJECT_A, provider=mock_embedder)

        worker.start()
        assert worker.status()["running"] is True
        await asyncio.sleep(0.2)
        await worker.stop()

        status = worker.status()
        assert status["running"] is False
        assert status["start_time"] is not None
        assert status["ticks"] >= 1
        assert status["processed"] == 1
        assert status["embedding"] == "fake:test"

    @pytest.mark.asyncio
    async def test_stop_interrupts_idle_wait(self, db) -> None:
        worker = BackgroundWorker(db, PROJECT_A, settings=StrataSettings(worker_interval_seconds=60))
        worker.start()
        await asyncio.sleep(0.05)
        await asyncio.wait_for(worker.stop(), timeout=2)
        assert worker.stats()["ticks"] == 1

    @pytest.mark.asyncio
    async def test_stop_before_start(self, db) -> None:
        worker = BackgroundWorker(db, PROJECT_A)
        await worker.stop()
        assert worker.status()["running"] is False

    def test_status_keys(self, db) -> None:
        status = BackgroundWorker(db, PROJECT_A).status()
        assert set(status) == {
            "running",
            "start_time",
            "interval",
            "embedding",
            "vector_support",
            "ticks",
            "processed",
            "failed",
            "shifts",
            "backlog",
            "last_tick_seconds",
            "overruns",
        }
        assert status["embedding"] is None
