"""Background worker for the serving process.

This module provides the BackgroundWorker that catches the store up with
what the capture path wrote: it embeds new observations, feeds their
vectors to topic shift detection and embeds described tools, without
blocking the event loop.

Architecture:
    Worker runs as asyncio.create_task in the serving process lifecycle
    Tick -> find unvectorized rows -> embed in executor -> store vectors
         -> topic detection -> tool embeddings -> periodic staleness sweep
    Graceful handling when the embedding provider is unavailable
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING

from strata.config import StrataSettings, TopicDetectionSettings
from strata.constants import TOPIC_SHIFT_SOURCES
from strata.intelligence import AdaptiveThresholdEngine, DecisionLogger, TopicShiftDetector
from strata.storage.embeddings import EmbeddingStore
from strata.storage.errors import StorageError
from strata.storage.observations import ObservationRepository
from strata.storage.threshold_store import ThresholdStore
from strata.storage.tool_registry import ToolRegistryRepository
from strata.storage.types import Observation

if TYPE_CHECKING:
    from strata.embedding.provider import EmbeddingProvider
    from strata.storage.database import Database

logger = logging.getLogger(__name__)

__all__ = ["BackgroundWorker"]

EMBEDDING_VERSION = "1"


class BackgroundWorker:
    """Periodic catch-up loop for one partition.

    Embedding calls run in the default executor and never inside a write
    transaction, so capture processes are only ever blocked by the short
    writes that follow.

    Attributes:
        db: Open database shared with the serving process.
        project_hash: Partition this worker serves.
        provider: Embedding provider, or None for keyword-only operation.
        interval: Seconds between tick starts.
    """

    def __init__(
        self,
        db: Database,
        project_hash: str,
        provider: EmbeddingProvider | None = None,
        settings: StrataSettings | None = None,
        topic_settings: TopicDetectionSettings | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            db: Open database.
            project_hash: Partition to process.
            provider: Embedding provider; None disables embedding.
            settings: Interval, batch sizes and sweep cadence.
            topic_settings: Sensitivity dial for topic detection.
        """
        settings = settings or StrataSettings()
        self.db = db
        self.project_hash = project_hash
        self.provider = provider
        self.interval = settings.worker_interval_seconds
        self.batch_size = settings.worker_batch_size
        self.tool_batch_size = settings.worker_tool_batch_size
        self.sweep_every = settings.staleness_sweep_every
        self.stale_after_days = settings.stale_after_days
        self.topic_settings = topic_settings or TopicDetectionSettings()

        self.observations = ObservationRepository(
            db.conn, project_hash, has_vector_support=db.has_vector_support
        )
        self.embeddings = EmbeddingStore(db)
        self.registry = ToolRegistryRepository(db)
        self.decisions = DecisionLogger(db.conn)
        self.thresholds = ThresholdStore(db.conn)

        self._session_id: str | None = None
        self._detector: TopicShiftDetector | None = None

        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._running = False
        self._start_time: datetime | None = None
        self._ticks = 0
        self._processed = 0
        self._failed = 0
        self._shifts = 0
        self._overruns = 0
        self._last_tick_seconds = 0.0

    # =========================================================================
    # Topic detection state
    # =========================================================================

    def _detector_for(self, session_id: str | None) -> TopicShiftDetector:
        """Detector for the session an observation belongs to.

        A new session checkpoints the previous one and seeds a fresh
        engine from the partition's history.
        """
        if self._detector is not None and session_id == self._session_id:
            return self._detector
        self._checkpoint_session()
        engine = AdaptiveThresholdEngine(self.topic_settings, self.thresholds)
        engine.seed(self.project_hash)
        self._detector = TopicShiftDetector(engine)
        self._session_id = session_id
        return self._detector

    def _checkpoint_session(self) -> None:
        if self._detector is None:
            return
        self._detector.engine.checkpoint(self.project_hash, self._session_id)

    # =========================================================================
    # Tick
    # =========================================================================

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.provider.embed_texts, texts)

    async def _vector_for(self, observation: Observation) -> list[float] | None:
        """Existing vector column, or a fresh embedding."""
        if observation.embedding is not None:
            return observation.embedding
        if self.provider is None:
            return None
        try:
            vectors = await self._embed([observation.embedding_text()])
        except Exception as e:
            self._failed += 1
            logger.warning(f"Embedding failed for {observation.id}: {e}")
            return None
        try:
            self.observations.update(
                observation.id,
                embedding=vectors[0],
                embedding_model=self.provider.name,
                embedding_version=EMBEDDING_VERSION,
            )
        except StorageError as e:
            self._failed += 1
            logger.warning(f"Failed to store vector for {observation.id}: {e}")
            return None
        return vectors[0]

    async def _process_observations(self) -> int:
        """Vectorize one batch and run topic detection over it.

        Rows that already carry a vector column are only copied into the
        vector index and never reach topic detection again.

        Returns:
            Number of observations that received a vector.
        """
        ids = self.embeddings.find_unvectorized(self.batch_size, self.project_hash)
        if not ids:
            return 0

        processed = 0
        shift_this_tick = False
        for observation_id in ids:
            observation = self.observations.get_by_id(observation_id)
            if observation is None:
                continue
            backfill = observation.embedding is not None
            vector = await self._vector_for(observation)
            if vector is None:
                continue
            if self.embeddings.available:
                self.embeddings.upsert(observation.id, vector)
            processed += 1

            # At most one shift per tick
            if backfill or shift_this_tick or observation.source not in TOPIC_SHIFT_SOURCES:
                continue
            decision = self._detector_for(observation.session_id).observe(vector)
            if decision is None:
                continue
            self.decisions.log(
                decision, self.project_hash, observation.session_id, observation.id
            )
            if decision.shifted:
                shift_this_tick = True
                self._shifts += 1
                logger.info(
                    f"Topic shift at {observation.id} "
                    f"(distance={decision.distance:.3f}, threshold={decision.threshold:.3f})"
                )
        return processed

    async def _process_tools(self) -> int:
        if self.provider is None or not self.db.has_vector_support:
            return 0
        tools = self.registry.find_unembedded(self.tool_batch_size)
        if not tools:
            return 0
        try:
            vectors = await self._embed([f"{tool.name} {tool.description}" for tool in tools])
        except Exception as e:
            logger.warning(f"Tool embedding failed: {e}")
            return 0
        return sum(
            1 for tool, vector in zip(tools, vectors) if self.registry.store_embedding(tool.id, vector)
        )

    async def tick(self) -> int:
        """Run one processing cycle.

        Returns:
            Number of observations vectorized.
        """
        started = time.monotonic()
        try:
            processed = await self._process_observations()
            self._processed += processed
            await self._process_tools()
            self._ticks += 1
            if self.sweep_every and self._ticks % self.sweep_every == 0:
                self.registry.sweep_staleness(self.stale_after_days)
            return processed
        finally:
            self._last_tick_seconds = time.monotonic() - started
            if self._last_tick_seconds > self.interval:
                self._overruns += 1
                logger.debug(f"Tick overran interval: {self._last_tick_seconds:.2f}s")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _worker_loop(self) -> None:
        """Main loop: one tick per interval until stopped."""
        self._start_time = datetime.now()
        logger.info(f"Worker started (interval={self.interval}s, batch={self.batch_size})")

        while self._running:
            started = time.monotonic()
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Worker tick failed: {e}", exc_info=True)

            delay = max(0.0, self.interval - (time.monotonic() - started))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info("Worker stopped")

    def start(self) -> None:
        """Start the worker as a background task."""
        if self._task is None or self._task.done():
            self._running = True
            self._stopping = asyncio.Event()
            self._task = asyncio.create_task(self._worker_loop())

    async def stop(self) -> None:
        """Stop the worker gracefully.

        A tick in progress runs to completion and no new tick starts. The
        current session's threshold state is checkpointed.
        """
        self._running = False
        if self._task and not self._task.done():
            self._stopping.set()
            await self._task
        self._checkpoint_session()
        self._detector = None

    def stats(self) -> dict[str, object]:
        """Counters for the status surface."""
        return {
            "ticks": self._ticks,
            "processed": self._processed,
            "failed": self._failed,
            "shifts": self._shifts,
            "backlog": self.embeddings.backlog(),
            "last_tick_seconds": round(self._last_tick_seconds, 3),
            "overruns": self._overruns,
        }

    def status(self) -> dict[str, object]:
        """Get worker status.

        Returns:
            Dictionary with worker status information.
        """
        return {
            "running": self._running,
            "start_time": self._start_time.isoformat() if self._start_time else None,
            "interval": self.interval,
            "embedding": self.provider.name if self.provider is not None else None,
            "vector_support": self.db.has_vector_support,
            **self.stats(),
        }
