"""Hybrid retrieval: keyword and vector rankings fused with RRF.

Reciprocal Rank Fusion scores each id by summing 1 / (k + rank) over every
ranking it appears in (rank is 1-based). It uses positions only, so BM25
and cosine scores never need to be put on a common scale.

Keyword search always runs. Vector search runs only when the database has
vector support and the embedder produced a query vector; otherwise, or
when the vector side finds nothing, keyword results are returned as is.

Example:
    >>> hybrid = HybridSearch(db, project_hash, embedder=provider)
    >>> results = hybrid.search("wal checkpoint starvation", limit=10)
    >>> results[0].match_type
    <MatchType.HYBRID: 'hybrid'>
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Optional

from strata.constants import RRF_K, VECTOR_OVERFETCH, VECTOR_SNIPPET_CHARS
from strata.storage.embeddings import EmbeddingStore
from strata.storage.observations import ObservationRepository
from strata.storage.search import SearchEngine
from strata.storage.types import Classification, MatchType, SearchResult

if TYPE_CHECKING:
    from strata.embedding.provider import EmbeddingProvider
    from strata.storage.database import Database

logger = logging.getLogger(__name__)

__all__ = ["HybridSearch", "reciprocal_rank_fusion"]


def reciprocal_rank_fusion(
    rankings: Sequence[Sequence[str]], k: int = RRF_K
) -> list[tuple[str, float]]:
    """Fuse ranked id lists.

    Args:
        rankings: Each a list of ids, best first
        k: Smoothing constant; larger values flatten the rank curve

    Returns:
        (id, score) pairs ordered by descending score. Equal scores keep
        the order in which ids were first seen, so the output is
        deterministic.
    """
    scores: dict[str, float] = {}
    for ranking in rankings:
        for rank, item_id in enumerate(ranking, 1):
            scores[item_id] = scores.get(item_id, 0.0) + 1.0 / (k + rank)
    # dicts keep insertion order and sorted() is stable
    return sorted(scores.items(), key=lambda item: item[1], reverse=True)


def _vector_snippet(content: str) -> str:
    return content.replace("\n", " ")[:VECTOR_SNIPPET_CHARS]


class HybridSearch:
    """Keyword + vector search for one partition.

    Args:
        db: Open database
        project_hash: Partition to search
        embedder: Provider for query vectors; None means keyword-only
    """

    def __init__(
        self,
        db: Database,
        project_hash: str,
        embedder: Optional[EmbeddingProvider] = None,
    ):
        self.db = db
        self.project_hash = project_hash
        self.embedder = embedder
        self.keyword = SearchEngine(db.conn, project_hash)
        self.vectors = EmbeddingStore(db)
        self.observations = ObservationRepository(
            db.conn, project_hash, has_vector_support=db.has_vector_support
        )

    def _query_vector(self, query: str) -> Optional[list[float]]:
        if self.embedder is None or not self.db.has_vector_support:
            return None
        try:
            return self.embedder.embed_query(query)
        except Exception as e:
            logger.debug(f"Query embedding failed, keyword-only: {e}")
            return None

    def search(
        self, query: str, limit: int = 20, session_id: Optional[str] = None
    ) -> list[SearchResult]:
        """Search the partition.

        Args:
            query: Free text
            limit: Maximum results
            session_id: Restrict keyword hits to one session

        Returns:
            Results best first. match_type tells which index found each hit.
        """
        keyword_results = self.keyword.search_keyword(query, limit=limit, session_id=session_id)

        query_vector = self._query_vector(query)
        if query_vector is None:
            return keyword_results

        neighbours = self.vectors.knn(
            query_vector, self.project_hash, limit=limit * VECTOR_OVERFETCH
        )
        if not neighbours:
            return keyword_results

        keyword_by_id = {r.observation.id: r for r in keyword_results}
        vector_ids = [observation_id for observation_id, _ in neighbours]
        fused = reciprocal_rank_fusion([list(keyword_by_id), vector_ids])
        vector_set = set(vector_ids)

        results: list[SearchResult] = []
        for observation_id, score in fused:
            if len(results) >= limit:
                break
            keyword_hit = keyword_by_id.get(observation_id)
            if keyword_hit is not None:
                match_type = MatchType.HYBRID if observation_id in vector_set else MatchType.FTS
                results.append(
                    SearchResult(
                        observation=keyword_hit.observation,
                        score=score,
                        match_type=match_type,
                        snippet=keyword_hit.snippet,
                    )
                )
                continue

            observation = self.observations.get_by_id(observation_id)
            # Noise stays out of search on the vector side too
            if observation is None or observation.classification == Classification.NOISE:
                continue
            if session_id is not None and observation.session_id != session_id:
                continue
            results.append(
                SearchResult(
                    observation=observation,
                    score=score,
                    match_type=MatchType.VECTOR,
                    snippet=_vector_snippet(observation.content),
                )
            )

        return results
