"""Keyword search over observations (FTS5, BM25).

User text is never passed to MATCH as written. sanitize_query() keeps only
word-like tokens, drops FTS5 operators and quotes each surviving token, so
no input can produce an FTS syntax error. A query with nothing left after
sanitizing returns no results instead of matching everything.
"""

import logging
import re
import sqlite3
from typing import Any, Optional

from strata.constants import (
    BM25_CONTENT_WEIGHT,
    BM25_TITLE_WEIGHT,
    SNIPPET_CLOSE,
    SNIPPET_ELLIPSIS,
    SNIPPET_OPEN,
    SNIPPET_TOKENS,
)
from strata.storage.errors import StorageError
from strata.storage.observations import observation_columns, row_to_observation
from strata.storage.types import MatchType, SearchResult

logger = logging.getLogger(__name__)

__all__ = ["SearchEngine", "sanitize_query"]

_FTS_SPECIAL = re.compile(r'["*()^{}\[\]:+]')
_NON_WORD = re.compile(r"[^\w\-]")
_RESERVED = frozenset({"NEAR", "OR", "AND", "NOT"})


def _clean_tokens(query: str) -> list[str]:
    tokens: list[str] = []
    for raw in query.split():
        token = _FTS_SPECIAL.sub("", raw)
        if token.upper() in _RESERVED:
            continue
        token = _NON_WORD.sub("", token)
        # A token of only hyphens has nothing to match
        if not re.search(r"\w", token):
            continue
        tokens.append(token)
    return tokens


def sanitize_query(query: str) -> Optional[str]:
    """Turn free text into a safe FTS5 MATCH expression.

    Each surviving token becomes a quoted string, joined by spaces
    (implicit AND). Quoting keeps hyphenated words like 'wal-mode' from
    being read as column filters or operators.

    Args:
        query: Raw user query

    Returns:
        MATCH expression, or None when no searchable token remains.

    Example:
        >>> sanitize_query('sqlite AND "wal-mode" NOT*')
        '"sqlite" "wal-mode"'
        >>> sanitize_query("OR AND NOT") is None
        True
    """
    tokens = _clean_tokens(query)
    if not tokens:
        return None
    return " ".join(f'"{token}"' for token in tokens)


class SearchEngine:
    """BM25 keyword search scoped to one partition.

    Title matches weigh twice as much as content matches. Soft-deleted and
    noise-classified observations are never returned.

    Args:
        conn: Connection from an open Database
        project_hash: Partition to search
    """

    def __init__(self, conn: sqlite3.Connection, project_hash: str):
        self._conn = conn
        self.project_hash = project_hash

    def _run(
        self, match: str, limit: int, session_id: Optional[str]
    ) -> list[SearchResult]:
        session_clause = ""
        params: list[Any] = [match, self.project_hash]
        if session_id is not None:
            session_clause = " AND o.session_id = ?"
            params.append(session_id)
        params.append(limit)

        sql = f"""
            SELECT {observation_columns("o")},
                   bm25(observations_fts, {BM25_TITLE_WEIGHT}, {BM25_CONTENT_WEIGHT}) AS rank,
                   snippet(observations_fts, 1, ?, ?, ?, {SNIPPET_TOKENS}) AS snippet
            FROM observations_fts
            JOIN observations o ON o.rowid = observations_fts.rowid
            WHERE observations_fts MATCH ?
              AND o.project_hash = ?
              AND o.deleted_at IS NULL
              AND (o.classification IS NULL OR o.classification != 'noise')
              {session_clause}
            ORDER BY rank
            LIMIT ?
        """
        try:
            rows = self._conn.execute(
                sql, [SNIPPET_OPEN, SNIPPET_CLOSE, SNIPPET_ELLIPSIS, *params]
            ).fetchall()
        except sqlite3.OperationalError as e:
            raise StorageError(f"Failed to search FTS: {e}") from e

        return [
            SearchResult(
                observation=row_to_observation(row),
                score=abs(row["rank"]),
                match_type=MatchType.FTS,
                snippet=row["snippet"] or "",
            )
            for row in rows
        ]

    def search_keyword(
        self, query: str, limit: int = 20, session_id: Optional[str] = None
    ) -> list[SearchResult]:
        """Ranked keyword search.

        Args:
            query: Free text; sanitized before matching
            limit: Maximum results
            session_id: Restrict to one session

        Returns:
            Results ordered best first, score = |bm25|. Empty when the query
            has no searchable tokens.

        Raises:
            StorageError: If the index query itself fails.
        """
        match = sanitize_query(query)
        if match is None:
            logger.debug(f"Query {query!r} sanitized to nothing")
            return []
        return self._run(match, limit, session_id)

    def search_by_prefix(self, prefix: str, limit: int = 20) -> list[SearchResult]:
        """Match words starting with each token of prefix (type-ahead)."""
        tokens = _clean_tokens(prefix)
        if not tokens:
            return []
        match = " ".join(f'"{token}"*' for token in tokens)
        return self._run(match, limit, None)

    def rebuild_index(self) -> None:
        """Rebuild the observation text index from the observations table."""
        try:
            self._conn.execute("INSERT INTO observations_fts(observations_fts) VALUES('rebuild')")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to rebuild FTS index: {e}") from e
