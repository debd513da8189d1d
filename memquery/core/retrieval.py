"""
memquery Message Search

Search pipeline: metadata filter compilation + query embedding, query
assembly, execution with result validation, and optional MMR reranking.
"""

import dataclasses
import logging
import sqlite3
import threading
from typing import Optional

from memquery.core.db import _db, deserialize_embedding, resolve_query_embedding
from memquery.core.filters import compile_metadata_filter
from memquery.core.mmr import rerank_mmr
from memquery.core.query import ExecutableQuery, build_search_query
from memquery.errors import (
    InvalidQueryError,
    SearchCancelledError,
    StorageExecutionError,
)
from memquery.models import Message, SearchQuery, SearchResult, SearchType
from memquery.utils import load_metadata

logger = logging.getLogger(__name__)

# SQLite VM instructions between cancellation checks
PROGRESS_HANDLER_STEPS = 1000


# ============================================================================
# EXECUTION + RESULT VALIDATION
# ============================================================================

def _row_to_result(row: sqlite3.Row, query: ExecutableQuery) -> SearchResult:
    keys = row.keys()
    embedding = None
    if "embedding" in keys and row["embedding"] is not None:
        embedding = deserialize_embedding(row["embedding"])

    return SearchResult(
        message=Message(
            uuid=row["uuid"],
            session_id=row["session_id"],
            created_at=row["created_at"],
            role=row["role"],
            content=row["content"],
            metadata=load_metadata(row["metadata"]),
            token_count=row["token_count"] or 0,
        ),
        dist=row["dist"] if query.scored else None,
        embedding=embedding,
    )


def execute_search_query(
    db: sqlite3.Connection,
    query: ExecutableQuery,
    cancel: Optional[threading.Event] = None,
) -> list[SearchResult]:
    """
    Run an assembled search query and map rows to SearchResult.

    A set ``cancel`` event interrupts the running statement. Any storage
    failure raises StorageExecutionError; no partial results are returned.
    """
    if cancel is not None:
        if cancel.is_set():
            raise SearchCancelledError("search cancelled before query execution")
        db.set_progress_handler(lambda: 1 if cancel.is_set() else 0, PROGRESS_HANDLER_STEPS)

    try:
        rows = db.execute(query.sql, query.params).fetchall()
    except sqlite3.Error as exc:
        if cancel is not None and cancel.is_set():
            raise SearchCancelledError("search cancelled during query execution") from exc
        raise StorageExecutionError(f"memory search query failed: {exc}") from exc
    finally:
        if cancel is not None:
            db.set_progress_handler(None, 0)

    try:
        return [_row_to_result(row, query) for row in rows]
    except (ValueError, TypeError) as exc:
        raise StorageExecutionError(f"malformed row in search results: {exc}") from exc


def filter_valid_results(
    results: list[SearchResult],
    metadata: Optional[dict],
) -> list[SearchResult]:
    """
    Drop results without a distance, unless the query had a metadata filter.

    Metadata-only searches never compute a distance, so their rows are kept.
    """
    if metadata:
        return list(results)
    return [r for r in results if r.dist is not None]


# ============================================================================
# MAIN SEARCH FUNCTION
# ============================================================================

def _validate_query(session_id: str, query: Optional[SearchQuery], limit: int) -> SearchType:
    if query is None:
        raise InvalidQueryError("nil query received")
    if not session_id:
        raise InvalidQueryError("session_id is required")
    if not query.text and not query.metadata:
        raise InvalidQueryError("empty query: provide text and/or a metadata filter")
    if limit < 0 or query.limit < 0:
        raise InvalidQueryError("limit must be >= 0")

    try:
        search_type = SearchType(query.search_type)
    except ValueError as exc:
        raise InvalidQueryError(f"unknown search type: {query.search_type!r}") from exc

    if search_type == SearchType.MMR and not query.text:
        raise InvalidQueryError("mmr search requires query text")
    if not 0.0 <= query.mmr_lambda <= 1.0:
        raise InvalidQueryError(f"mmr_lambda must be in [0, 1], got {query.mmr_lambda}")

    return search_type


def search_messages(
    session_id: str,
    query: SearchQuery,
    limit: int = 0,
    cancel: Optional[threading.Event] = None,
) -> list[SearchResult]:
    """
    Search a session's messages by text similarity and/or metadata filter.

    Pipeline:
    1. Validate the query (text or metadata required)
    2. Compile the metadata filter (where tree + start_date/end_date)
    3. Embed the query text (if any)
    4. Assemble the SELECT: distance projection, session scope, soft-delete
       exclusion, sort (distance or recency), limit (x pool multiplier for MMR)
    5. Execute and drop unscored rows (unless metadata-filtered)
    6. MMR rerank (if requested)

    Args:
        session_id: Session whose messages are searched
        query: Text, metadata filter, search type, MMR lambda
        limit: Max results; 0 falls back to query.limit, then the configured default
        cancel: Set to abort the search while it waits on the provider or storage

    Returns:
        Results, most relevant first (or newest first for metadata-only queries)
    """
    import memquery
    config = memquery.get_config()

    search_type = _validate_query(session_id, query, limit)
    if query.search_type is not search_type:
        query = dataclasses.replace(query, search_type=search_type)

    limit = limit or query.limit or config.default_search_limit
    limit = min(limit, config.max_search_limit)

    mmr_lambda = query.mmr_lambda
    if search_type == SearchType.MMR and mmr_lambda == 0:
        mmr_lambda = config.mmr_lambda

    predicate = compile_metadata_filter(query.metadata)

    query_embedding = None
    if query.text:
        query_embedding = resolve_query_embedding(query.text, cancel)

    executable = build_search_query(
        session_id,
        query,
        predicate,
        query_embedding,
        limit=limit,
        pool_multiplier=config.mmr_pool_multiplier,
    )

    try:
        with _db() as db:
            results = execute_search_query(db, executable, cancel)
    except sqlite3.Error as exc:
        raise StorageExecutionError(f"could not open the message store: {exc}") from exc

    results = filter_valid_results(results, query.metadata)

    if search_type == SearchType.MMR:
        # Unscored rows (no stored embedding) can't be compared for diversity
        candidates = [r for r in results if r.embedding is not None]
        if len(candidates) < len(results):
            logger.debug("MMR: skipping %d candidates without embeddings",
                         len(results) - len(candidates))
        results = rerank_mmr(candidates, query_embedding, mmr_lambda, limit) if candidates else []

    logger.debug(
        "search_messages: session=%s type=%s limit=%d pool=%d returned=%d",
        session_id, search_type.value, limit, executable.limit, len(results),
    )
    return results
