"""
memquery Search Query Assembly

Builds the single SELECT that backs a message search: base message columns,
optional distance/embedding projections, compiled metadata predicate, session
scope, soft-delete exclusion, sort and limit.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from memquery.core.db import serialize_embedding
from memquery.core.filters import Predicate
from memquery.models import SearchQuery, SearchType

logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = (
    "m.uuid AS uuid",
    "m.session_id AS session_id",
    "m.created_at AS created_at",
    "m.role AS role",
    "m.content AS content",
    "m.metadata AS metadata",
    "m.token_count AS token_count",
)


class SelectQuery:
    """Minimal composable SELECT builder with positional parameters."""

    def __init__(self, source: str):
        self._source = source
        self._columns: list[tuple[str, tuple]] = []
        self._where: list[Predicate] = []
        self._order: list[str] = []
        self._limit: Optional[int] = None

    def column(self, expr: str, *params) -> "SelectQuery":
        self._columns.append((expr, params))
        return self

    def where(self, predicate: Predicate) -> "SelectQuery":
        self._where.append(predicate)
        return self

    def order(self, expr: str) -> "SelectQuery":
        self._order.append(expr)
        return self

    def limit(self, n: int) -> "SelectQuery":
        self._limit = n
        return self

    def to_sql(self) -> tuple[str, tuple]:
        if not self._columns:
            raise ValueError("SELECT needs at least one column")

        params: list = []
        for _, column_params in self._columns:
            params.extend(column_params)
        sql = f"SELECT {', '.join(expr for expr, _ in self._columns)} FROM {self._source}"

        if self._where:
            sql += " WHERE " + " AND ".join(f"({p.sql})" for p in self._where)
            for p in self._where:
                params.extend(p.params)
        if self._order:
            sql += " ORDER BY " + ", ".join(self._order)
        if self._limit is not None:
            sql += " LIMIT ?"
            params.append(self._limit)

        return sql, tuple(params)


@dataclass(frozen=True)
class ExecutableQuery:
    """An assembled search query plus what the result stage needs to know about it."""

    sql: str
    params: tuple
    search_type: SearchType
    scored: bool  # a distance column was projected
    limit: int  # rows requested from storage (the candidate pool for MMR)


def build_search_query(
    session_id: str,
    query: SearchQuery,
    predicate: Optional[Predicate],
    query_embedding: Optional[list[float]],
    limit: int,
    pool_multiplier: int,
) -> ExecutableQuery:
    """
    Assemble the search SELECT.

    With a query embedding, rows get ``dist`` = the inner product with the
    stored embedding (pgvector ``<#>`` sign-flipped, larger = more similar) and
    are sorted by it; otherwise rows are sorted newest first. MMR searches also
    project the stored embedding and over-fetch ``limit * pool_multiplier``
    candidates for the reranker.
    """
    select = SelectQuery(
        "messages AS m LEFT JOIN message_embeddings AS e ON e.message_uuid = m.uuid"
    )
    for column in MESSAGE_COLUMNS:
        select.column(column)

    scored = query_embedding is not None
    if scored:
        select.column(
            "vec_negative_inner_product(e.embedding, ?) * -1 AS dist",
            serialize_embedding(query_embedding),
        )
        if query.search_type == SearchType.MMR:
            select.column("e.embedding AS embedding")

    if predicate is not None:
        select.where(predicate)
    select.where(Predicate("m.session_id = ?", (session_id,)))
    select.where(Predicate("m.deleted_at IS NULL"))

    if scored:
        select.order("dist DESC").order("m.created_at DESC")
    else:
        select.order("m.created_at DESC")

    if query.search_type == SearchType.MMR:
        fetch_limit = limit * pool_multiplier
    else:
        fetch_limit = limit
    select.limit(fetch_limit)

    sql, params = select.to_sql()
    logger.debug("Search query: %s", sql)
    return ExecutableQuery(
        sql=sql,
        params=params,
        search_type=query.search_type,
        scored=scored,
        limit=fetch_limit,
    )
