"""
Maximal Marginal Relevance (MMR) for diversity in search results.

MMR balances relevance with diversity by greedily selecting results that are:
1. Relevant to the query (high inner product with the query embedding)
2. Different from already selected results (low similarity to them)

Formula: MMR = λ * relevance - (1-λ) * max_similarity_to_selected
"""

import logging

from memquery.errors import RerankError
from memquery.models import SearchResult

logger = logging.getLogger(__name__)


def _inner_product(a: list[float], b: list[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def maximal_marginal_relevance(
    query_embedding: list[float],
    embeddings: list[list[float]],
    lambda_mult: float,
    k: int,
) -> list[int]:
    """
    Select up to k candidate indices in MMR order.

    Args:
        query_embedding: The query vector
        embeddings: Candidate vectors, in retrieval order
        lambda_mult: Balance parameter (0=max diversity, 1=max relevance)
        k: Number of candidates to select

    Returns:
        Indices into ``embeddings`` in selection order. Ties go to the earlier
        candidate, so the output is deterministic.
    """
    if k <= 0:
        return []
    if not embeddings:
        raise RerankError(f"no candidates to rerank (k={k})")
    if not 0.0 <= lambda_mult <= 1.0:
        raise RerankError(f"mmr lambda must be in [0, 1], got {lambda_mult}")

    dims = len(query_embedding)
    for i, emb in enumerate(embeddings):
        if emb is None:
            raise RerankError(f"candidate {i} has no embedding")
        if len(emb) != dims:
            raise RerankError(
                f"candidate {i} embedding has {len(emb)} dims, query has {dims}"
            )

    relevance = [_inner_product(query_embedding, emb) for emb in embeddings]
    # Max similarity of each candidate to anything selected so far; updated
    # incrementally so each round only compares against the newest pick.
    max_similarity = [0.0] * len(embeddings)
    remaining = list(range(len(embeddings)))
    selected: list[int] = []

    while remaining and len(selected) < k:
        best_idx = None
        best_score = float("-inf")

        for idx in remaining:
            penalty = max_similarity[idx] if selected else 0.0
            score = lambda_mult * relevance[idx] - (1 - lambda_mult) * penalty
            if score > best_score:
                best_score = score
                best_idx = idx

        if best_idx is None:
            raise RerankError("MMR scores are not finite (NaN in embeddings?)")

        selected.append(best_idx)
        remaining.remove(best_idx)

        chosen = embeddings[best_idx]
        for idx in remaining:
            similarity = _inner_product(embeddings[idx], chosen)
            if len(selected) == 1 or similarity > max_similarity[idx]:
                max_similarity[idx] = similarity

    return selected


def rerank_mmr(
    results: list[SearchResult],
    query_embedding: list[float],
    lambda_mult: float,
    k: int,
) -> list[SearchResult]:
    """Rerank validated search results with MMR. Results must carry embeddings."""
    order = maximal_marginal_relevance(
        query_embedding, [r.embedding for r in results], lambda_mult, k
    )
    diversified = sum(1 for rank, idx in enumerate(order) if idx != rank)
    logger.debug(
        "MMR: selected %d of %d candidates, %d reordered (lambda=%.2f)",
        len(order), len(results), diversified, lambda_mult,
    )
    return [results[idx] for idx in order]
