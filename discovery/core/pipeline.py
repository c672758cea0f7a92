"""End-to-end personal recommendation: ANN recall, filters, rerank, diversify."""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Any, Iterable, List, Mapping, Sequence

import numpy as np

from discovery.core.diagnostics import DiagnosticsChannel, default_channel, get_logger
from discovery.core.diversity import DiversitySelector, DiversityStrategy, MMRSelector
from discovery.core.embeddings import EmbeddingResolver
from discovery.core.errors import InvalidLimitError
from discovery.core.filters import apply_filters, extract_filters_from_query, merge_filters
from discovery.core.reranker import RerankWeights, format_search_results, rerank_candidates
from discovery.core.types import Candidate, SearchFilters, SearchResult
from discovery.core.vector_index import VectorIndex
from discovery.core.vector_math import combine_query_with_preferences

logger = get_logger(__name__)

CANDIDATE_POOL_FACTOR = 5


def recommend_for_user(
    query_vector: Sequence[float] | np.ndarray,
    index: VectorIndex,
    catalog: Mapping[int, Candidate],
    preference_vector: Sequence[float] | np.ndarray | None = None,
    limit: int = 10,
    *,
    preference_confidence: float | None = None,
    filters: SearchFilters | None = None,
    query_text: str | None = None,
    candidate_pool: int | None = None,
    strategy: DiversityStrategy | str = DiversityStrategy.MMR,
    lambda_param: float | None = None,
    weights: RerankWeights | Mapping[str, float] | None = None,
    diversity: DiversitySelector | None = None,
    resolver: EmbeddingResolver | None = None,
    availability: Mapping[int, Iterable[Any]] | None = None,
    current_year: int | None = None,
    diagnostics: DiagnosticsChannel | None = None,
) -> List[SearchResult]:
    if limit <= 0:
        raise InvalidLimitError(f"Limit must be greater than 0 (got {limit})")

    channel = diagnostics or default_channel
    start = time.perf_counter()

    query = query_vector
    if preference_vector is not None and preference_confidence is not None:
        query = combine_query_with_preferences(
            query_vector, preference_vector, preference_confidence
        )

    pool = candidate_pool or limit * CANDIDATE_POOL_FACTOR
    hits = index.search(query, pool)

    recalled: List[Candidate] = []
    for hit in hits:
        candidate = catalog.get(hit.content_id)
        if candidate is None:
            logger.debug("Content %s indexed but missing from catalog.", hit.content_id)
            continue
        embedding = candidate.embedding
        if embedding is None:
            embedding = index.get_vector(hit.content_id)
        recalled.append(
            replace(candidate, relevance_score=hit.similarity, embedding=embedding)
        )

    if resolver is not None:
        recalled = resolver.resolve(recalled)

    if query_text:
        filters = merge_filters(
            extract_filters_from_query(query_text, current_year), filters
        )
    filtered = apply_filters(recalled, filters)

    scored = rerank_candidates(
        filtered,
        preference_vector,
        weights,
        current_year=current_year,
        diagnostics=channel,
    )
    if not scored:
        return []

    # Diversify on the blended score, then restore the reranked scores.
    by_id = {item.content_id: item for item in scored}
    ranked = [
        replace(item.candidate, relevance_score=item.final_score) for item in scored
    ]
    selector = diversity or DiversitySelector(
        mmr=MMRSelector(embedding_dimensions=index.config.dimension, diagnostics=channel),
        diagnostics=channel,
    )
    outcome = selector.select(ranked, limit, strategy=strategy, lambda_param=lambda_param)
    diversified = [by_id[candidate.content_id] for candidate in outcome.selected]

    results = format_search_results(diversified, limit, availability)
    logger.info(
        "Recommendations ready | recalled=%d filtered=%d returned=%d strategy=%s diversity=%.3f duration=%.1fms",
        len(recalled),
        len(filtered),
        len(results),
        outcome.strategy.value,
        outcome.metrics.diversity_score,
        (time.perf_counter() - start) * 1000.0,
    )
    return results
