from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Iterable, List, Mapping, Sequence

import numpy as np

from discovery.config import (
    MAX_POPULARITY,
    RERANK_WEIGHT_PERSONALIZATION,
    RERANK_WEIGHT_POPULARITY,
    RERANK_WEIGHT_RECENCY,
    RERANK_WEIGHT_SIMILARITY,
)
from discovery.core.diagnostics import DiagnosticsChannel, default_channel, get_logger
from discovery.core.errors import InvalidParameterError
from discovery.core.types import (
    Candidate,
    ScoredCandidate,
    SearchResult,
)
from discovery.core.vector_math import cosine_similarity

logger = get_logger(__name__)

NEUTRAL_PERSONALIZATION = 0.5
NEUTRAL_RECENCY = 0.5
RECENCY_DECAY_YEARS = 10.0

_FALLBACK_EXPLANATION = "May interest you based on your query"


@dataclass(frozen=True)
class RerankWeights:
    """Per-axis weights; they need not sum to 1."""

    similarity: float = RERANK_WEIGHT_SIMILARITY
    personalization: float = RERANK_WEIGHT_PERSONALIZATION
    recency: float = RERANK_WEIGHT_RECENCY
    popularity: float = RERANK_WEIGHT_POPULARITY


def _current_year() -> int:
    return datetime.now(UTC).year


def calculate_personalization_score(
    embedding: np.ndarray | Sequence[float],
    preference_vector: np.ndarray | Sequence[float] | None,
) -> float:
    if preference_vector is None:
        # Neutral score so anonymous users are not penalised.
        return NEUTRAL_PERSONALIZATION
    return cosine_similarity(embedding, preference_vector)


def calculate_recency_score(
    release_year: int | None, current_year: int | None = None
) -> float:
    if release_year is None:
        return NEUTRAL_RECENCY
    year = current_year if current_year is not None else _current_year()
    age = max(0, year - release_year)
    return math.exp(-age / RECENCY_DECAY_YEARS)


def calculate_popularity_score(
    popularity: float | None, max_popularity: float = MAX_POPULARITY
) -> float:
    if max_popularity <= 0:
        raise InvalidParameterError(
            f"max_popularity must be greater than 0 (got {max_popularity})"
        )
    return min(float(popularity or 0.0) / max_popularity, 1.0)


def rerank_candidates(
    candidates: Sequence[Candidate],
    preference_vector: np.ndarray | Sequence[float] | None = None,
    weights: RerankWeights | Mapping[str, float] | None = None,
    *,
    max_popularity: float = MAX_POPULARITY,
    current_year: int | None = None,
    diagnostics: DiagnosticsChannel | None = None,
) -> List[ScoredCandidate]:
    """Score candidates and return them by descending ``final_score``.

    ``final_score = a*similarity + b*personalization + c*recency + d*popularity``
    where similarity is the candidate's ``relevance_score``. Candidates without
    an embedding cannot be personalised and are left out.
    """
    if not candidates:
        return []

    if weights is None:
        weights = RerankWeights()
    elif isinstance(weights, Mapping):
        weights = RerankWeights(**weights)

    channel = diagnostics or default_channel
    year = current_year if current_year is not None else _current_year()
    scored: List[ScoredCandidate] = []

    for candidate in candidates:
        if candidate.embedding is None:
            channel.emit(
                "embedding.missing",
                __name__,
                f"Missing embedding for content {candidate.content_id}; not reranked",
                content_id=candidate.content_id,
            )
            continue

        similarity = float(candidate.relevance_score)
        personalization = calculate_personalization_score(
            candidate.embedding, preference_vector
        )
        recency = calculate_recency_score(candidate.release_year, year)
        popularity = calculate_popularity_score(candidate.popularity, max_popularity)

        final_score = (
            weights.similarity * similarity
            + weights.personalization * personalization
            + weights.recency * recency
            + weights.popularity * popularity
        )
        scored.append(
            ScoredCandidate(
                candidate=candidate,
                similarity_score=similarity,
                personalization_score=personalization,
                recency_score=recency,
                popularity_score=popularity,
                final_score=final_score,
            )
        )

    scored.sort(key=lambda item: item.final_score, reverse=True)
    logger.debug(
        "Reranked %d of %d candidates (personalized=%s).",
        len(scored),
        len(candidates),
        preference_vector is not None,
    )
    return scored


def explanation_reasons(scored: ScoredCandidate) -> List[str]:
    reasons: List[str] = []
    if scored.similarity_score > 0.7:
        reasons.append("highly relevant to your search")
    elif scored.similarity_score > 0.5:
        reasons.append("matches your search criteria")

    if scored.personalization_score > 0.7:
        reasons.append("matches your preferences")

    if scored.recency_score > 0.8:
        reasons.append("recently released")

    if scored.popularity_score > 0.7:
        reasons.append("popular choice")
    return reasons


def generate_explanation(scored: ScoredCandidate) -> str:
    reasons = explanation_reasons(scored)
    if not reasons:
        return _FALLBACK_EXPLANATION
    text = ", ".join(reasons)
    return text[0].upper() + text[1:]


def format_search_results(
    scored: Sequence[ScoredCandidate],
    limit: int,
    availability: Mapping[int, Iterable[Any]] | None = None,
) -> List[SearchResult]:
    availability = availability or {}
    return [
        SearchResult(
            candidate=item.candidate,
            score=item.final_score,
            explanation=generate_explanation(item),
            availability=list(availability.get(item.content_id, [])),
        )
        for item in scored[: max(0, limit)]
    ]

