"""Result-set diversification.

Two independent strategies:

* Maximal Marginal Relevance, ``score = lambda * relevance - (1 - lambda) * max_sim``,
  selected greedily after seeding with the most relevant candidate.
* Genre quotas, a round-robin across genres capped at ``max_per_genre`` items.
"""

from __future__ import annotations

import enum
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np

from discovery.config import (
    EMBEDDING_DIM,
    GENRE_ENFORCE_DISTRIBUTION,
    GENRE_MAX_PER_GENRE,
    GENRE_MIN_PER_GENRE,
    MMR_LAMBDA,
)
from discovery.core.diagnostics import DiagnosticsChannel, default_channel, get_logger
from discovery.core.errors import InvalidLambdaError, InvalidLimitError
from discovery.core.types import Candidate, DiversityMetrics
from discovery.core.vector_math import cosine_similarity

logger = get_logger(__name__)


def _validate_lambda(value: float) -> float:
    if not 0.0 <= value <= 1.0:
        raise InvalidLambdaError(f"Lambda must be between 0 and 1 (got {value})")
    return float(value)


def _validate_limit(limit: int) -> int:
    if limit <= 0:
        raise InvalidLimitError(f"Limit must be greater than 0 (got {limit})")
    return int(limit)


class MMRSelector:
    def __init__(
        self,
        lambda_param: float | None = None,
        embedding_dimensions: int | None = None,
        diagnostics: DiagnosticsChannel | None = None,
    ):
        self.lambda_param = _validate_lambda(
            MMR_LAMBDA if lambda_param is None else lambda_param
        )
        self.embedding_dimensions = embedding_dimensions or EMBEDDING_DIM
        self.diagnostics = diagnostics or default_channel

    def mmr_score(self, relevance: float, max_similarity: float) -> float:
        return self.lambda_param * relevance - (1.0 - self.lambda_param) * max_similarity

    def max_similarity_to_selected(
        self, embedding: np.ndarray, selected: Sequence[np.ndarray]
    ) -> float:
        if not selected:
            return 0.0
        return max(cosine_similarity(embedding, other) for other in selected)

    def _usable(self, candidates: Sequence[Candidate]) -> List[Candidate]:
        usable: List[Candidate] = []
        for candidate in candidates:
            if candidate.embedding is None:
                self.diagnostics.emit(
                    "embedding.missing",
                    __name__,
                    f"Missing embedding for content {candidate.content_id}",
                    content_id=candidate.content_id,
                )
                continue
            if candidate.embedding.shape[0] != self.embedding_dimensions:
                self.diagnostics.emit(
                    "embedding.dimension",
                    __name__,
                    f"Invalid embedding dimension for content {candidate.content_id}: "
                    f"expected {self.embedding_dimensions}, got {candidate.embedding.shape[0]}",
                    content_id=candidate.content_id,
                    expected=self.embedding_dimensions,
                    actual=int(candidate.embedding.shape[0]),
                )
                continue
            usable.append(candidate)
        return usable

    def select(
        self,
        candidates: Sequence[Candidate],
        limit: int,
        lambda_param: float | None = None,
    ) -> List[Candidate]:
        limit = _validate_limit(limit)
        lambda_value = (
            self.lambda_param if lambda_param is None else _validate_lambda(lambda_param)
        )
        remaining = self._usable(candidates)
        if not remaining:
            return []

        # Stable: equal relevance keeps input order, which fixes every tie-break below.
        remaining.sort(key=lambda c: c.relevance_score, reverse=True)
        first = remaining.pop(0)
        selected = [first]
        selected_embeddings = [first.embedding]

        while len(selected) < limit and remaining:
            best_idx = -1
            best_score = -np.inf
            for idx, candidate in enumerate(remaining):
                max_sim = self.max_similarity_to_selected(
                    candidate.embedding, selected_embeddings
                )
                score = (
                    lambda_value * candidate.relevance_score
                    - (1.0 - lambda_value) * max_sim
                )
                if score > best_score:
                    best_score = score
                    best_idx = idx
            if best_idx < 0:
                break
            chosen = remaining.pop(best_idx)
            selected.append(chosen)
            selected_embeddings.append(chosen.embedding)

        logger.debug(
            "MMR selected %d of %d candidates (lambda=%.2f).",
            len(selected),
            len(candidates),
            lambda_value,
        )
        return selected


def genre_distribution(candidates: Sequence[Candidate]) -> Dict[str, int]:
    distribution: Dict[str, int] = {}
    for candidate in candidates:
        for genre in candidate.genres:
            distribution[genre] = distribution.get(genre, 0) + 1
    return distribution


def calculate_diversity_metrics(candidates: Sequence[Candidate]) -> DiversityMetrics:
    if not candidates:
        return DiversityMetrics(
            average_similarity=0.0,
            genre_distribution={},
            temporal_spread=0,
            unique_genres=0,
            diversity_score=0.0,
        )

    total = 0.0
    pairs = 0
    for i in range(len(candidates)):
        for j in range(i + 1, len(candidates)):
            a = candidates[i].embedding
            b = candidates[j].embedding
            if a is None or b is None:
                continue
            total += cosine_similarity(a, b)
            pairs += 1
    average_similarity = total / pairs if pairs else 0.0

    distribution = genre_distribution(candidates)
    years = [c.release_year for c in candidates if c.release_year is not None]
    temporal_spread = max(years) - min(years) if years else 0

    return DiversityMetrics(
        average_similarity=average_similarity,
        genre_distribution=distribution,
        temporal_spread=temporal_spread,
        unique_genres=len(distribution),
        diversity_score=1.0 - average_similarity,
    )


class GenreDiversifier:
    def __init__(
        self,
        min_per_genre: int | None = None,
        max_per_genre: int | None = None,
        enforce_distribution: bool | None = None,
        diagnostics: DiagnosticsChannel | None = None,
    ):
        self.min_per_genre = GENRE_MIN_PER_GENRE if min_per_genre is None else min_per_genre
        self.max_per_genre = GENRE_MAX_PER_GENRE if max_per_genre is None else max_per_genre
        self.enforce_distribution = (
            GENRE_ENFORCE_DISTRIBUTION
            if enforce_distribution is None
            else enforce_distribution
        )
        self.diagnostics = diagnostics or default_channel

    def diversify(self, candidates: Sequence[Candidate], limit: int) -> List[Candidate]:
        limit = _validate_limit(limit)
        if not self.enforce_distribution or not candidates:
            return list(candidates[:limit])

        # A multi-genre candidate sits in every one of its genres' groups.
        groups: "OrderedDict[str, List[Candidate]]" = OrderedDict()
        for candidate in candidates:
            for genre in candidate.genres:
                groups.setdefault(genre, []).append(candidate)
        for group in groups.values():
            group.sort(key=lambda c: c.relevance_score, reverse=True)

        selected: List[Candidate] = []
        selected_ids: set[int] = set()
        counts: Dict[str, int] = {genre: 0 for genre in groups}
        active = list(groups.keys())
        position = 0

        while len(selected) < limit and active:
            slot = position % len(active)
            genre = active[slot]
            group = groups[genre]

            if counts[genre] < self.max_per_genre and group:
                while group:
                    candidate = group.pop(0)
                    if candidate.content_id not in selected_ids:
                        selected.append(candidate)
                        selected_ids.add(candidate.content_id)
                        counts[genre] += 1
                        break

            if not group or counts[genre] >= self.max_per_genre:
                active.pop(slot)
                position = slot
            else:
                position += 1

        under_quota = {
            genre: count for genre, count in counts.items() if count < self.min_per_genre
        }
        if under_quota:
            self.diagnostics.emit(
                "genre.under_quota",
                __name__,
                "Genres below minimum of %d: %s"
                % (
                    self.min_per_genre,
                    ", ".join(f"{g} ({c})" for g, c in under_quota.items()),
                ),
                minimum=self.min_per_genre,
                genres=under_quota,
            )
        return selected

    def genre_distribution(self, candidates: Sequence[Candidate]) -> Dict[str, int]:
        return genre_distribution(candidates)

    def validate_distribution(self, candidates: Sequence[Candidate]) -> bool:
        if not self.enforce_distribution:
            return True
        for count in genre_distribution(candidates).values():
            if count < self.min_per_genre or count > self.max_per_genre:
                return False
        return True


class DiversityStrategy(str, enum.Enum):
    MMR = "mmr"
    GENRE = "genre"


@dataclass
class DiversityOutcome:
    selected: List[Candidate]
    metrics: DiversityMetrics
    strategy: DiversityStrategy


class DiversitySelector:
    """Applies one diversification strategy per call and reports the result's metrics."""

    def __init__(
        self,
        mmr: MMRSelector | None = None,
        genre: GenreDiversifier | None = None,
        diagnostics: DiagnosticsChannel | None = None,
    ):
        self.mmr = mmr or MMRSelector(diagnostics=diagnostics)
        self.genre = genre or GenreDiversifier(diagnostics=diagnostics)

    def select(
        self,
        candidates: Sequence[Candidate],
        limit: int,
        strategy: DiversityStrategy | str = DiversityStrategy.MMR,
        lambda_param: float | None = None,
    ) -> DiversityOutcome:
        strategy = DiversityStrategy(strategy)
        if strategy is DiversityStrategy.GENRE:
            selected = self.genre.diversify(candidates, limit)
        else:
            selected = self.mmr.select(candidates, limit, lambda_param=lambda_param)
        return DiversityOutcome(
            selected=selected,
            metrics=calculate_diversity_metrics(selected),
            strategy=strategy,
        )
