from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from discovery.core.errors import InvalidParameterError


class MediaType(str, enum.Enum):
    MOVIE = "movie"
    TV = "tv"


class SessionStatus(str, enum.Enum):
    FORMING = "forming"
    SCORING = "scoring"
    VOTING = "voting"
    DECIDED = "decided"


def _coerce_embedding(value: Any) -> np.ndarray | None:
    if value is None:
        return None
    arr = np.asarray(value, dtype=np.float32)
    if arr.ndim != 1:
        arr = arr.reshape(-1)
    return arr


def _release_year(value: date | datetime | int | str | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.year
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if len(text) < 4 or not text[:4].isdigit():
        return None
    return int(text[:4])


@dataclass
class Candidate:
    content_id: int
    media_type: MediaType = MediaType.MOVIE
    relevance_score: float = 0.0
    embedding: Optional[np.ndarray] = None
    genres: Tuple[str, ...] = ()
    release_date: date | int | str | None = None
    popularity: float | None = None
    runtime: int | None = None
    vote_average: float | None = None
    title: str | None = None

    def __post_init__(self) -> None:
        self.media_type = MediaType(self.media_type)
        self.embedding = _coerce_embedding(self.embedding)
        seen: set[str] = set()
        ordered: List[str] = []
        for genre in self.genres or ():
            if genre and genre not in seen:
                seen.add(genre)
                ordered.append(genre)
        self.genres = tuple(ordered)

    @property
    def release_year(self) -> int | None:
        return _release_year(self.release_date)


@dataclass
class ScoredCandidate:
    candidate: Candidate
    similarity_score: float
    personalization_score: float
    recency_score: float
    popularity_score: float
    final_score: float

    @property
    def content_id(self) -> int:
        return self.candidate.content_id

    @property
    def embedding(self) -> np.ndarray | None:
        return self.candidate.embedding


@dataclass
class MemberProfile:
    user_id: str
    preference_vector: Optional[np.ndarray] = None
    weight: float = 1.0
    confidence: float = 1.0

    def __post_init__(self) -> None:
        self.preference_vector = _coerce_embedding(self.preference_vector)
        if not self.weight > 0:
            raise InvalidParameterError(
                f"Member weight must be > 0 (user {self.user_id}, got {self.weight})"
            )
        if not 0.0 <= self.confidence <= 1.0:
            raise InvalidParameterError(
                f"Member confidence must be within [0, 1] (user {self.user_id}, got {self.confidence})"
            )


@dataclass
class GroupCandidate:
    content: Candidate
    group_score: float
    member_scores: Dict[str, float]
    fairness_score: float
    votes: Dict[str, float] = field(default_factory=dict)


@dataclass
class DiversityMetrics:
    average_similarity: float
    genre_distribution: Dict[str, int]
    temporal_spread: int
    unique_genres: int
    diversity_score: float


@dataclass(frozen=True)
class SearchHit:
    content_id: int
    similarity: float
    distance: float


@dataclass(frozen=True)
class IndexStats:
    count: int
    dimension: int
    metric: str
    backend: str
    approximate: bool
    built: bool
    last_search_latency_ms: float
    avg_search_latency_ms: float
    total_searches: int
    updates_since_build: int
    needs_rebuild: bool
    generation: int
    m: int
    ef_construction: int
    ef_search: int


@dataclass
class RecommendationContext:
    available_time: int | None = None
    mood: str | None = None
    occasion: str | None = None


@dataclass
class SearchFilters:
    media_type: MediaType | None = None
    genres: Sequence[str] = ()
    year_min: int | None = None
    year_max: int | None = None
    rating_min: float | None = None


@dataclass
class SearchResult:
    candidate: Candidate
    score: float
    explanation: str
    availability: List[Any] = field(default_factory=list)
