from __future__ import annotations

import re
from dataclasses import fields, replace
from datetime import UTC, datetime
from typing import List, Sequence

from discovery.core.types import Candidate, MediaType, SearchFilters

_MOVIE = re.compile(r"\b(?:movies?|films?)\b", re.IGNORECASE)
_TV = re.compile(r"\b(?:shows?|series|tv)\b", re.IGNORECASE)
_YEAR_FROM = re.compile(r"\b(?:from|after|since)\s*(\d{4})\b", re.IGNORECASE)
_RECENT = re.compile(r"\b(?:recent|new|latest)\b", re.IGNORECASE)
_HIGHLY_RATED = re.compile(r"\b(?:highly|top)\s+rated\b", re.IGNORECASE)

RECENT_YEARS = 2
HIGHLY_RATED_MIN = 7.5


def extract_filters_from_query(
    query: str, current_year: int | None = None
) -> SearchFilters:
    """Pull coarse filter hints (media type, year floor, rating floor) out of free text."""
    hints = SearchFilters()

    if _MOVIE.search(query):
        hints.media_type = MediaType.MOVIE
    elif _TV.search(query):
        hints.media_type = MediaType.TV

    match = _YEAR_FROM.search(query)
    if match:
        hints.year_min = int(match.group(1))
    if _RECENT.search(query):
        year = current_year if current_year is not None else datetime.now(UTC).year
        hints.year_min = year - RECENT_YEARS

    if _HIGHLY_RATED.search(query):
        hints.rating_min = HIGHLY_RATED_MIN
    return hints


def merge_filters(
    extracted: SearchFilters, provided: SearchFilters | None
) -> SearchFilters:
    """Explicitly provided values win over extracted hints."""
    if provided is None:
        return extracted
    overrides = {}
    for item in fields(SearchFilters):
        value = getattr(provided, item.name)
        if value is None or (item.name == "genres" and not value):
            continue
        overrides[item.name] = value
    return replace(extracted, **overrides)


def _matches_filters(candidate: Candidate, filters: SearchFilters) -> bool:
    if filters.media_type is not None and candidate.media_type != filters.media_type:
        return False

    if filters.genres:
        wanted = {str(genre) for genre in filters.genres}
        if not wanted.intersection(candidate.genres):
            return False

    if filters.year_min is not None or filters.year_max is not None:
        year = candidate.release_year
        if year is None:
            return False
        if filters.year_min is not None and year < filters.year_min:
            return False
        if filters.year_max is not None and year > filters.year_max:
            return False

    if filters.rating_min is not None:
        if candidate.vote_average is None or candidate.vote_average < filters.rating_min:
            return False

    return True


def apply_filters(
    candidates: Sequence[Candidate], filters: SearchFilters | None
) -> List[Candidate]:
    if filters is None:
        return list(candidates)
    return [candidate for candidate in candidates if _matches_filters(candidate, filters)]
