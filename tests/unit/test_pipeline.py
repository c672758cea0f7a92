from __future__ import annotations

import pytest

from discovery.core.errors import IndexNotBuiltError, InvalidLimitError
from discovery.core.pipeline import recommend_for_user
from discovery.core.types import SearchFilters
from discovery.core.vector_index import IndexConfig, VectorIndex
from tests.helpers import make_candidate, recording_channel, unit


def _setup():
    channel, recorder = recording_channel()
    vectors = {
        1: unit(1.0, 0.0),
        2: unit(0.99, 0.14),
        3: unit(0.0, 1.0),
        4: unit(0.7, 0.7),
        99: unit(0.5, 0.5),
    }
    catalog = {
        1: make_candidate(1, vectors[1], genres=["Drama"]),
        2: make_candidate(2, vectors[2], genres=["Drama"]),
        3: make_candidate(3, None, genres=["Comedy"]),
        4: make_candidate(4, vectors[4], genres=["Crime"], media_type="tv"),
    }
    index = VectorIndex(IndexConfig(dimension=2, backend="exact"), diagnostics=channel)
    index.build(vectors)
    return index, catalog, channel, recorder


def test_recommendations_are_diversified():
    index, catalog, channel, _ = _setup()

    results = recommend_for_user(
        [1.0, 0.0], index, catalog, limit=2, lambda_param=0.5, current_year=2024,
        diagnostics=channel,
    )

    assert [r.candidate.content_id for r in results] == [1, 3]
    assert results[0].score > results[1].score
    assert all(r.explanation for r in results)


def test_relevance_only_keeps_near_duplicates():
    index, catalog, channel, _ = _setup()

    results = recommend_for_user(
        [1.0, 0.0], index, catalog, limit=2, lambda_param=1.0, current_year=2024,
        diagnostics=channel,
    )

    assert [r.candidate.content_id for r in results] == [1, 2]


def test_missing_embeddings_come_from_index_and_unknown_ids_are_skipped():
    index, catalog, channel, recorder = _setup()

    results = recommend_for_user(
        [0.0, 1.0], index, catalog, limit=5, lambda_param=1.0, current_year=2024,
        diagnostics=channel,
    )

    ids = [r.candidate.content_id for r in results]
    assert ids[0] == 3
    assert 99 not in ids
    assert "embedding.missing" not in recorder.codes()


def test_query_text_and_filters_narrow_results():
    index, catalog, channel, _ = _setup()

    tv_only = recommend_for_user(
        [1.0, 0.0], index, catalog, limit=3, query_text="tv shows", current_year=2024,
        diagnostics=channel,
    )
    assert [r.candidate.content_id for r in tv_only] == [4]

    comedy = recommend_for_user(
        [1.0, 0.0], index, catalog, limit=3, filters=SearchFilters(genres=["Comedy"]),
        current_year=2024, diagnostics=channel,
    )
    assert [r.candidate.content_id for r in comedy] == [3]


def test_genre_strategy_and_availability():
    index, catalog, channel, _ = _setup()

    results = recommend_for_user(
        [1.0, 0.0], index, catalog, limit=3, strategy="genre",
        availability={1: ["netflix"]}, current_year=2024, diagnostics=channel,
    )

    ids = [r.candidate.content_id for r in results]
    assert ids[0] == 1
    assert len(ids) == len(set(ids)) == 3
    assert results[0].availability == ["netflix"]


def test_preferences_shift_ranking():
    index, catalog, channel, _ = _setup()

    results = recommend_for_user(
        [1.0, 0.0], index, catalog, preference_vector=[0.0, 1.0], limit=4,
        lambda_param=1.0, current_year=2024, diagnostics=channel,
    )

    scores = {r.candidate.content_id: r.score for r in results}
    assert scores[3] > 0.5 * 0.5 + 0.25 * 0.0


def test_invalid_limit_and_unbuilt_index():
    index, catalog, channel, _ = _setup()
    with pytest.raises(InvalidLimitError):
        recommend_for_user([1.0, 0.0], index, catalog, limit=0, diagnostics=channel)

    unbuilt = VectorIndex(IndexConfig(dimension=2, backend="exact"), diagnostics=channel)
    with pytest.raises(IndexNotBuiltError):
        recommend_for_user([1.0, 0.0], unbuilt, catalog, diagnostics=channel)
