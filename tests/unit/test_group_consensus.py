from __future__ import annotations

import numpy as np
import pytest

import discovery.core.group_consensus as group_consensus
from discovery.core.errors import (
    DimensionMismatchError,
    InvalidFairnessThresholdError,
    InvalidParameterError,
    InvalidSessionTransitionError,
)
from discovery.core.group_consensus import (
    GroupConsensusEngine,
    GroupSession,
    apply_context_boosts,
    calculate_fairness_score,
    calculate_group_centroid,
    calculate_group_score,
    calculate_member_satisfaction,
    generate_group_explanation,
    process_votes,
    rank_group_candidates,
)
from discovery.core.types import GroupCandidate, RecommendationContext, SessionStatus
from tests.helpers import make_candidate, make_member, recording_channel


def _group_candidate(content_id, group_score, fairness=1.0, member_scores=None, **kwargs):
    return GroupCandidate(
        content=make_candidate(content_id, [1.0, 0.0], **kwargs),
        group_score=group_score,
        member_scores=member_scores or {"a": group_score},
        fairness_score=fairness,
    )


def test_centroid_weights_by_weight_and_confidence():
    members = [
        make_member("a", [1.0, 0.0], weight=1.0),
        make_member("b", [0.0, 1.0], weight=3.0),
        make_member("c", None),
    ]
    centroid = calculate_group_centroid(members)
    expected = np.array([1.0, 3.0]) / np.linalg.norm([1.0, 3.0])
    assert np.allclose(centroid, expected, atol=1e-6)


def test_centroid_confidence_scales_influence():
    members = [
        make_member("a", [1.0, 0.0], confidence=1.0),
        make_member("b", [0.0, 1.0], confidence=0.0),
    ]
    assert np.allclose(calculate_group_centroid(members), [1.0, 0.0], atol=1e-6)


def test_centroid_without_vectors_is_none_and_mismatch_raises():
    assert calculate_group_centroid([make_member("a", None)]) is None
    assert calculate_group_centroid([]) is None
    with pytest.raises(DimensionMismatchError):
        calculate_group_centroid(
            [make_member("a", [1.0, 0.0]), make_member("b", [1.0, 0.0, 0.0])]
        )


def test_member_satisfaction_defaults_to_neutral():
    assert calculate_member_satisfaction([1.0, 0.0], make_member("a", None)) == 0.5
    assert calculate_member_satisfaction(
        [1.0, 0.0], make_member("a", [1.0, 0.0])
    ) == pytest.approx(1.0)


def test_member_satisfaction_is_clamped_to_unit_range():
    assert calculate_member_satisfaction([1.0, 0.0], make_member("a", [-1.0, 0.0])) == 0.0
    assert calculate_member_satisfaction(
        [1.0, 0.0], make_member("a", [-0.5, 0.75**0.5])
    ) == 0.0


def test_group_score_blends_minimum_and_weighted_average():
    members = [
        make_member("a", [1.0, 0.0], weight=1.0),
        make_member("b", [0.0, 1.0], weight=3.0),
    ]
    result = calculate_group_score([1.0, 0.0], members)
    assert result.member_scores == pytest.approx({"a": 1.0, "b": 0.0})
    assert result.min_satisfaction == pytest.approx(0.0)
    assert result.group_score == pytest.approx(0.6 * 0.0 + 0.4 * 0.25)


def test_group_score_without_members_is_zero():
    result = calculate_group_score([1.0, 0.0], [])
    assert result.group_score == 0.0
    assert result.member_scores == {}


def test_fairness_edge_cases():
    assert calculate_fairness_score({}) == 1.0
    assert calculate_fairness_score({"a": 0.3}) == 1.0
    assert calculate_fairness_score({"a": 0.7, "b": 0.7, "c": 0.7}) == pytest.approx(1.0)
    assert calculate_fairness_score({"a": 0.0, "b": 0.0}) == 0.0


def test_fairness_is_one_minus_gini():
    assert calculate_fairness_score({"a": 1.0, "b": 1.0, "c": 0.1}) == pytest.approx(
        1.0 - 3.6 / 12.6
    )


def test_fairness_stays_in_unit_range_for_negative_scores():
    assert 0.0 <= calculate_fairness_score({"a": -0.3, "b": 0.35}) <= 1.0


def test_candidate_one_member_dislikes_fails_fairness():
    members = [
        make_member("a", [0.4, 0.84**0.5]),
        make_member("b", [-0.5, 0.75**0.5]),
    ]
    result = calculate_group_score([1.0, 0.0], members)
    assert result.member_scores == pytest.approx({"a": 0.4, "b": 0.0})
    assert calculate_fairness_score(result.member_scores) == pytest.approx(0.5)

    ranked = rank_group_candidates(
        [make_candidate(1, [1.0, 0.0])], members, fairness_threshold=0.9
    )
    assert ranked == []


def _scripted_satisfaction(monkeypatch):
    table = {
        (1.0, 0.0): {"a": 0.9, "b": 0.9, "c": 0.9},
        (0.0, 1.0): {"a": 1.0, "b": 1.0, "c": 0.1},
    }

    def fake(embedding, member):
        return table[tuple(float(v) for v in embedding)][member.user_id]

    monkeypatch.setattr(group_consensus, "calculate_member_satisfaction", fake)


def test_uneven_candidate_ranks_below_even_one(monkeypatch):
    _scripted_satisfaction(monkeypatch)
    members = [make_member(uid, [1.0, 0.0]) for uid in ("a", "b", "c")]
    even = make_candidate(10, [1.0, 0.0])
    uneven = make_candidate(20, [0.0, 1.0])

    ranked = rank_group_candidates([uneven, even], members, fairness_threshold=0.6)

    assert [c.content.content_id for c in ranked] == [10, 20]
    assert ranked[0].group_score == pytest.approx(0.9)
    assert ranked[0].fairness_score == pytest.approx(1.0)
    assert ranked[1].group_score == pytest.approx(0.34)


def test_uneven_candidate_dropped_by_stricter_threshold(monkeypatch):
    _scripted_satisfaction(monkeypatch)
    members = [make_member(uid, [1.0, 0.0]) for uid in ("a", "b", "c")]
    even = make_candidate(10, [1.0, 0.0])
    uneven = make_candidate(20, [0.0, 1.0])

    ranked = rank_group_candidates([uneven, even], members, fairness_threshold=0.75)

    assert [c.content.content_id for c in ranked] == [10]


def test_rank_skips_candidates_without_embedding():
    channel, recorder = recording_channel()
    members = [make_member("a", [1.0, 0.0])]
    ranked = rank_group_candidates(
        [make_candidate(1, None), make_candidate(2, [1.0, 0.0])],
        members,
        diagnostics=channel,
    )
    assert [c.content.content_id for c in ranked] == [2]
    assert recorder.codes() == ["group.no_embedding"]


def test_rank_validates_threshold_and_handles_empty_input():
    with pytest.raises(InvalidFairnessThresholdError):
        rank_group_candidates([], [], fairness_threshold=1.2)
    assert rank_group_candidates([], [make_member("a", [1.0, 0.0])]) == []
    assert rank_group_candidates([make_candidate(1, [1.0, 0.0])], []) == []


def test_context_boost_rewards_runtime_fit_and_resorts():
    long_film = _group_candidate(1, 0.5, runtime=200)
    short_film = _group_candidate(2, 0.45, runtime=100)

    boosted = apply_context_boosts(
        [long_film, short_film], RecommendationContext(available_time=100)
    )

    assert [c.content.content_id for c in boosted] == [2, 1]
    assert boosted[0].group_score == pytest.approx(0.45 * 1.2)
    assert boosted[1].group_score == pytest.approx(0.5)
    assert long_film.group_score == 0.5


def test_context_boost_uses_default_runtime_and_ignores_missing_time():
    unknown = _group_candidate(1, 0.5)
    boosted = apply_context_boosts([unknown], RecommendationContext(available_time=100))
    assert boosted[0].group_score == pytest.approx(0.5 * (1 + 0.8 * 0.2))

    untouched = apply_context_boosts([unknown], RecommendationContext())
    assert untouched[0].group_score == pytest.approx(0.5)


def test_context_boost_copies_votes_and_member_scores():
    original = _group_candidate(1, 0.5, member_scores={"a": 0.5, "b": 0.5})

    boosted = apply_context_boosts([original], RecommendationContext(available_time=100))
    process_votes(boosted, {"u": {1: 9}})

    assert boosted[0].votes == {"u": 9.0}
    assert original.votes == {}
    assert boosted[0].member_scores == original.member_scores
    assert boosted[0].member_scores is not original.member_scores


def test_process_votes_merges_votes_and_picks_winner():
    first = _group_candidate(1, 0.8)
    second = _group_candidate(2, 0.5)

    winner = process_votes([first, second], {"u1": {2: 9}, "u2": {2: 10}})

    assert winner is second
    assert second.votes == {"u1": 9.0, "u2": 10.0}
    assert first.votes == {}


def test_process_votes_without_votes_falls_back_to_group_score():
    first = _group_candidate(1, 0.4)
    second = _group_candidate(2, 0.7)
    assert process_votes([first, second], {}) is second
    assert process_votes([], {"u1": {1: 10}}) is None


def test_process_votes_tie_keeps_first():
    first = _group_candidate(1, 0.5)
    second = _group_candidate(2, 0.5)
    assert process_votes([first, second], {}) is first


def test_group_explanations():
    assert (
        generate_group_explanation(_group_candidate(1, 0.5, fairness=0.95))
        == "Everyone in the group will enjoy this equally"
    )
    assert (
        generate_group_explanation(
            _group_candidate(1, 0.5, fairness=0.8, member_scores={"a": 0.8, "b": 0.8})
        )
        == "Great match for most group members"
    )
    assert (
        generate_group_explanation(
            _group_candidate(1, 0.5, fairness=0.8, member_scores={"a": 0.5, "b": 0.4})
        )
        == "Fair compromise that works for everyone"
    )
    assert (
        generate_group_explanation(
            _group_candidate(1, 0.5, fairness=0.5, member_scores={"a": 0.5, "b": 0.1})
        )
        == "Balanced choice for the group"
    )


def test_member_profile_validation():
    with pytest.raises(InvalidParameterError):
        make_member("a", [1.0, 0.0], weight=0.0)
    with pytest.raises(InvalidParameterError):
        make_member("a", [1.0, 0.0], confidence=1.5)


def test_engine_session_lifecycle():
    channel, _ = recording_channel()
    engine = GroupConsensusEngine(diagnostics=channel)
    session = GroupSession(
        members=[make_member("a", [1.0, 0.0]), make_member("b", [0.8, 0.6])]
    )
    candidates = [make_candidate(1, [1.0, 0.0]), make_candidate(2, [0.0, 1.0])]

    ranked = engine.score_session(session, candidates)

    assert session.status is SessionStatus.VOTING
    assert [c.content.content_id for c in ranked] == [1]
    assert session.candidates == ranked

    winner = engine.resolve_session(session, {"a": {1: 8}})
    assert winner is ranked[0]
    assert session.winner is winner
    assert session.status is SessionStatus.DECIDED

    with pytest.raises(InvalidSessionTransitionError):
        engine.resolve_session(session, {})
    with pytest.raises(InvalidSessionTransitionError):
        engine.score_session(session, candidates)


def test_engine_cannot_resolve_before_scoring():
    engine = GroupConsensusEngine(diagnostics=recording_channel()[0])
    session = GroupSession(members=[make_member("a", [1.0, 0.0])])
    with pytest.raises(InvalidSessionTransitionError):
        engine.resolve_session(session, {})


def test_engine_validates_threshold():
    with pytest.raises(InvalidFairnessThresholdError):
        GroupConsensusEngine(fairness_threshold=-0.1)
