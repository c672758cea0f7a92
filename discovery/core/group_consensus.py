"""Group recommendation: aggregate several members' tastes into one ranking.

Scores blend the least-satisfied member (maximin) with the weighted average
satisfaction, candidates that split the group too unevenly (low ``1 - Gini``)
are dropped, and explicit votes later pick a single winner.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from discovery.config import GROUP_DEFAULT_RUNTIME, GROUP_FAIRNESS_THRESHOLD
from discovery.core.diagnostics import DiagnosticsChannel, default_channel, get_logger
from discovery.core.errors import (
    DimensionMismatchError,
    InvalidFairnessThresholdError,
    InvalidSessionTransitionError,
)
from discovery.core.types import (
    Candidate,
    GroupCandidate,
    MemberProfile,
    RecommendationContext,
    SessionStatus,
)
from discovery.core.vector_math import cosine_similarity, normalize

logger = get_logger(__name__)

NEUTRAL_SATISFACTION = 0.5
MIN_SATISFACTION_WEIGHT = 0.6
AVERAGE_SATISFACTION_WEIGHT = 0.4
TIME_FIT_BOOST = 0.2
ALGORITHM_VOTE_WEIGHT = 0.3
MEMBER_VOTE_WEIGHT = 0.7
VOTE_SCALE = 10.0


@dataclass(frozen=True)
class GroupScore:
    group_score: float
    member_scores: Dict[str, float]
    min_satisfaction: float


def calculate_group_centroid(members: Sequence[MemberProfile]) -> np.ndarray | None:
    with_vectors = [m for m in members if m.preference_vector is not None]
    if not with_vectors:
        return None

    dimension = with_vectors[0].preference_vector.shape[0]
    centroid = np.zeros(dimension, dtype=np.float64)
    total_weight = 0.0
    for member in with_vectors:
        vector = member.preference_vector
        if vector.shape[0] != dimension:
            raise DimensionMismatchError(dimension, vector.shape[0], f"member {member.user_id}")
        weight = member.weight * member.confidence
        total_weight += weight
        centroid += vector.astype(np.float64) * weight

    if total_weight > 0:
        centroid /= total_weight
    return normalize(centroid)


def calculate_member_satisfaction(
    embedding: np.ndarray | Sequence[float], member: MemberProfile
) -> float:
    if member.preference_vector is None:
        return NEUTRAL_SATISFACTION
    similarity = cosine_similarity(embedding, member.preference_vector)
    return max(0.0, min(1.0, similarity))


def calculate_group_score(
    embedding: np.ndarray | Sequence[float], members: Sequence[MemberProfile]
) -> GroupScore:
    if not members:
        return GroupScore(group_score=0.0, member_scores={}, min_satisfaction=0.0)

    member_scores: Dict[str, float] = {}
    weighted_total = 0.0
    total_weight = 0.0
    for member in members:
        satisfaction = calculate_member_satisfaction(embedding, member)
        member_scores[member.user_id] = satisfaction
        weighted_total += satisfaction * member.weight
        total_weight += member.weight

    min_satisfaction = min(member_scores.values())
    average = weighted_total / total_weight
    group_score = (
        MIN_SATISFACTION_WEIGHT * min_satisfaction + AVERAGE_SATISFACTION_WEIGHT * average
    )
    return GroupScore(
        group_score=group_score,
        member_scores=member_scores,
        min_satisfaction=min_satisfaction,
    )


def calculate_fairness_score(member_scores: Mapping[str, float]) -> float:
    """``1 - Gini`` of the members' satisfaction; 1.0 means perfectly even."""
    scores = np.array(list(member_scores.values()), dtype=np.float64)
    n = scores.size
    if n <= 1:
        return 1.0
    total = float(scores.sum())
    if total == 0.0:
        return 0.0
    differences = float(np.abs(scores[:, None] - scores[None, :]).sum())
    gini = differences / (2.0 * n * total)
    return max(0.0, min(1.0, 1.0 - gini))


def _validate_threshold(threshold: float) -> float:
    if not 0.0 <= threshold <= 1.0:
        raise InvalidFairnessThresholdError(
            f"Fairness threshold must be between 0 and 1 (got {threshold})"
        )
    return float(threshold)


def rank_group_candidates(
    candidates: Sequence[Candidate],
    members: Sequence[MemberProfile],
    fairness_threshold: float = GROUP_FAIRNESS_THRESHOLD,
    diagnostics: DiagnosticsChannel | None = None,
) -> List[GroupCandidate]:
    threshold = _validate_threshold(fairness_threshold)
    if not candidates or not members:
        return []

    channel = diagnostics or default_channel
    scored: List[GroupCandidate] = []
    dropped = 0
    for candidate in candidates:
        if candidate.embedding is None:
            channel.emit(
                "group.no_embedding",
                __name__,
                f"Missing embedding for content {candidate.content_id}; skipped for group",
                content_id=candidate.content_id,
            )
            continue

        result = calculate_group_score(candidate.embedding, members)
        fairness = calculate_fairness_score(result.member_scores)
        if fairness < threshold:
            dropped += 1
            continue

        scored.append(
            GroupCandidate(
                content=candidate,
                group_score=result.group_score,
                member_scores=result.member_scores,
                fairness_score=fairness,
            )
        )

    scored.sort(key=lambda c: c.group_score, reverse=True)
    logger.debug(
        "Group ranking kept %d candidates; %d below fairness %.2f.",
        len(scored),
        dropped,
        threshold,
    )
    return scored


def apply_context_boosts(
    candidates: Sequence[GroupCandidate],
    context: RecommendationContext | None,
    default_runtime: int = GROUP_DEFAULT_RUNTIME,
) -> List[GroupCandidate]:
    boosted: List[GroupCandidate] = []
    for candidate in candidates:
        boost = 1.0
        if context is not None and context.available_time:
            runtime = candidate.content.runtime or default_runtime
            available = float(context.available_time)
            time_fit = 1.0 - abs(runtime - available) / available
            boost *= 1.0 + max(0.0, time_fit) * TIME_FIT_BOOST
        boosted.append(
            replace(
                candidate,
                group_score=candidate.group_score * boost,
                member_scores=dict(candidate.member_scores),
                votes=dict(candidate.votes),
            )
        )

    boosted.sort(key=lambda c: c.group_score, reverse=True)
    return boosted


def calculate_vote_score(candidate: GroupCandidate) -> float:
    votes = list(candidate.votes.values())
    if not votes:
        return candidate.group_score
    mean_vote = sum(votes) / len(votes)
    return (
        ALGORITHM_VOTE_WEIGHT * candidate.group_score
        + MEMBER_VOTE_WEIGHT * (mean_vote / VOTE_SCALE)
    )


def process_votes(
    candidates: Sequence[GroupCandidate],
    votes: Mapping[str, Mapping[int, float]],
) -> GroupCandidate | None:
    """Merge ``user_id -> content_id -> score`` votes in place and pick the winner."""
    if not candidates:
        return None

    for candidate in candidates:
        content_id = candidate.content.content_id
        for user_id, content_votes in votes.items():
            if content_id in content_votes:
                candidate.votes[user_id] = float(content_votes[content_id])

    winner = candidates[0]
    best = calculate_vote_score(winner)
    for candidate in candidates[1:]:
        score = calculate_vote_score(candidate)
        if score > best:
            best = score
            winner = candidate
    return winner


def generate_group_explanation(candidate: GroupCandidate) -> str:
    levels = list(candidate.member_scores.values())
    average = sum(levels) / len(levels) if levels else 0.0

    if candidate.fairness_score > 0.9:
        return "Everyone in the group will enjoy this equally"
    if average > 0.7:
        return "Great match for most group members"
    if candidate.fairness_score > 0.7:
        return "Fair compromise that works for everyone"
    return "Balanced choice for the group"


@dataclass
class GroupSession:
    members: List[MemberProfile]
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    context: RecommendationContext = field(default_factory=RecommendationContext)
    status: SessionStatus = SessionStatus.FORMING
    candidates: List[GroupCandidate] = field(default_factory=list)
    winner: Optional[GroupCandidate] = None


class GroupConsensusEngine:
    def __init__(
        self,
        fairness_threshold: float = GROUP_FAIRNESS_THRESHOLD,
        default_runtime: int = GROUP_DEFAULT_RUNTIME,
        diagnostics: DiagnosticsChannel | None = None,
    ):
        self.fairness_threshold = _validate_threshold(fairness_threshold)
        self.default_runtime = default_runtime
        self.diagnostics = diagnostics or default_channel

    def centroid(self, members: Sequence[MemberProfile]) -> np.ndarray | None:
        return calculate_group_centroid(members)

    def rank(
        self,
        candidates: Sequence[Candidate],
        members: Sequence[MemberProfile],
        context: RecommendationContext | None = None,
    ) -> List[GroupCandidate]:
        ranked = rank_group_candidates(
            candidates,
            members,
            fairness_threshold=self.fairness_threshold,
            diagnostics=self.diagnostics,
        )
        if context is None:
            return ranked
        return apply_context_boosts(ranked, context, self.default_runtime)

    def score_session(
        self,
        session: GroupSession,
        candidates: Sequence[Candidate],
        limit: int | None = None,
    ) -> List[GroupCandidate]:
        if session.status not in (SessionStatus.FORMING, SessionStatus.SCORING):
            raise InvalidSessionTransitionError(
                f"Cannot score session {session.session_id} in status '{session.status.value}'"
            )
        session.status = SessionStatus.SCORING
        ranked = self.rank(candidates, session.members, session.context)
        if limit is not None:
            ranked = ranked[:limit]
        session.candidates = ranked
        session.status = SessionStatus.VOTING
        logger.info(
            "Group session %s scored | members=%d candidates=%d",
            session.session_id,
            len(session.members),
            len(ranked),
        )
        return ranked

    def resolve_session(
        self,
        session: GroupSession,
        votes: Mapping[str, Mapping[int, float]],
    ) -> GroupCandidate | None:
        if session.status is not SessionStatus.VOTING:
            raise InvalidSessionTransitionError(
                f"Cannot resolve votes for session {session.session_id} in status '{session.status.value}'"
            )
        winner = process_votes(session.candidates, votes)
        session.winner = winner
        session.status = SessionStatus.DECIDED
        logger.info(
            "Group session %s decided | winner=%s",
            session.session_id,
            winner.content.content_id if winner else None,
        )
        return winner
