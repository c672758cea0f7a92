from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np

from discovery.core.diagnostics import DiagnosticsChannel, EventRecorder
from discovery.core.types import Candidate, MemberProfile


def unit(*values: float) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float32)
    norm = np.linalg.norm(vec)
    return vec / norm if norm else vec


def make_candidate(
    content_id: int,
    embedding: Sequence[float] | None = None,
    relevance: float = 0.5,
    genres: Iterable[str] = (),
    **kwargs,
) -> Candidate:
    return Candidate(
        content_id=content_id,
        relevance_score=relevance,
        embedding=None if embedding is None else np.asarray(embedding, dtype=np.float32),
        genres=tuple(genres),
        **kwargs,
    )


def make_member(user_id: str, vector: Sequence[float] | None, **kwargs) -> MemberProfile:
    return MemberProfile(user_id=user_id, preference_vector=vector, **kwargs)


def recording_channel() -> tuple[DiagnosticsChannel, EventRecorder]:
    channel = DiagnosticsChannel()
    recorder = EventRecorder()
    channel.subscribe(recorder)
    return channel, recorder
