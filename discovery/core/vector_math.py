from __future__ import annotations

from typing import Any, List, Sequence

import numpy as np

from discovery.config import BATCH_SIMILARITY_CHUNK
from discovery.core.errors import DimensionMismatchError

DEFAULT_LEARNING_RATE = 0.3
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.95


def as_vector(value: Any) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float32)
    if arr.ndim != 1:
        arr = arr.reshape(-1)
    return arr


def dimension_check(a: np.ndarray, b: np.ndarray, context: str | None = None) -> None:
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(a.shape[0], b.shape[0], context)


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two equal-length vectors; 0.0 when either has no magnitude."""
    arr1 = as_vector(a)
    arr2 = as_vector(b)
    dimension_check(arr1, arr2)
    denom = float(np.linalg.norm(arr1) * np.linalg.norm(arr2))
    if denom == 0.0 or not np.isfinite(denom):
        return 0.0
    return float(np.dot(arr1.astype(np.float64), arr2.astype(np.float64)) / denom)


def normalize(vector) -> np.ndarray:
    arr = as_vector(vector)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0 or not np.isfinite(norm):
        return arr.copy()
    return (arr / norm).astype(np.float32)


def update_with_ema(current, new, rate: float) -> np.ndarray:
    """Blend *new* into *current* with an exponential moving average.

    ``rate`` outside (0, 1) extrapolates instead of interpolating; callers clamp.
    """
    new_vec = as_vector(new)
    if current is None:
        return normalize(new_vec)
    current_vec = as_vector(current)
    dimension_check(current_vec, new_vec, "preference update")
    blended = (1.0 - rate) * current_vec.astype(np.float64) + rate * new_vec.astype(
        np.float64
    )
    return normalize(blended)


def batch_similarity(
    query, vectors: Sequence[Any], chunk_size: int | None = None
) -> List[float]:
    """Cosine similarity of *query* against each vector, in input order."""
    query_vec = as_vector(query).astype(np.float64)
    size = chunk_size or BATCH_SIMILARITY_CHUNK
    query_norm = float(np.linalg.norm(query_vec))
    similarities: List[float] = []

    for start in range(0, len(vectors), size):
        chunk = [as_vector(vec) for vec in vectors[start : start + size]]
        for vec in chunk:
            dimension_check(query_vec, vec)
        matrix = np.vstack(chunk).astype(np.float64)
        dots = matrix @ query_vec
        denoms = np.linalg.norm(matrix, axis=1) * query_norm
        for dot, denom in zip(dots, denoms):
            if denom == 0.0 or not np.isfinite(denom):
                similarities.append(0.0)
            else:
                similarities.append(float(dot / denom))
    return similarities


def calculate_learning_rate(confidence: float, signal_strength: float) -> float:
    # Uncertain profiles learn faster; strong signals count more.
    alpha = DEFAULT_LEARNING_RATE
    alpha *= 1 + (1 - confidence)
    alpha *= 0.5 + signal_strength * 0.5
    return min(max(alpha, 0.1), 0.7)


def update_confidence(confidence: float, signal_strength: float) -> float:
    if signal_strength > 0.5:
        delta = (1 - confidence) * 0.1
    else:
        delta = -confidence * 0.05
    return min(max(confidence + delta, MIN_CONFIDENCE), MAX_CONFIDENCE)


def combine_query_with_preferences(
    query,
    preference_vector,
    confidence: float,
    query_weight: float = 0.7,
) -> np.ndarray:
    query_vec = as_vector(query)
    if preference_vector is None:
        return query_vec
    pref_vec = as_vector(preference_vector)
    dimension_check(query_vec, pref_vec, "query/preference blend")

    preference_weight = (1.0 - query_weight) * confidence
    blended = (1.0 - preference_weight) * query_vec.astype(
        np.float64
    ) + preference_weight * pref_vec.astype(np.float64)
    return normalize(blended)
