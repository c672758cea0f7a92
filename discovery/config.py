from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = {"auto", "hnsw", "exact"}
SUPPORTED_METRICS = {"cosine", "l2", "ip"}


def _float_from_env(name: str, default: float) -> float:
    """Read a float override from the environment, falling back to *default*."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int_from_env(name: str, default: int) -> int:
    """Read an integer override from the environment, falling back to *default*."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_from_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


EMBEDDING_DIM = max(1, _int_from_env("EMBEDDING_DIM", 768))
BATCH_SIMILARITY_CHUNK = max(1, _int_from_env("BATCH_SIMILARITY_CHUNK", 100))

MMR_LAMBDA = _float_from_env("MMR_LAMBDA", 0.85)
GENRE_MIN_PER_GENRE = max(0, _int_from_env("GENRE_MIN_PER_GENRE", 1))
GENRE_MAX_PER_GENRE = max(1, _int_from_env("GENRE_MAX_PER_GENRE", 5))
GENRE_ENFORCE_DISTRIBUTION = _bool_from_env("GENRE_ENFORCE_DISTRIBUTION", True)

RERANK_WEIGHT_SIMILARITY = _float_from_env("RERANK_WEIGHT_SIMILARITY", 0.5)
RERANK_WEIGHT_PERSONALIZATION = _float_from_env("RERANK_WEIGHT_PERSONALIZATION", 0.25)
RERANK_WEIGHT_RECENCY = _float_from_env("RERANK_WEIGHT_RECENCY", 0.15)
RERANK_WEIGHT_POPULARITY = _float_from_env("RERANK_WEIGHT_POPULARITY", 0.1)
MAX_POPULARITY = _float_from_env("MAX_POPULARITY", 1000.0)

GROUP_FAIRNESS_THRESHOLD = _float_from_env("GROUP_FAIRNESS_THRESHOLD", 0.6)
GROUP_DEFAULT_RUNTIME = max(1, _int_from_env("GROUP_DEFAULT_RUNTIME", 120))

EMBED_CACHE_TTL = max(1, _int_from_env("EMBED_CACHE_TTL", 600))
EMBED_CACHE_MAXSIZE = max(16, _int_from_env("EMBED_CACHE_MAXSIZE", 2048))


@dataclass(frozen=True)
class IndexSettings:
    dimension: int
    backend: str
    metric: str
    m: int
    ef_construction: int
    ef_search: int
    max_elements: int
    rebuild_threshold: float


@lru_cache(maxsize=1)
def get_index_settings() -> IndexSettings:
    backend = os.getenv("INDEX_BACKEND", "auto").strip().lower()
    if backend not in SUPPORTED_BACKENDS:
        logger.warning("Unsupported INDEX_BACKEND '%s'; falling back to 'auto'.", backend)
        backend = "auto"

    metric = os.getenv("INDEX_METRIC", "cosine").strip().lower()
    if metric not in SUPPORTED_METRICS:
        logger.warning("Unsupported INDEX_METRIC '%s'; falling back to 'cosine'.", metric)
        metric = "cosine"

    rebuild_threshold = _float_from_env("INDEX_REBUILD_THRESHOLD", 0.1)
    if rebuild_threshold <= 0:
        logger.warning(
            "Invalid INDEX_REBUILD_THRESHOLD value '%s'; using default.",
            rebuild_threshold,
        )
        rebuild_threshold = 0.1

    return IndexSettings(
        dimension=EMBEDDING_DIM,
        backend=backend,
        metric=metric,
        m=max(2, _int_from_env("HNSW_M", 16)),
        ef_construction=max(1, _int_from_env("HNSW_EF_CONSTRUCTION", 200)),
        ef_search=max(1, _int_from_env("HNSW_EF_SEARCH", 100)),
        max_elements=max(1, _int_from_env("INDEX_MAX_ELEMENTS", 100000)),
        rebuild_threshold=rebuild_threshold,
    )
