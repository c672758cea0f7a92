from __future__ import annotations

from dataclasses import replace
from threading import Lock
from typing import Any, Callable, List, Sequence

import numpy as np
from cachetools import TTLCache

from discovery.config import EMBED_CACHE_MAXSIZE, EMBED_CACHE_TTL
from discovery.core.diagnostics import DiagnosticsChannel, default_channel, get_logger
from discovery.core.types import Candidate
from discovery.core.vector_math import as_vector

logger = get_logger(__name__)

EmbeddingFn = Callable[[str], Any]


def text_for(candidate: Candidate) -> str:
    parts: List[str] = []
    if candidate.title:
        parts.append(candidate.title.strip())
    if candidate.genres:
        parts.append("Genres: " + ", ".join(candidate.genres))
    if not parts:
        parts.append(f"{candidate.media_type.value} {candidate.content_id}")
    return ". ".join(parts)


class EmbeddingResolver:
    """Caches text embeddings from an external generator.

    Failed lookups (``None``) are not cached so a later call can retry.
    """

    def __init__(
        self,
        generate_embedding: EmbeddingFn,
        ttl: int = EMBED_CACHE_TTL,
        maxsize: int = EMBED_CACHE_MAXSIZE,
        diagnostics: DiagnosticsChannel | None = None,
    ):
        self._generate = generate_embedding
        self._cache: TTLCache[str, np.ndarray] = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = Lock()
        self.diagnostics = diagnostics or default_channel

    @staticmethod
    def cache_key(text: str) -> str:
        return text.strip().lower()

    def embed(self, text: str) -> np.ndarray | None:
        key = self.cache_key(text)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        raw = self._generate(text)
        if raw is None:
            return None
        vector = as_vector(raw)
        with self._lock:
            self._cache[key] = vector
        return vector

    def resolve(self, candidates: Sequence[Candidate]) -> List[Candidate]:
        """Attach embeddings to candidates that lack one; drop the ones that fail."""
        resolved: List[Candidate] = []
        for candidate in candidates:
            if candidate.embedding is not None:
                resolved.append(candidate)
                continue
            vector = self.embed(text_for(candidate))
            if vector is None:
                self.diagnostics.emit(
                    "embedding.unresolved",
                    __name__,
                    f"No embedding available for content {candidate.content_id}",
                    content_id=candidate.content_id,
                )
                continue
            resolved.append(replace(candidate, embedding=vector))
        return resolved

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
