"""In-memory k-nearest-neighbour index over content embeddings.

Two interchangeable backends sit behind :class:`VectorIndexBackend`:

* ``hnsw`` - a FAISS ``IndexHNSWFlat`` graph, sub-linear and approximate.
* ``exact`` - a numpy linear scan, used whenever FAISS is not installed.

The backend is chosen once, when the index is constructed. Both report
distances with the same conventions so callers receive identically shaped
results:

* ``cosine``: cosine distance ``1 - cos`` in [0, 2]; similarity ``1 - d / 2``
* ``l2``: squared euclidean distance; similarity ``exp(-d)``
* ``ip``: raw inner product (higher is closer); similarity ``clamp(d, 0, 1)``
"""

from __future__ import annotations

import importlib.util
import logging
import math
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, replace
from threading import Condition, Lock
from typing import Dict, Iterator, List, Mapping, Sequence, Tuple

import numpy as np

from discovery.config import get_index_settings
from discovery.core.diagnostics import DiagnosticsChannel, default_channel, get_logger
from discovery.core.errors import (
    DimensionMismatchError,
    IndexCapacityError,
    IndexNotBuiltError,
    InvalidParameterError,
)
from discovery.core.types import IndexStats, SearchHit
from discovery.core.vector_math import as_vector

logger = get_logger(__name__)

_FREE = -1


@dataclass(frozen=True)
class IndexConfig:
    dimension: int = 768
    metric: str = "cosine"
    backend: str = "auto"
    m: int = 16
    ef_construction: int = 200
    ef_search: int = 100
    max_elements: int = 100000
    rebuild_threshold: float = 0.1

    def __post_init__(self) -> None:
        if self.metric not in {"cosine", "l2", "ip"}:
            raise InvalidParameterError(f"Unsupported metric '{self.metric}'")
        if self.backend not in {"auto", "hnsw", "exact"}:
            raise InvalidParameterError(f"Unsupported backend '{self.backend}'")
        if self.dimension <= 0:
            raise InvalidParameterError("Index dimension must be positive")


@dataclass(frozen=True)
class IndexEntry:
    label: int
    content_id: int
    generation: int


def distance_to_similarity(distance: float, metric: str) -> float:
    if metric == "cosine":
        return 1.0 - distance / 2.0
    if metric == "l2":
        return math.exp(-distance)
    if metric == "ip":
        return max(0.0, min(1.0, distance))
    return 1.0 - min(1.0, distance / 2.0)


class _ReadWriteLock:
    """Many concurrent readers or a single writer. New readers wait while a writer is queued."""

    def __init__(self) -> None:
        self._cond = Condition(Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class _SlotArena:
    """Fixed-capacity label slots mapped to caller content ids.

    Labels are handed out sequentially and never reused until the next
    ``reset``; removal only frees the slot. Each reset bumps ``generation`` so
    labels minted by an earlier build can never resolve against a new one.
    """

    def __init__(self) -> None:
        self.generation = 0
        self.capacity = 0
        self.next_label = 0
        self._content_ids = np.zeros(0, dtype=np.int64)
        self._generations = np.zeros(0, dtype=np.int64)
        self._labels: Dict[int, int] = {}
        self._vectors: Dict[int, np.ndarray] = {}

    def reset(self, capacity: int) -> None:
        self.generation += 1
        self.capacity = capacity
        self.next_label = 0
        self._content_ids = np.full(capacity, _FREE, dtype=np.int64)
        self._generations = np.zeros(capacity, dtype=np.int64)
        self._labels = {}
        self._vectors = {}

    def __len__(self) -> int:
        return len(self._labels)

    def __contains__(self, content_id: int) -> bool:
        return content_id in self._labels

    def allocate(self, content_id: int, vector: np.ndarray) -> IndexEntry:
        if self.next_label >= self.capacity:
            raise IndexCapacityError(
                f"Index capacity of {self.capacity} labels exhausted; rebuild with a larger max_elements"
            )
        label = self.next_label
        self.next_label += 1
        self._content_ids[label] = content_id
        self._generations[label] = self.generation
        self._labels[content_id] = label
        self._vectors[content_id] = vector
        return IndexEntry(label=label, content_id=content_id, generation=self.generation)

    def release(self, content_id: int) -> int | None:
        label = self._labels.pop(content_id, None)
        if label is None:
            return None
        self._content_ids[label] = _FREE
        self._vectors.pop(content_id, None)
        return label

    def resolve(self, label: int) -> int | None:
        if label < 0 or label >= self.next_label:
            return None
        if self._generations[label] != self.generation:
            return None
        content_id = int(self._content_ids[label])
        return None if content_id == _FREE else content_id

    def label_of(self, content_id: int) -> int | None:
        return self._labels.get(content_id)

    def vector_of(self, content_id: int) -> np.ndarray | None:
        return self._vectors.get(content_id)

    def content_ids(self) -> List[int]:
        return list(self._labels.keys())

    @property
    def tombstones(self) -> int:
        return self.next_label - len(self._labels)


class VectorIndexBackend(ABC):
    name: str = "backend"
    approximate: bool = False

    @abstractmethod
    def reset(self, dimension: int, metric: str, capacity: int) -> None:
        ...

    @abstractmethod
    def add(self, labels: np.ndarray, vectors: np.ndarray) -> None:
        ...

    @abstractmethod
    def remove(self, label: int) -> None:
        ...

    @abstractmethod
    def knn(self, query: np.ndarray, k: int) -> List[Tuple[int, float]]:
        """Return up to *k* ``(label, distance)`` pairs, closest first."""


def _prepare(vectors: np.ndarray, metric: str) -> np.ndarray:
    matrix = np.ascontiguousarray(vectors, dtype=np.float32)
    if metric != "cosine":
        return matrix
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return np.ascontiguousarray(matrix / norms, dtype=np.float32)


class ExactScanBackend(VectorIndexBackend):
    name = "exact"
    approximate = False

    def __init__(self) -> None:
        self._metric = "cosine"
        self._matrix = np.zeros((0, 0), dtype=np.float32)
        self._alive = np.zeros(0, dtype=bool)
        self._size = 0

    def reset(self, dimension: int, metric: str, capacity: int) -> None:
        self._metric = metric
        self._matrix = np.zeros((0, dimension), dtype=np.float32)
        self._alive = np.zeros(0, dtype=bool)
        self._size = 0

    def _ensure_rows(self, rows: int) -> None:
        if rows <= self._matrix.shape[0]:
            return
        new_rows = max(rows, self._matrix.shape[0] * 2, 16)
        grown = np.zeros((new_rows, self._matrix.shape[1]), dtype=np.float32)
        grown[: self._matrix.shape[0]] = self._matrix
        alive = np.zeros(new_rows, dtype=bool)
        alive[: self._alive.shape[0]] = self._alive
        self._matrix = grown
        self._alive = alive

    def add(self, labels: np.ndarray, vectors: np.ndarray) -> None:
        if labels.size == 0:
            return
        self._ensure_rows(int(labels.max()) + 1)
        self._matrix[labels] = _prepare(vectors, self._metric)
        self._alive[labels] = True
        self._size = max(self._size, int(labels.max()) + 1)

    def remove(self, label: int) -> None:
        if 0 <= label < self._size:
            self._alive[label] = False

    def knn(self, query: np.ndarray, k: int) -> List[Tuple[int, float]]:
        labels = np.flatnonzero(self._alive[: self._size])
        if labels.size == 0:
            return []
        rows = self._matrix[labels]
        prepared = _prepare(query.reshape(1, -1), self._metric)[0]

        if self._metric == "l2":
            diffs = rows - prepared
            distances = np.einsum("ij,ij->i", diffs, diffs)
            order = np.argsort(distances, kind="stable")
        elif self._metric == "ip":
            distances = rows @ prepared
            order = np.argsort(-distances, kind="stable")
        else:
            distances = 1.0 - rows @ prepared
            order = np.argsort(distances, kind="stable")

        order = order[:k]
        return [(int(labels[i]), float(distances[i])) for i in order]


class HNSWBackend(VectorIndexBackend):
    name = "hnsw"
    approximate = True

    def __init__(self, m: int = 16, ef_construction: int = 200, ef_search: int = 100):
        import faiss  # local import; only needed when the graph backend is selected

        self._faiss = faiss
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self._metric = "cosine"
        self._index = None

    def reset(self, dimension: int, metric: str, capacity: int) -> None:
        faiss = self._faiss
        self._metric = metric
        faiss_metric = faiss.METRIC_L2 if metric == "l2" else faiss.METRIC_INNER_PRODUCT
        graph = faiss.IndexHNSWFlat(dimension, self.m, faiss_metric)
        graph.hnsw.efConstruction = self.ef_construction
        graph.hnsw.efSearch = self.ef_search
        self._index = faiss.IndexIDMap(graph)

    def add(self, labels: np.ndarray, vectors: np.ndarray) -> None:
        if labels.size == 0:
            return
        self._index.add_with_ids(
            _prepare(vectors, self._metric), np.ascontiguousarray(labels, dtype=np.int64)
        )

    def remove(self, label: int) -> None:
        # HNSW graphs do not support deletion; the arena tombstones the label.
        logger.debug("HNSW backend keeps label %s in the graph until rebuild.", label)

    def knn(self, query: np.ndarray, k: int) -> List[Tuple[int, float]]:
        if self._index is None or self._index.ntotal == 0:
            return []
        k = min(k, int(self._index.ntotal))
        prepared = _prepare(query.reshape(1, -1), self._metric)
        scores, labels = self._index.search(prepared, k)
        results: List[Tuple[int, float]] = []
        for label, score in zip(labels[0], scores[0]):
            if label < 0:
                continue
            if self._metric == "cosine":
                results.append((int(label), float(1.0 - score)))
            else:
                results.append((int(label), float(score)))
        return results


def _faiss_available() -> bool:
    return importlib.util.find_spec("faiss") is not None


class VectorIndex:
    def __init__(
        self,
        config: IndexConfig | None = None,
        diagnostics: DiagnosticsChannel | None = None,
    ):
        self.config = config or IndexConfig()
        self.diagnostics = diagnostics or default_channel
        self._backend = self._select_backend()
        self._arena = _SlotArena()
        self._lock = _ReadWriteLock()
        self._stats_lock = Lock()
        self._built = False
        self._updates_since_build = 0
        self._total_searches = 0
        self._total_search_ms = 0.0
        self._last_search_ms = 0.0

    def _select_backend(self) -> VectorIndexBackend:
        cfg = self.config
        if cfg.backend == "exact":
            return ExactScanBackend()
        if _faiss_available():
            logger.info("Vector index using FAISS HNSW backend (M=%d).", cfg.m)
            return HNSWBackend(cfg.m, cfg.ef_construction, cfg.ef_search)
        level = logging.WARNING if cfg.backend == "hnsw" else logging.INFO
        self.diagnostics.emit(
            "index.backend_unavailable",
            __name__,
            "FAISS not available; using exact linear-scan search.",
            level=level,
            requested=cfg.backend,
        )
        return ExactScanBackend()

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def is_built(self) -> bool:
        return self._built

    def _check_dimension(self, vector: np.ndarray, context: str) -> None:
        if vector.shape[0] != self.config.dimension:
            raise DimensionMismatchError(self.config.dimension, vector.shape[0], context)

    def build(self, embeddings: Mapping[int, Sequence[float] | np.ndarray]) -> None:
        start = time.perf_counter()
        prepared: List[Tuple[int, np.ndarray]] = []
        for content_id, embedding in embeddings.items():
            vector = as_vector(embedding)
            self._check_dimension(vector, f"content {content_id}")
            prepared.append((int(content_id), vector))

        with self._lock.write_locked():
            capacity = max(len(prepared), self.config.max_elements)
            self._arena.reset(capacity)
            self._backend.reset(self.config.dimension, self.config.metric, capacity)

            if prepared:
                labels = np.array(
                    [self._arena.allocate(cid, vec).label for cid, vec in prepared],
                    dtype=np.int64,
                )
                self._backend.add(labels, np.vstack([vec for _, vec in prepared]))
            self._built = True
            self._updates_since_build = 0

        if not prepared:
            self.diagnostics.emit(
                "index.empty_build",
                __name__,
                "No vectors provided; index is empty.",
            )
            return

        logger.info(
            "Vector index built | backend=%s elements=%d dimension=%d metric=%s duration=%.1fms",
            self._backend.name,
            len(prepared),
            self.config.dimension,
            self.config.metric,
            (time.perf_counter() - start) * 1000.0,
        )

    def search(
        self,
        query: Sequence[float] | np.ndarray,
        k: int,
        threshold: float | None = None,
    ) -> List[SearchHit]:
        if not self._built:
            raise IndexNotBuiltError()
        query_vec = as_vector(query)
        self._check_dimension(query_vec, "query")
        if k <= 0:
            raise InvalidParameterError(f"k must be greater than 0 (got {k})")

        start = time.perf_counter()
        with self._lock.read_locked():
            # Tombstoned labels may still come back from the graph.
            fetch = k + (self._arena.tombstones if self._backend.approximate else 0)
            neighbours = self._backend.knn(query_vec, fetch)
            hits: List[SearchHit] = []
            for label, distance in neighbours:
                content_id = self._arena.resolve(label)
                if content_id is None:
                    continue
                similarity = distance_to_similarity(distance, self.config.metric)
                if threshold is not None and similarity < threshold:
                    continue
                hits.append(
                    SearchHit(content_id=content_id, similarity=similarity, distance=distance)
                )
                if len(hits) >= k:
                    break

        elapsed_ms = (time.perf_counter() - start) * 1000.0
        with self._stats_lock:
            self._last_search_ms = elapsed_ms
            self._total_searches += 1
            self._total_search_ms += elapsed_ms
        return hits

    def add(self, content_id: int, embedding: Sequence[float] | np.ndarray) -> None:
        if not self._built:
            raise IndexNotBuiltError()
        vector = as_vector(embedding)
        self._check_dimension(vector, f"content {content_id}")

        with self._lock.write_locked():
            if content_id in self._arena:
                duplicate = True
            else:
                duplicate = False
                entry = self._arena.allocate(int(content_id), vector)
                self._backend.add(np.array([entry.label], dtype=np.int64), vector.reshape(1, -1))
                self._updates_since_build += 1
            advise = not duplicate and self.needs_rebuild

        if duplicate:
            self.diagnostics.emit(
                "index.duplicate",
                __name__,
                f"Content {content_id} already indexed, skipping",
                content_id=content_id,
            )
            return
        if advise:
            self._advise_rebuild("additions")

    def remove(self, content_id: int) -> None:
        with self._lock.write_locked():
            label = self._arena.release(content_id)
            if label is not None:
                self._backend.remove(label)
                self._updates_since_build += 1
            advise = label is not None and self.needs_rebuild

        if label is None:
            self.diagnostics.emit(
                "index.unknown_id",
                __name__,
                f"Content {content_id} not found in index",
                content_id=content_id,
            )
            return
        if advise:
            self._advise_rebuild("deletions")

    def _advise_rebuild(self, reason: str) -> None:
        self.diagnostics.emit(
            "index.rebuild_advised",
            __name__,
            f"Rebuild threshold reached due to {reason}; consider rebuilding the index",
            level=logging.INFO,
            update_ratio=self.update_ratio,
        )

    @property
    def update_ratio(self) -> float:
        count = len(self._arena)
        if count == 0:
            return 0.0
        return self._updates_since_build / count

    @property
    def needs_rebuild(self) -> bool:
        if len(self._arena) == 0:
            return False
        return self.update_ratio >= self.config.rebuild_threshold

    def has_content(self, content_id: int) -> bool:
        with self._lock.read_locked():
            return content_id in self._arena

    def get_vector(self, content_id: int) -> np.ndarray | None:
        with self._lock.read_locked():
            return self._arena.vector_of(content_id)

    def content_ids(self) -> List[int]:
        with self._lock.read_locked():
            return self._arena.content_ids()

    def stats(self) -> IndexStats:
        with self._stats_lock:
            total = self._total_searches
            avg = self._total_search_ms / total if total else 0.0
            last = self._last_search_ms
        with self._lock.read_locked():
            count = len(self._arena)
            updates = self._updates_since_build
            needs_rebuild = self.needs_rebuild
            generation = self._arena.generation
        return IndexStats(
            count=count,
            dimension=self.config.dimension,
            metric=self.config.metric,
            backend=self._backend.name,
            approximate=self._backend.approximate,
            built=self._built,
            last_search_latency_ms=last,
            avg_search_latency_ms=avg,
            total_searches=total,
            updates_since_build=updates,
            needs_rebuild=needs_rebuild,
            generation=generation,
            m=self.config.m,
            ef_construction=self.config.ef_construction,
            ef_search=self.config.ef_search,
        )


def create_vector_index(
    diagnostics: DiagnosticsChannel | None = None, **overrides
) -> VectorIndex:
    """Build a :class:`VectorIndex` from environment settings plus *overrides*."""
    settings = get_index_settings()
    config = IndexConfig(
        dimension=settings.dimension,
        metric=settings.metric,
        backend=settings.backend,
        m=settings.m,
        ef_construction=settings.ef_construction,
        ef_search=settings.ef_search,
        max_elements=settings.max_elements,
        rebuild_threshold=settings.rebuild_threshold,
    )
    if overrides:
        config = replace(config, **overrides)
    return VectorIndex(config, diagnostics=diagnostics)


def batch_search(
    index: VectorIndex,
    queries: Sequence[Sequence[float] | np.ndarray],
    k: int,
    threshold: float | None = None,
) -> List[List[SearchHit]]:
    return [index.search(query, k, threshold) for query in queries]
