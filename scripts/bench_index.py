"""Benchmark vector index backends on a random corpus.

Recall@k is measured against the exact linear scan.
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Dict, List, Sequence

import numpy as np

from discovery.core.diagnostics import DiagnosticsChannel
from discovery.core.vector_index import IndexConfig, VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class BackendReport:
    backend: str
    requested: str
    build_ms: float
    avg_search_ms: float
    recall_at_k: float


@dataclass
class BenchReport:
    elements: int
    dimension: int
    queries: int
    k: int
    metric: str
    backends: List[BackendReport]


def generate_corpus(
    elements: int, dimension: int, seed: int = 0
) -> Dict[int, np.ndarray]:
    rng = np.random.default_rng(seed)
    matrix = rng.standard_normal((elements, dimension)).astype(np.float32)
    return {content_id: matrix[content_id] for content_id in range(elements)}


def recall_at_k(truth: Sequence[Sequence[int]], found: Sequence[Sequence[int]]) -> float:
    if not truth:
        return 0.0
    total = 0.0
    for expected, actual in zip(truth, found):
        if not expected:
            continue
        total += len(set(expected) & set(actual)) / len(expected)
    return total / len(truth)


def _run_backend(
    backend: str,
    corpus: Dict[int, np.ndarray],
    queries: np.ndarray,
    k: int,
    metric: str,
) -> tuple[VectorIndex, float, List[List[int]]]:
    config = IndexConfig(
        dimension=queries.shape[1],
        metric=metric,
        backend=backend,
        max_elements=max(len(corpus), 1),
    )
    index = VectorIndex(config, diagnostics=DiagnosticsChannel())
    start = time.perf_counter()
    index.build(corpus)
    build_ms = (time.perf_counter() - start) * 1000.0
    results = [[hit.content_id for hit in index.search(query, k)] for query in queries]
    return index, build_ms, results


def run_benchmark(
    elements: int = 2000,
    dimension: int = 64,
    queries: int = 50,
    k: int = 10,
    metric: str = "cosine",
    backends: Sequence[str] = ("exact", "hnsw"),
    seed: int = 0,
) -> BenchReport:
    corpus = generate_corpus(elements, dimension, seed)
    query_matrix = generate_corpus(queries, dimension, seed + 1)
    query_vectors = np.vstack(list(query_matrix.values())) if queries else np.zeros((0, dimension))

    _, _, truth = _run_backend("exact", corpus, query_vectors, k, metric)

    reports: List[BackendReport] = []
    for requested in backends:
        index, build_ms, found = _run_backend(requested, corpus, query_vectors, k, metric)
        stats = index.stats()
        reports.append(
            BackendReport(
                backend=stats.backend,
                requested=requested,
                build_ms=build_ms,
                avg_search_ms=stats.avg_search_latency_ms,
                recall_at_k=recall_at_k(truth, found),
            )
        )
        logger.info(
            "Benchmarked %s (as %s): recall@%d=%.3f avg_search=%.3fms",
            requested,
            stats.backend,
            k,
            reports[-1].recall_at_k,
            stats.avg_search_latency_ms,
        )

    return BenchReport(
        elements=elements,
        dimension=dimension,
        queries=queries,
        k=k,
        metric=metric,
        backends=reports,
    )


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark vector index backends.")
    parser.add_argument("--elements", type=int, default=2000, help="Corpus size.")
    parser.add_argument("--dimension", type=int, default=64, help="Vector dimension.")
    parser.add_argument("--queries", type=int, default=50, help="Number of queries.")
    parser.add_argument("--k", type=int, default=10, help="Neighbours per query.")
    parser.add_argument(
        "--metric",
        choices=("cosine", "l2", "ip"),
        default="cosine",
        help="Distance metric.",
    )
    parser.add_argument(
        "--backend",
        dest="backends",
        action="append",
        choices=("exact", "hnsw", "auto"),
        help="Backend to benchmark; repeat for several (default: exact and hnsw).",
    )
    parser.add_argument("--seed", type=int, default=0, help="Random seed.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> BenchReport:
    args = _parse_args(argv)
    report = run_benchmark(
        elements=args.elements,
        dimension=args.dimension,
        queries=args.queries,
        k=args.k,
        metric=args.metric,
        backends=args.backends or ("exact", "hnsw"),
        seed=args.seed,
    )
    print(json.dumps(asdict(report), indent=2))
    return report


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(level=logging.INFO)
    main()
