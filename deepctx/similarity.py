"""
Vector similarity and nearest-neighbour search.

Provides the cosine measure used everywhere in deepctx and the search
strategy the store delegates to:

- **cosine_similarity**: ``dot(a, b) / (|a| * |b|)``, 0.0 when either norm
  is zero (never NaN).
- **BruteForceIndex**: exhaustive scan, fine for the hundreds-to-thousands
  of memories a project accumulates.

Any object with the VectorIndex ``search`` signature can replace the brute
force scan (e.g. an approximate index) without changing the store API.
"""

from __future__ import annotations

import heapq
import math
from typing import Iterable, List, Protocol, Sequence, Tuple


# ---------------------------------------------------------------------------
# Vector math
# ---------------------------------------------------------------------------

def dot(a: Sequence[float], b: Sequence[float]) -> float:
    """Inner product of two equal-length vectors."""
    return sum(x * y for x, y in zip(a, b))


def norm(v: Sequence[float]) -> float:
    """Euclidean (L2) norm."""
    return math.sqrt(sum(x * x for x in v))


def normalize(v: Sequence[float]) -> List[float]:
    """Scale to unit length. A zero vector is returned unchanged."""
    n = norm(v)
    if n == 0:
        return list(v)
    return [x / n for x in v]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1].

    Returns 0.0 when either vector has zero norm, and for vectors of
    different length (callers enforce dimensions before searching).
    """
    if len(a) != len(b):
        return 0.0
    na = norm(a)
    nb = norm(b)
    if na == 0 or nb == 0:
        return 0.0
    return dot(a, b) / (na * nb)


# ---------------------------------------------------------------------------
# Search strategies
# ---------------------------------------------------------------------------

class VectorIndex(Protocol):
    """Ranks candidate vectors against a query."""

    def search(
        self,
        query: Sequence[float],
        candidates: Iterable[Tuple[str, Sequence[float]]],
        limit: int,
    ) -> List[Tuple[str, float]]:
        ...


class BruteForceIndex:
    """Exhaustive cosine scan over every candidate.

    Ties on similarity keep candidate order, so callers that feed
    newest-first candidates get newest-first ties.
    """

    def search(
        self,
        query: Sequence[float],
        candidates: Iterable[Tuple[str, Sequence[float]]],
        limit: int,
    ) -> List[Tuple[str, float]]:
        if limit <= 0:
            return []
        scored = (
            (cosine_similarity(query, vec), -pos, item_id)
            for pos, (item_id, vec) in enumerate(candidates)
        )
        top = heapq.nlargest(limit, scored)
        return [(item_id, sim) for sim, _, item_id in top]
