"""
Tests for deepctx.similarity — vector math and the brute-force index.
"""

import math

import pytest

from deepctx.similarity import (
    BruteForceIndex,
    cosine_similarity,
    dot,
    norm,
    normalize,
)


class TestVectorMath:
    def test_dot(self):
        assert dot([1, 2, 3], [4, 5, 6]) == 32

    def test_norm(self):
        assert norm([3, 4]) == 5

    def test_normalize_unit_length(self):
        v = normalize([3.0, 4.0])
        assert v == pytest.approx([0.6, 0.8])

    def test_normalize_zero_vector(self):
        assert normalize([0.0, 0.0]) == [0.0, 0.0]

    def test_cosine_identical(self):
        assert cosine_similarity([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)

    def test_cosine_orthogonal(self):
        assert cosine_similarity([1, 0], [0, 1]) == 0.0

    def test_cosine_opposite(self):
        assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)

    def test_cosine_zero_norm(self):
        assert cosine_similarity([0, 0], [1, 1]) == 0.0
        assert cosine_similarity([1, 1], [0, 0]) == 0.0

    def test_cosine_length_mismatch(self):
        assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0

    def test_cosine_scale_invariant(self):
        a = cosine_similarity([1, 2], [2, 1])
        b = cosine_similarity([10, 20], [2, 1])
        assert math.isclose(a, b)


class TestBruteForceIndex:
    def test_orders_by_similarity(self):
        index = BruteForceIndex()
        candidates = [
            ("far", [0.0, 1.0, 0.0]),
            ("near", [1.0, 0.1, 0.0]),
            ("mid", [1.0, 1.0, 0.0]),
        ]
        ranked = index.search([1.0, 0.0, 0.0], candidates, limit=3)
        assert [item_id for item_id, _ in ranked] == ["near", "mid", "far"]
        sims = [sim for _, sim in ranked]
        assert sims[0] > sims[1] > sims[2]

    def test_limit(self):
        index = BruteForceIndex()
        candidates = [(str(i), [1.0, float(i)]) for i in range(10)]
        assert len(index.search([1.0, 0.0], candidates, limit=4)) == 4

    def test_zero_limit(self):
        assert BruteForceIndex().search([1.0], [("a", [1.0])], limit=0) == []

    def test_ties_keep_candidate_order(self):
        index = BruteForceIndex()
        candidates = [("first", [1.0, 0.0]), ("second", [1.0, 0.0]), ("third", [2.0, 0.0])]
        ranked = index.search([1.0, 0.0], candidates, limit=3)
        assert [item_id for item_id, _ in ranked] == ["first", "second", "third"]

    def test_empty_candidates(self):
        assert BruteForceIndex().search([1.0, 0.0], [], limit=5) == []
