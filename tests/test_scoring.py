"""Tests for per-kind distance metrics and top-k selection."""

import numpy as np
import pytest

from image_retrieval.model import FeatureKind
from image_retrieval.registry import FEATURES
from image_retrieval.scoring import (
    l1_distance, l2_distance, l2_distance_batch, tanimoto_distance,
    tanimoto_distance_batch, jensen_shannon_distance, correlogram_distance,
    top_k,
)

ALL_KINDS = list(FeatureKind)


@pytest.fixture
def payloads(red_square_image, blue_circle_image, noise_image, textured_image):
    """Real payloads of every kind for four distinct images."""
    images = [red_square_image, blue_circle_image, noise_image, textured_image]
    return {kind: [FEATURES[kind].extract(img).astype(np.float64) for img in images]
            for kind in ALL_KINDS}


class TestMetricContracts:
    """Reflexivity, symmetry and non-negativity for every kind."""

    @pytest.mark.parametrize("kind", ALL_KINDS)
    def test_self_distance_is_zero(self, kind, payloads):
        spec = FEATURES[kind]
        for vec in payloads[kind]:
            assert spec.distance(vec, vec) == 0

    @pytest.mark.parametrize("kind", ALL_KINDS)
    def test_symmetric(self, kind, payloads):
        spec = FEATURES[kind]
        vecs = payloads[kind]
        for a in vecs:
            for b in vecs:
                assert spec.distance(a, b) == pytest.approx(spec.distance(b, a), rel=1e-12)

    @pytest.mark.parametrize("kind", ALL_KINDS)
    def test_distinct_images_positive(self, kind, payloads):
        spec = FEATURES[kind]
        a, b = payloads[kind][0], payloads[kind][2]
        distance = spec.distance(a, b)
        assert np.isfinite(distance)
        assert distance > 0

    @pytest.mark.parametrize("kind", ALL_KINDS)
    def test_batch_matches_pairwise(self, kind, payloads):
        spec = FEATURES[kind]
        matrix = np.vstack(payloads[kind])
        query = payloads[kind][1]
        batch = spec.distance_batch(query, matrix)
        expected = [spec.distance(query, row) for row in matrix]
        assert batch == pytest.approx(expected, rel=1e-4, abs=1e-4)

    @pytest.mark.parametrize("kind", ALL_KINDS)
    def test_batch_self_row_is_best(self, kind, payloads):
        spec = FEATURES[kind]
        matrix = np.vstack(payloads[kind]).astype(np.float32)
        batch = spec.distance_batch(matrix[2], matrix)
        assert batch[2] == pytest.approx(0.0, abs=1e-6)
        assert int(np.argmin(batch)) == 2


class TestSpecificMetrics:

    def test_l1(self):
        assert l1_distance([0, 1, 2], [1, 1, 0]) == 3

    def test_l2(self):
        assert l2_distance([0, 0], [3, 4]) == pytest.approx(5.0)

    def test_l2_batch_uses_all_rows(self):
        matrix = np.array([[3, 4], [0, 0], [6, 8]], dtype=np.float32)
        scores = l2_distance_batch(np.zeros(2), matrix)
        assert scores.tolist() == pytest.approx([5.0, 0.0, 10.0])

    def test_l2_batch_empty(self):
        assert len(l2_distance_batch(np.zeros(2), np.zeros((0, 2)))) == 0

    def test_tanimoto_empty_vectors_identical(self):
        assert tanimoto_distance(np.zeros(4), np.zeros(4)) == 0.0
        assert tanimoto_distance_batch(np.zeros(4), np.zeros((2, 4))).tolist() == [0.0, 0.0]

    def test_tanimoto_disjoint_is_one(self):
        assert tanimoto_distance([1, 0], [0, 1]) == pytest.approx(1.0)

    def test_jensen_shannon_bounded(self):
        # Disjoint distributions reach the maximum, ln 2
        assert jensen_shannon_distance([1, 0], [0, 1]) == pytest.approx(np.log(2))

    def test_correlogram_normalized(self):
        assert correlogram_distance([1.0, 0.0], [0.0, 0.0]) == pytest.approx(0.5)


class TestTopK:
    """Tests for ranking."""

    def test_ranks_ascending(self):
        ranked = top_k([0.5, 0.1, 0.3], ["a", "b", "c"], 3)
        assert [doc for _, doc in ranked] == ["b", "c", "a"]

    def test_ties_broken_by_id(self):
        ranked = top_k([0.2, 0.2, 0.2], ["c", "a", "b"], 2)
        assert ranked == [(0.2, "a"), (0.2, "b")]

    def test_k_larger_than_candidates(self):
        assert len(top_k([1.0, 2.0], ["a", "b"], 10)) == 2

    def test_non_positive_k(self):
        assert top_k([1.0], ["a"], 0) == []
        assert top_k([1.0], ["a"], -3) == []

    def test_empty(self):
        assert top_k([], [], 5) == []
