import numpy as np
import pytest

from facepeople.errors import DimensionMismatch
from facepeople.similarity import (
    ScoredCandidate, batch_similarity, cosine_similarity, euclidean_distance, similarity_level,
    similarity_matrix, top_k,
)


def test_self_similarity_is_one():
    v = [0.3, -1.2, 4.0, 0.5]
    assert cosine_similarity(v, v) == pytest.approx(1.0)


def test_similarity_is_symmetric():
    rng = np.random.default_rng(0)
    a, b = rng.normal(size=16), rng.normal(size=16)
    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))


def test_length_mismatch_raises():
    with pytest.raises(DimensionMismatch) as excinfo:
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])
    assert excinfo.value.expected == 2
    assert excinfo.value.actual == 3
    assert isinstance(excinfo.value, ValueError)


def test_zero_vector_scores_zero():
    assert cosine_similarity([0.0, 0.0, 0.0], [1.0, 2.0, 3.0]) == 0.0


def test_orthogonal_and_opposite():
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)


def test_euclidean_distance():
    assert euclidean_distance([0, 0], [3, 4]) == pytest.approx(5.0)
    with pytest.raises(DimensionMismatch):
        euclidean_distance([0, 0], [0, 0, 0])


def test_batch_similarity_orders_by_score_then_id():
    query = [1.0, 0.0]
    candidates = [(5, [1.0, 0.0]), (2, [0.0, 1.0]), (3, [1.0, 0.0]), (9, [0.6, 0.8])]
    ranked = batch_similarity(query, candidates)
    assert [c.candidate_id for c in ranked] == [3, 5, 9, 2]
    assert ranked[2].score == pytest.approx(0.6)


def test_batch_similarity_rejects_mixed_dimensions():
    with pytest.raises(DimensionMismatch):
        batch_similarity([1.0, 0.0], [(1, [1.0, 0.0]), (2, [1.0, 0.0, 0.0])])


def test_batch_similarity_empty():
    assert batch_similarity([1.0, 0.0], []) == []


def test_top_k_filters_and_limits():
    scored = [ScoredCandidate(1, 0.2), ScoredCandidate(2, 0.9), ScoredCandidate(3, 0.9), ScoredCandidate(4, 0.5)]
    assert top_k(scored, 2) == [ScoredCandidate(2, 0.9), ScoredCandidate(3, 0.9)]
    assert [s.candidate_id for s in top_k(scored, 10, min_score=0.5)] == [2, 3, 4]
    assert top_k(scored, 0) == []


def test_similarity_matrix_shape():
    a = np.eye(3)
    b = np.array([[1.0, 0.0, 0.0], [0.0, 2.0, 0.0]])
    m = similarity_matrix(a, b)
    assert m.shape == (3, 2)
    assert m[1, 1] == pytest.approx(1.0)
    assert m[2, 0] == pytest.approx(0.0)


def test_similarity_level_buckets():
    assert similarity_level(0.85) == "high"
    assert similarity_level(0.7) == "high"
    assert similarity_level(0.5) == "medium"
    assert similarity_level(0.1) == "low"
