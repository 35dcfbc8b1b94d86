"""
Vector similarity primitives.

Everything here is pure and stateless.  Scores are cosine similarities
computed in float64; a zero-norm vector scores 0 against anything instead of
dividing by zero.  Vectors of different lengths are a data error and raise
:class:`~facepeople.errors.DimensionMismatch`, never a silent truncation.

Ranked results are ordered by descending score with ties broken by ascending
candidate ID, so identical inputs always produce identical output.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

import numpy as np

from .errors import DimensionMismatch


@dataclass(frozen=True)
class ScoredCandidate:
    candidate_id: int
    score: float


def _as_vector(v: Sequence[float]) -> np.ndarray:
    return np.asarray(v, dtype=np.float64).reshape(-1)


def _as_matrix(m: np.ndarray) -> np.ndarray:
    arr = np.asarray(m, dtype=np.float64)
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    return arr


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``.

    Raises :class:`DimensionMismatch` when the lengths differ and returns 0.0
    when either vector has zero norm.
    """
    va, vb = _as_vector(a), _as_vector(b)
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatch(va.shape[0], vb.shape[0])
    na, nb = np.linalg.norm(va), np.linalg.norm(vb)
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    va, vb = _as_vector(a), _as_vector(b)
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatch(va.shape[0], vb.shape[0])
    return float(np.linalg.norm(va - vb))


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalise each row; zero rows stay zero."""
    arr = _as_matrix(matrix)
    norms = np.linalg.norm(arr, axis=1, keepdims=True)
    safe = np.where(norms == 0.0, 1.0, norms)
    return arr / safe


def similarity_matrix(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Pairwise cosine similarities between the rows of ``a`` and ``b``.

    Returns an array of shape ``(len(a), len(b))``.
    """
    ma, mb = _as_matrix(a), _as_matrix(b)
    if ma.size == 0 or mb.size == 0:
        return np.zeros((ma.shape[0] if ma.size else 0, mb.shape[0] if mb.size else 0))
    if ma.shape[1] != mb.shape[1]:
        raise DimensionMismatch(ma.shape[1], mb.shape[1])
    return normalize_rows(ma) @ normalize_rows(mb).T


def rank(scored: Iterable[ScoredCandidate]) -> List[ScoredCandidate]:
    """Sort by descending score, then ascending candidate ID."""
    return sorted(scored, key=lambda s: (-s.score, s.candidate_id))


def batch_similarity(query: Sequence[float],
                     candidates: Iterable[Tuple[int, Sequence[float]]]) -> List[ScoredCandidate]:
    """Score ``query`` against ``(candidate_id, vector)`` pairs and rank them."""
    pairs = list(candidates)
    if not pairs:
        return []
    ids = [int(cid) for cid, _ in pairs]
    q = _as_vector(query)
    rows = [_as_vector(v) for _, v in pairs]
    for row in rows:
        if row.shape[0] != q.shape[0]:
            raise DimensionMismatch(q.shape[0], row.shape[0])
    scores = similarity_matrix(q, np.vstack(rows))[0]
    return rank(ScoredCandidate(cid, float(s)) for cid, s in zip(ids, scores))


def top_k(scored: Iterable[ScoredCandidate], k: int, min_score: float = 0.0) -> List[ScoredCandidate]:
    """Keep candidates scoring at least ``min_score`` and return the best ``k``."""
    if k <= 0:
        return []
    return rank(s for s in scored if s.score >= min_score)[:k]


def similarity_level(score: float) -> str:
    """Coarse bucket used for display: ``"high"``, ``"medium"`` or ``"low"``."""
    if score >= 0.7:
        return "high"
    if score >= 0.4:
        return "medium"
    return "low"
