"""
Similarity Engine

Pure functions scoring a query embedding against a store snapshot.

Scores are cosine similarities of unit vectors remapped to [0, 1] with
(dot + 1) / 2: identical faces score 1.0, opposite vectors 0.0 and
orthogonal vectors 0.5. Thresholds are always expressed on this scale.
"""
from typing import List

import numpy as np

from missing_match.domain import MatchCandidate
from missing_match.vector_store import StoreSnapshot

# Rounding slack of float64 unit vectors
SCORE_TOLERANCE = 1e-12


def remap(dot: np.ndarray) -> np.ndarray:
    """Map cosine values in [-1, 1] onto [0, 1]."""
    return np.clip((np.asarray(dot, dtype=np.float64) + 1.0) / 2.0, 0.0, 1.0)


def similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Remapped cosine similarity of two unit vectors; 0.0 when dimensions differ."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        return 0.0
    return float(remap(np.dot(a, b)))


def score_snapshot(query: np.ndarray, snapshot: StoreSnapshot) -> np.ndarray:
    """
    Score every snapshot entry against the query, in snapshot order.

    Entries whose dimensionality differs from the query score 0.
    """
    query = np.asarray(query, dtype=np.float64)
    if len(snapshot) == 0:
        return np.empty(0, dtype=np.float64)

    if snapshot.matrix is not None and snapshot.dimension == query.shape[0]:
        return remap(snapshot.matrix.astype(np.float64) @ query)

    return np.array([similarity(query, entry.vector) for entry in snapshot.entries], dtype=np.float64)


def rank_candidates(query: np.ndarray, snapshot: StoreSnapshot, threshold: float) -> List[MatchCandidate]:
    """
    Rank snapshot entries scoring at or above `threshold` (inclusive, up to
    SCORE_TOLERANCE of rounding).

    Order: similarity descending, then oldest `captured_at` first, then
    embedding id, so a fixed snapshot and query always rank identically.
    Dimension-mismatched entries are never ranked.

    Complexity is O(N * D) for N entries of dimension D.
    """
    query = np.asarray(query, dtype=np.float64)
    scores = score_snapshot(query, snapshot)

    candidates = []
    for entry, score in zip(snapshot.entries, scores):
        if entry.dimension != query.shape[0]:
            continue
        score = float(score)
        if score >= threshold - SCORE_TOLERANCE:
            candidates.append(MatchCandidate(
                case_id=entry.case_id,
                similarity=score,
                embedding_id=entry.embedding_id,
                captured_at=entry.captured_at,
                is_age_progressed=entry.is_age_progressed
            ))

    candidates.sort(key=lambda c: (-c.similarity, c.captured_at, c.embedding_id))
    return candidates
