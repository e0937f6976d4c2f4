"""
Tests for the similarity engine: remapped cosine identities, threshold
semantics and deterministic ranking.
"""
from datetime import datetime, timedelta

import numpy as np
import pytest

from missing_match.domain import EmbeddingEntry
from missing_match.similarity import rank_candidates, score_snapshot, similarity
from missing_match.vector_store import StoreSnapshot
from missing_match.vectors import normalize

from tests.conftest import DIM


def random_unit(rng, dim=DIM):
    return normalize(rng.normal(size=dim))


class TestSimilarity:

    def test_identical_vectors_score_one(self, rng):
        for _ in range(50):
            v = random_unit(rng)
            assert similarity(v, v) == pytest.approx(1.0, abs=1e-6)

    def test_opposite_vectors_score_zero(self, rng):
        for _ in range(50):
            v = random_unit(rng)
            assert similarity(v, -v) == pytest.approx(0.0, abs=1e-6)

    def test_orthogonal_vectors_score_half(self, unit, rng):
        assert similarity(unit(0), unit(1)) == 0.5

        v = random_unit(rng)
        w = rng.normal(size=DIM)
        w = normalize(w - np.dot(w, v) * v)
        assert similarity(v, w) == pytest.approx(0.5, abs=1e-6)

    def test_dimension_mismatch_scores_zero(self, unit):
        assert similarity(unit(0), unit(0, dim=DIM + 1)) == 0.0

    def test_scores_within_unit_interval(self, rng):
        for _ in range(50):
            score = similarity(random_unit(rng), random_unit(rng))
            assert 0.0 <= score <= 1.0


def make_snapshot(*specs, dimension=DIM):
    """Build a snapshot from (case_id, vector, captured_at) tuples."""
    entries = []
    for i, (case_id, vector, captured_at) in enumerate(specs):
        vector = normalize(np.asarray(vector, dtype=np.float64))
        entries.append(EmbeddingEntry(
            embedding_id=f"emb-{i}",
            case_id=case_id,
            vector=vector,
            quality_score=0.9,
            is_age_progressed=False,
            captured_at=captured_at
        ))
    return StoreSnapshot(generation=1, dimension=dimension, entries=entries)


class TestRankCandidates:

    def test_single_exact_match(self, unit):
        snapshot = make_snapshot(("C1", unit(0), datetime(2024, 1, 1)))
        ranked = rank_candidates(np.array(unit(0)), snapshot, threshold=0.75)

        assert len(ranked) == 1
        assert ranked[0].case_id == "C1"
        assert ranked[0].similarity == pytest.approx(1.0)

    def test_threshold_excludes_orthogonal(self, unit):
        snapshot = make_snapshot(
            ("C1", unit(0), datetime(2024, 1, 1)),
            ("C2", unit(1), datetime(2024, 1, 1)),
        )
        ranked = rank_candidates(np.array(unit(1)), snapshot, threshold=0.75)

        assert [c.case_id for c in ranked] == ["C2"]
        assert ranked[0].similarity == pytest.approx(1.0)

    def test_threshold_boundary_is_inclusive(self, unit):
        # dot = 0.5 -> (0.5 + 1) / 2 = 0.75 exactly
        boundary = [0.5, np.sqrt(0.75)] + [0.0] * (DIM - 2)
        snapshot = make_snapshot(("C1", boundary, datetime(2024, 1, 1)))

        scores = score_snapshot(np.array(unit(0)), snapshot)
        assert scores[0] == pytest.approx(0.75, abs=1e-12)
        assert [c.case_id for c in rank_candidates(np.array(unit(0)), snapshot, threshold=0.75)] == ["C1"]
        assert rank_candidates(np.array(unit(0)), snapshot, threshold=0.7500001) == []

    @pytest.mark.parametrize("component", [0.7, 0.3, 0.1])
    def test_threshold_boundary_through_store(self, store, unit, component):
        # Components float32 cannot represent exactly
        store.insert("C1", [component, np.sqrt(1.0 - component ** 2)] + [0.0] * (DIM - 2), quality_score=0.9)
        threshold = (component + 1.0) / 2.0

        ranked = rank_candidates(np.array(unit(0), dtype=np.float64), store.snapshot(), threshold=threshold)

        assert [c.case_id for c in ranked] == ["C1"]
        assert ranked[0].similarity == pytest.approx(threshold)

    def test_sorted_by_similarity_descending(self, unit):
        close = [1.0, 0.2] + [0.0] * (DIM - 2)
        closer = [1.0, 0.1] + [0.0] * (DIM - 2)
        snapshot = make_snapshot(
            ("far", [1.0, 0.6] + [0.0] * (DIM - 2), datetime(2024, 1, 1)),
            ("close", close, datetime(2024, 1, 1)),
            ("exact", unit(0), datetime(2024, 1, 1)),
            ("closer", closer, datetime(2024, 1, 1)),
        )
        ranked = rank_candidates(np.array(unit(0)), snapshot, threshold=0.5)

        assert [c.case_id for c in ranked] == ["exact", "closer", "close", "far"]
        scores = [c.similarity for c in ranked]
        assert scores == sorted(scores, reverse=True)

    def test_ties_broken_by_earliest_capture(self, unit):
        # Two candidates with identical vectors, hence identical scores
        shared = [0.8, 0.6] + [0.0] * (DIM - 2)
        snapshot = make_snapshot(
            ("newer", shared, datetime(2023, 6, 1)),
            ("older", shared, datetime(2019, 6, 1)),
        )
        ranked = rank_candidates(np.array(unit(0)), snapshot, threshold=0.75)

        assert ranked[0].similarity == pytest.approx(0.9)
        assert ranked[0].similarity == ranked[1].similarity
        assert [c.case_id for c in ranked] == ["older", "newer"]

    def test_ranking_is_stable_across_repeats(self, rng):
        base = datetime(2024, 1, 1)
        specs = [
            (f"case-{i}", rng.normal(size=DIM), base + timedelta(days=i % 3))
            for i in range(40)
        ]
        snapshot = make_snapshot(*specs)
        query = random_unit(rng)

        first = rank_candidates(query, snapshot, threshold=0.0)
        for _ in range(5):
            assert rank_candidates(query, snapshot, threshold=0.0) == first
        assert len(first) == 40

    def test_empty_snapshot(self, unit):
        assert rank_candidates(np.array(unit(0)), make_snapshot(), threshold=0.0) == []

    def test_dimension_mismatched_entries_never_ranked(self, unit):
        entries = make_snapshot(("C1", unit(0), datetime(2024, 1, 1))).entries
        odd = EmbeddingEntry(
            embedding_id="emb-odd",
            case_id="odd",
            vector=np.array(unit(0, dim=DIM + 2), dtype=np.float64),
            quality_score=0.9,
            is_age_progressed=False,
            captured_at=datetime(2024, 1, 1)
        )
        snapshot = StoreSnapshot(generation=1, dimension=DIM, entries=list(entries) + [odd])

        assert snapshot.matrix is None
        ranked = rank_candidates(np.array(unit(0)), snapshot, threshold=0.0)
        assert [c.case_id for c in ranked] == ["C1"]
        assert score_snapshot(np.array(unit(0)), snapshot)[1] == 0.0

    def test_purged_case_absent_from_new_snapshot(self, store, unit):
        store.insert("C1", unit(0), quality_score=0.9)
        store.insert("C2", unit(0), quality_score=0.9)
        store.purge("C1")

        ranked = rank_candidates(np.array(unit(0)), store.snapshot(), threshold=0.75)
        assert [c.case_id for c in ranked] == ["C2"]
