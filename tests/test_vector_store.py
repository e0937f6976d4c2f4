"""
Tests for the embedding store: normalization on insert, snapshot
isolation, purge and FAISS persistence.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from missing_match import vector_store as vector_store_module
from missing_match.errors import InvalidVectorKind, StoreUnavailable
from missing_match.vector_store import EmbeddingStore
from missing_match.vectors import is_unit

from tests.conftest import DIM


class TestInsert:

    @pytest.mark.parametrize("scale", [1e-6, 0.5, 3.0, 1e6])
    def test_stored_vector_has_unit_norm(self, store, rng, scale):
        raw = rng.normal(size=DIM) * scale
        embedding_id = store.insert("case-1", raw, quality_score=0.9)

        entry = store.embeddings_for("case-1")[0]
        assert entry.embedding_id == embedding_id
        assert is_unit(entry.vector)

    def test_proportional_vectors_store_identical_values(self, store, rng):
        raw = rng.normal(size=DIM)
        store.insert("case-1", raw, quality_score=0.9)
        store.insert("case-1", raw * 4.0, quality_score=0.9)
        store.insert("case-1", raw * 0.25, quality_score=0.9)

        first, second, third = store.embeddings_for("case-1")
        assert np.array_equal(first.vector, second.vector)
        assert np.array_equal(first.vector, third.vector)

    def test_wrong_dimension(self, store):
        with pytest.raises(InvalidVectorKind):
            store.insert("case-1", [1.0] * (DIM + 1), quality_score=0.9)
        assert store.count == 0

    @pytest.mark.parametrize("bad", [[0.0] * DIM, [float("nan")] * DIM, [float("inf")] + [0.0] * (DIM - 1)])
    def test_unnormalizable_vectors(self, store, bad):
        with pytest.raises(InvalidVectorKind):
            store.insert("case-1", bad, quality_score=0.9)
        assert store.count == 0

    @pytest.mark.parametrize("quality", [-0.1, 1.5, float("nan")])
    def test_quality_score_out_of_range(self, store, unit, quality):
        with pytest.raises(InvalidVectorKind, match="quality_score"):
            store.insert("case-1", unit(0), quality_score=quality)

    def test_metadata_kept(self, store, unit):
        captured = datetime(2020, 5, 1, 12, 0)
        store.insert("case-1", unit(0), quality_score=0.8, is_age_progressed=True, captured_at=captured)

        entry = store.embeddings_for("case-1")[0]
        assert entry.quality_score == 0.8
        assert entry.is_age_progressed is True
        assert entry.captured_at == captured

    def test_aware_captured_at_converted_to_utc(self, store, unit):
        captured = datetime(2020, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        store.insert("case-1", unit(0), quality_score=0.8, captured_at=captured)
        assert store.embeddings_for("case-1")[0].captured_at == datetime(2020, 5, 1, 12, 0)

    def test_concurrent_inserts(self, store, rng):
        vectors = [rng.normal(size=DIM) for _ in range(200)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(lambda v: store.insert("case-1", v, quality_score=0.5), vectors))

        assert len(set(ids)) == 200
        assert store.count == 200
        assert len(store.snapshot()) == 200


class TestSnapshot:

    def test_snapshot_is_isolated_from_later_inserts(self, store, unit):
        store.insert("case-1", unit(0), quality_score=0.9)
        snapshot = store.snapshot()

        store.insert("case-2", unit(1), quality_score=0.9)

        assert len(snapshot) == 1
        assert snapshot.case_ids() == {"case-1"}
        assert len(store.snapshot()) == 2

    def test_snapshot_includes_every_completed_insert(self, store, unit):
        for i in range(DIM):
            store.insert(f"case-{i}", unit(i), quality_score=0.9)
        assert store.snapshot().case_ids() == {f"case-{i}" for i in range(DIM)}

    def test_generation_increases_with_mutations(self, store, unit):
        before = store.snapshot().generation
        store.insert("case-1", unit(0), quality_score=0.9)
        after = store.snapshot().generation
        assert after > before

    def test_snapshot_reused_until_mutation(self, store, unit):
        store.insert("case-1", unit(0), quality_score=0.9)
        assert store.snapshot() is store.snapshot()

    def test_snapshot_vectors_are_read_only(self, store, unit):
        store.insert("case-1", unit(0), quality_score=0.9)
        snapshot = store.snapshot()
        case_id, vector = next(iter(snapshot))

        assert case_id == "case-1"
        with pytest.raises(ValueError):
            vector[0] = 5.0
        with pytest.raises(ValueError):
            snapshot.matrix[0, 0] = 5.0

    def test_empty_snapshot(self, store):
        snapshot = store.snapshot()
        assert len(snapshot) == 0
        assert snapshot.matrix.shape == (0, DIM)


class TestPurge:

    def test_purge_removes_all_embeddings_of_case(self, store, unit):
        store.insert("case-1", unit(0), quality_score=0.9)
        store.insert("case-1", unit(1), quality_score=0.9, is_age_progressed=True)
        store.insert("case-2", unit(2), quality_score=0.9)

        assert store.purge("case-1") == 2
        assert store.embeddings_for("case-1") == []
        assert store.snapshot().case_ids() == {"case-2"}

    def test_purge_unknown_case_is_noop(self, store, unit):
        store.insert("case-1", unit(0), quality_score=0.9)
        generation = store.generation

        assert store.purge("missing") == 0
        assert store.generation == generation
        assert store.count == 1

    def test_existing_snapshot_unaffected_by_purge(self, store, unit):
        store.insert("case-1", unit(0), quality_score=0.9)
        snapshot = store.snapshot()

        store.purge("case-1")

        assert snapshot.case_ids() == {"case-1"}
        assert len(store.snapshot()) == 0


class TestPersistence:

    def test_reload_restores_entries(self, tmp_path, rng):
        index_path = tmp_path / "embeddings" / "faiss_index.bin"
        metadata_path = tmp_path / "embeddings" / "metadata.json"

        store = EmbeddingStore(dimension=DIM, index_path=index_path, metadata_path=metadata_path)
        captured = datetime(2021, 3, 4, 5, 6, 7)
        store.insert("case-1", rng.normal(size=DIM), quality_score=0.7, captured_at=captured)
        store.insert("case-2", rng.normal(size=DIM), quality_score=0.6, is_age_progressed=True)
        store.purge("case-2")
        original = store.embeddings_for("case-1")[0]

        reloaded = EmbeddingStore(dimension=DIM, index_path=index_path, metadata_path=metadata_path)

        assert reloaded.count == 1
        entry = reloaded.embeddings_for("case-1")[0]
        assert entry.embedding_id == original.embedding_id
        assert entry.captured_at == captured
        assert entry.quality_score == 0.7
        assert np.allclose(entry.vector, original.vector)
        assert reloaded.generation == store.generation

    def test_dimension_mismatch_on_load(self, tmp_path, unit):
        index_path = tmp_path / "faiss_index.bin"
        metadata_path = tmp_path / "metadata.json"
        store = EmbeddingStore(dimension=DIM, index_path=index_path, metadata_path=metadata_path)
        store.insert("case-1", unit(0), quality_score=0.9)

        with pytest.raises(StoreUnavailable, match="dimension"):
            EmbeddingStore(dimension=DIM * 2, index_path=index_path, metadata_path=metadata_path)

    def test_failed_save_rolls_back(self, tmp_path, unit, monkeypatch):
        store = EmbeddingStore(
            dimension=DIM,
            index_path=tmp_path / "faiss_index.bin",
            metadata_path=tmp_path / "metadata.json"
        )
        store.insert("case-1", unit(0), quality_score=0.9)

        def broken_write(index, path):
            raise RuntimeError("disk full")

        monkeypatch.setattr(vector_store_module.faiss, "write_index", broken_write)

        with pytest.raises(StoreUnavailable):
            store.insert("case-2", unit(1), quality_score=0.9)
        with pytest.raises(StoreUnavailable):
            store.purge("case-1")

        assert store.count == 1
        assert store.snapshot().case_ids() == {"case-1"}

    def test_closed_store_rejects_operations(self, store, unit):
        store.close()
        with pytest.raises(StoreUnavailable):
            store.snapshot()
        with pytest.raises(StoreUnavailable):
            store.insert("case-1", unit(0), quality_score=0.9)
