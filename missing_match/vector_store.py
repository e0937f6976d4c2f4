"""
Embedding Store

This module owns the durable mapping from case identity to face
embeddings. It provides:
- Validated, normalized insertion (the store never trusts caller norms)
- Copy-on-write snapshots for lock-free similarity search
- Purge of every embedding of a case (case closure / privacy erasure)
- Persistence (FAISS flat inner-product index + JSON metadata sidecar)
"""
import json
import logging
import math
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

import faiss
import numpy as np

from missing_match.config import VECTOR_DIMENSION
from missing_match.domain import EmbeddingEntry, to_naive_utc, utcnow
from missing_match.errors import InvalidVectorKind, StoreUnavailable
from missing_match.vectors import VectorLike, normalize, to_unit_vector

logger = logging.getLogger(__name__)

METADATA_VERSION = 1


class StoreSnapshot:
    """
    Immutable point-in-time view of the store used by one matching run.

    Entries keep insertion order. `matrix` stacks their vectors row by row
    so the similarity engine can score every candidate in one product; it is
    None if some entry does not have the snapshot dimension.
    """

    def __init__(self, generation: int, dimension: int, entries: Sequence[EmbeddingEntry]):
        self.generation = generation
        self.dimension = dimension
        self.entries: Tuple[EmbeddingEntry, ...] = tuple(entries)

        self.matrix: Optional[np.ndarray] = None
        if all(entry.dimension == dimension for entry in self.entries):
            if self.entries:
                matrix = np.vstack([entry.vector for entry in self.entries]).astype(np.float64)
            else:
                matrix = np.empty((0, dimension), dtype=np.float64)
            matrix.setflags(write=False)
            self.matrix = matrix

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Tuple[str, np.ndarray]]:
        """Yield (case_id, vector) pairs in snapshot order."""
        for entry in self.entries:
            yield entry.case_id, entry.vector

    def case_ids(self) -> set:
        return {entry.case_id for entry in self.entries}


class EmbeddingStore:
    """
    Thread-safe store of unit-normalized face embeddings.

    Mutations (`insert`, `purge`) hold an internal lock and replace the
    cached snapshot; readers receive the cached immutable snapshot and never
    block on each other.

    When `index_path` and `metadata_path` are given every mutation is
    persisted before it becomes visible to snapshots.
    """

    def __init__(
        self,
        dimension: int = VECTOR_DIMENSION,
        index_path: Optional[Path] = None,
        metadata_path: Optional[Path] = None
    ):
        self.dimension = dimension
        self.index_path = Path(index_path) if index_path else None
        self.metadata_path = Path(metadata_path) if metadata_path else None

        self._lock = threading.RLock()
        self._entries: dict = {}  # embedding_id -> EmbeddingEntry, insertion ordered
        self._generation = 0
        self._snapshot: Optional[StoreSnapshot] = None
        self._closed = False

        self._load_or_create()

    @property
    def persistent(self) -> bool:
        return self.index_path is not None and self.metadata_path is not None

    def _load_or_create(self):
        """Load an existing index or start empty."""
        with self._lock:
            if self.persistent and self.index_path.exists() and self.metadata_path.exists():
                self._load_index()
                logger.info(f"Loaded embedding store with {len(self._entries)} vectors")
            else:
                logger.info(f"Created empty embedding store (dimension {self.dimension})")

    def _load_index(self):
        """Load index and metadata from disk."""
        try:
            index = faiss.read_index(str(self.index_path))
            with open(self.metadata_path, "r") as f:
                data = json.load(f)
        except (OSError, RuntimeError, ValueError) as e:
            logger.error(f"Failed to load embedding store: {e}")
            raise StoreUnavailable(f"Failed to load embedding store: {e}")

        if index.d != self.dimension:
            raise StoreUnavailable(
                f"Stored index has dimension {index.d}, store is configured for {self.dimension}"
            )

        records = data.get("entries", [])
        if len(records) != index.ntotal:
            raise StoreUnavailable(
                f"Metadata lists {len(records)} entries but index holds {index.ntotal} vectors"
            )

        vectors = index.reconstruct_n(0, index.ntotal) if index.ntotal else []
        for record, vector in zip(records, vectors):
            # The index holds float32; restore unit length in float64
            vector = normalize(np.asarray(vector, dtype=np.float64), error=StoreUnavailable)
            vector.setflags(write=False)
            entry = EmbeddingEntry(
                embedding_id=record["embedding_id"],
                case_id=record["case_id"],
                vector=vector,
                quality_score=float(record["quality_score"]),
                is_age_progressed=bool(record["is_age_progressed"]),
                captured_at=datetime.fromisoformat(record["captured_at"])
            )
            self._entries[entry.embedding_id] = entry

        self._generation = int(data.get("generation", 0))

    def _save_index(self):
        """Persist index and metadata to disk, replacing the previous files atomically."""
        if not self.persistent:
            return

        entries = list(self._entries.values())
        index = faiss.IndexFlatIP(self.dimension)
        if entries:
            index.add(np.vstack([e.vector for e in entries]).astype(np.float32))

        data = {
            "version": METADATA_VERSION,
            "dimension": self.dimension,
            "generation": self._generation,
            "entries": [
                {
                    "embedding_id": e.embedding_id,
                    "case_id": e.case_id,
                    "quality_score": e.quality_score,
                    "is_age_progressed": e.is_age_progressed,
                    "captured_at": e.captured_at.isoformat()
                }
                for e in entries
            ]
        }

        index_tmp = self.index_path.with_suffix(self.index_path.suffix + ".tmp")
        metadata_tmp = self.metadata_path.with_suffix(self.metadata_path.suffix + ".tmp")
        try:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            self.metadata_path.parent.mkdir(parents=True, exist_ok=True)
            faiss.write_index(index, str(index_tmp))
            with open(metadata_tmp, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(index_tmp, self.index_path)
            os.replace(metadata_tmp, self.metadata_path)
            logger.debug("Embedding store saved to disk")
        except (OSError, RuntimeError) as e:
            logger.error(f"Failed to save embedding store: {e}")
            raise StoreUnavailable(f"Failed to persist embedding store: {e}")

    def _ensure_open(self):
        if self._closed:
            raise StoreUnavailable("Embedding store is closed")

    def _commit(self, previous: dict):
        """Persist the current entries, restoring `previous` if that fails."""
        self._generation += 1
        try:
            self._save_index()
        except StoreUnavailable:
            self._entries = previous
            self._generation -= 1
            raise
        finally:
            self._snapshot = None

    @property
    def count(self) -> int:
        """Number of stored embeddings."""
        with self._lock:
            return len(self._entries)

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def insert(
        self,
        case_id: str,
        vector: VectorLike,
        quality_score: float,
        is_age_progressed: bool = False,
        captured_at: Optional[datetime] = None
    ) -> str:
        """
        Normalize and store a new embedding for a case.

        Args:
            case_id: Owning case identifier
            vector: Raw embedding, any non-zero finite magnitude
            quality_score: Extractor quality score in [0, 1]
            is_age_progressed: Whether the source photo is a synthetic age progression
            captured_at: When the source photo was taken (defaults to now)

        Returns:
            embedding_id of the stored embedding

        Raises:
            InvalidVectorKind: Wrong dimension, non-finite or zero magnitude
            StoreUnavailable: Store closed or persistence failed
        """
        unit = to_unit_vector(vector, self.dimension)

        quality_score = float(quality_score)
        if not math.isfinite(quality_score) or not 0.0 <= quality_score <= 1.0:
            raise InvalidVectorKind(f"quality_score must be within [0, 1], got {quality_score}")

        entry = EmbeddingEntry(
            embedding_id=str(uuid.uuid4()),
            case_id=str(case_id),
            vector=unit,
            quality_score=quality_score,
            is_age_progressed=bool(is_age_progressed),
            captured_at=to_naive_utc(captured_at) if captured_at else utcnow()
        )

        with self._lock:
            self._ensure_open()
            previous = dict(self._entries)
            self._entries[entry.embedding_id] = entry
            self._commit(previous)

        logger.info(f"Added embedding {entry.embedding_id} for case {entry.case_id}")
        return entry.embedding_id

    def snapshot(self) -> StoreSnapshot:
        """
        Point-in-time view for one search.

        Every insert that returned before this call is included; later
        mutations never change the returned object.
        """
        with self._lock:
            self._ensure_open()
            if self._snapshot is None:
                self._snapshot = StoreSnapshot(
                    generation=self._generation,
                    dimension=self.dimension,
                    entries=list(self._entries.values())
                )
            return self._snapshot

    def purge(self, case_id: str) -> int:
        """
        Remove all embeddings for a case.

        Returns:
            Number of embeddings removed (0 if the case had none)
        """
        case_id = str(case_id)
        with self._lock:
            self._ensure_open()
            doomed = [eid for eid, e in self._entries.items() if e.case_id == case_id]
            if not doomed:
                return 0

            previous = dict(self._entries)
            for embedding_id in doomed:
                del self._entries[embedding_id]
            self._commit(previous)

        logger.info(f"Purged {len(doomed)} embeddings for case {case_id}")
        return len(doomed)

    def embeddings_for(self, case_id: str) -> List[EmbeddingEntry]:
        """All embeddings of a case in insertion order."""
        case_id = str(case_id)
        with self._lock:
            return [e for e in self._entries.values() if e.case_id == case_id]

    def case_ids(self) -> set:
        with self._lock:
            return {e.case_id for e in self._entries.values()}

    def close(self):
        """Reject further use. Persisted data stays on disk."""
        with self._lock:
            self._closed = True
            self._snapshot = None
        logger.info("Embedding store closed")
