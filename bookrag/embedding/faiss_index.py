"""
Vector Index
-------------
`VectorIndex` is the contract the rest of the pipeline depends on;
`FAISSVectorIndex` implements it on top of faiss.IndexIDMap2.

Collections:
  Each collection is declared once with a CollectionConfig (dimension,
  distance metric, embedding model version).  Re-declaring it with the
  same config is a no-op; any mismatch is an IndexIntegrityError.

Metrics:
  cosine     IndexFlatIP over L2-normalised vectors (default)
  dot        IndexFlatIP over raw vectors
  euclidean  IndexFlatL2, reported as similarity 1 / (1 + distance)

Consistency:
  One re-entrant lock per collection serialises writers and readers, so
  replace_document() (write new entries, then drop the document's stale
  ones) is atomic from a concurrent reader's point of view.

Persistence (one directory per collection):
  - FAISS index     -> <index_dir>/<collection>/faiss.index
  - Payloads        -> <index_dir>/<collection>/payloads.json
  - Manifest        -> <index_dir>/<collection>/collection.json
"""
from __future__ import annotations

import hashlib
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional

import faiss
import numpy as np
from loguru import logger

from bookrag.errors import IndexIntegrityError, InvalidInputError
from bookrag.schemas import (
    ChunkPayload,
    CollectionConfig,
    DistanceMetric,
    IndexEntry,
    MetadataFilter,
    RetrievalResult,
)
from bookrag.utils.helpers import load_json, save_json

INDEX_DIR = Path("data/index")


def faiss_id(entry_id: str) -> int:
    """Map a string entry id onto a positive int64 FAISS id."""
    return int(hashlib.sha256(entry_id.encode("utf-8")).hexdigest()[:15], 16)


def matches_filter(payload: ChunkPayload, metadata_filter: MetadataFilter) -> bool:
    """Conjunctive equality / inclusion predicate over payload fields."""
    for key, expected in metadata_filter.items():
        value = getattr(payload, key, None)
        if isinstance(expected, (list, tuple, set)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _rank_key(result: RetrievalResult) -> tuple[float, int, str, str]:
    payload = result.chunk_payload
    return (-result.similarity_score, payload.chunk_index, payload.source, payload.document_id)


class VectorIndex(ABC):
    """What any vector index backend must provide."""

    @abstractmethod
    def create_collection(self, config: CollectionConfig) -> None:
        ...

    @abstractmethod
    def get_collection(self, collection: str) -> CollectionConfig:
        ...

    @abstractmethod
    def upsert(self, collection: str, entries: list[IndexEntry]) -> int:
        ...

    @abstractmethod
    def replace_document(self, collection: str, document_id: str, entries: list[IndexEntry]) -> int:
        ...

    @abstractmethod
    def delete_document(self, collection: str, document_id: str) -> int:
        ...

    @abstractmethod
    def search(
        self,
        collection: str,
        query_vector: np.ndarray,
        limit: int,
        metadata_filter: Optional[MetadataFilter] = None,
    ) -> list[RetrievalResult]:
        ...

    @abstractmethod
    def count(self, collection: str) -> int:
        ...

    @abstractmethod
    def document_ids(self, collection: str) -> set[str]:
        ...

    @abstractmethod
    def distinct_values(self, collection: str, field: str) -> list[str]:
        ...


class _Collection:
    def __init__(self, config: CollectionConfig) -> None:
        self.config = config
        if config.distance_metric == DistanceMetric.EUCLIDEAN:
            base = faiss.IndexFlatL2(config.vector_dimension)
        else:
            base = faiss.IndexFlatIP(config.vector_dimension)
        self.index = faiss.IndexIDMap2(base)
        self.payloads: dict[int, ChunkPayload] = {}
        self.entry_ids: dict[int, str] = {}
        self.lock = threading.RLock()


class FAISSVectorIndex(VectorIndex):
    """
    In-process FAISS index with payloads, metadata filtering and persistence.

    Usage:
        index = FAISSVectorIndex()
        index.create_collection(config)
        index.replace_document("book", doc.id, entries)
        results = index.search("book", query_vec, limit=5, metadata_filter={"module": "module-1"})
        index.save(Path("data/index"))
    """

    def __init__(self) -> None:
        self._collections: dict[str, _Collection] = {}
        self._registry_lock = threading.Lock()

    # --- Collections ----------------------------------------------------------

    def create_collection(self, config: CollectionConfig) -> None:
        with self._registry_lock:
            existing = self._collections.get(config.collection_name)
            if existing is None:
                self._collections[config.collection_name] = _Collection(config)
                logger.info(
                    f"[FAISSIndex] Created collection {config.collection_name!r} | "
                    f"dim={config.vector_dimension} metric={config.distance_metric.value} "
                    f"model={config.embedding_model_version}"
                )
                return
        if existing.config != config:
            raise IndexIntegrityError(
                f"Collection {config.collection_name!r} exists with "
                f"{existing.config.model_dump(mode='json')}, requested {config.model_dump(mode='json')}"
            )

    def get_collection(self, collection: str) -> CollectionConfig:
        return self._get(collection).config

    def collections(self) -> list[str]:
        return sorted(self._collections)

    def _get(self, collection: str) -> _Collection:
        try:
            return self._collections[collection]
        except KeyError:
            raise InvalidInputError(f"Unknown collection {collection!r}") from None

    # --- Writes ---------------------------------------------------------------

    def upsert(self, collection: str, entries: list[IndexEntry]) -> int:
        """Insert or overwrite entries by id.  Validates everything before writing."""
        coll = self._get(collection)
        if not entries:
            return 0
        fids, matrix = self._validate(coll, entries)
        with coll.lock:
            self._write(coll, fids, matrix, entries)
        logger.debug(f"[FAISSIndex] {collection}: upserted {len(entries)} entries")
        return len(entries)

    def replace_document(self, collection: str, document_id: str, entries: list[IndexEntry]) -> int:
        """
        Make `entries` the complete set of entries for `document_id`.

        New entries are written first and stale ones removed afterwards,
        both under the collection lock.  Returns the number of stale
        entries removed.
        """
        coll = self._get(collection)
        for entry in entries:
            if entry.payload.document_id != document_id:
                raise InvalidInputError(
                    f"Entry {entry.id} belongs to {entry.payload.document_id!r}, not {document_id!r}"
                )
        fids, matrix = self._validate(coll, entries) if entries else ([], None)
        with coll.lock:
            if entries:
                self._write(coll, fids, matrix, entries)
            keep = set(fids)
            stale = [
                fid for fid, payload in coll.payloads.items()
                if payload.document_id == document_id and fid not in keep
            ]
            self._remove(coll, stale)
        logger.debug(
            f"[FAISSIndex] {collection}: document {document_id[:12]} -> "
            f"{len(entries)} entries, {len(stale)} stale removed"
        )
        return len(stale)

    def delete_document(self, collection: str, document_id: str) -> int:
        coll = self._get(collection)
        with coll.lock:
            stale = [fid for fid, p in coll.payloads.items() if p.document_id == document_id]
            self._remove(coll, stale)
        return len(stale)

    def _validate(self, coll: _Collection, entries: list[IndexEntry]) -> tuple[list[int], np.ndarray]:
        config = coll.config
        for entry in entries:
            if entry.payload.model_version != config.embedding_model_version:
                raise IndexIntegrityError(
                    f"Entry {entry.id} was embedded with {entry.payload.model_version!r}; "
                    f"collection {config.collection_name!r} holds {config.embedding_model_version!r}"
                )
        matrix = np.ascontiguousarray(
            np.stack([np.asarray(e.vector, dtype=np.float32).reshape(-1) for e in entries]),
            dtype=np.float32,
        )
        if matrix.shape[1] != config.vector_dimension:
            raise IndexIntegrityError(
                f"Vectors have dimension {matrix.shape[1]}; collection "
                f"{config.collection_name!r} expects {config.vector_dimension}"
            )
        if not np.all(np.isfinite(matrix)):
            raise IndexIntegrityError("Vectors contain NaN or infinite values")
        if config.distance_metric == DistanceMetric.COSINE:
            faiss.normalize_L2(matrix)
        return [faiss_id(e.id) for e in entries], matrix

    @staticmethod
    def _write(coll: _Collection, fids: list[int], matrix: np.ndarray, entries: list[IndexEntry]) -> None:
        # Last occurrence wins when a batch repeats an id.
        last: dict[int, int] = {fid: row for row, fid in enumerate(fids)}
        rows = sorted(last.values())
        ids = np.asarray([fids[r] for r in rows], dtype=np.int64)
        existing = [fid for fid in ids.tolist() if fid in coll.payloads]
        if existing:
            coll.index.remove_ids(np.asarray(existing, dtype=np.int64))
        coll.index.add_with_ids(np.ascontiguousarray(matrix[rows]), ids)
        for r in rows:
            coll.payloads[fids[r]] = entries[r].payload
            coll.entry_ids[fids[r]] = entries[r].id

    @staticmethod
    def _remove(coll: _Collection, fids: Iterable[int]) -> None:
        fids = list(fids)
        if not fids:
            return
        coll.index.remove_ids(np.asarray(fids, dtype=np.int64))
        for fid in fids:
            coll.payloads.pop(fid, None)
            coll.entry_ids.pop(fid, None)

    # --- Search ---------------------------------------------------------------

    def search(
        self,
        collection: str,
        query_vector: np.ndarray,
        limit: int,
        metadata_filter: Optional[MetadataFilter] = None,
    ) -> list[RetrievalResult]:
        """
        Nearest-neighbour search.

        Returns at most `limit` results ordered by similarity descending,
        ties broken by chunk_index, then source path, then document id, so
        equal scores rank the same way however the index was written.  A
        filter nothing satisfies yields an empty list.
        """
        if limit <= 0:
            raise InvalidInputError(f"limit must be positive, got {limit}")
        coll = self._get(collection)
        config = coll.config

        qv = np.ascontiguousarray(np.asarray(query_vector, dtype=np.float32).reshape(1, -1))
        if qv.shape[1] != config.vector_dimension:
            raise IndexIntegrityError(
                f"Query vector has dimension {qv.shape[1]}; collection "
                f"{collection!r} expects {config.vector_dimension}"
            )
        if config.distance_metric == DistanceMetric.COSINE:
            faiss.normalize_L2(qv)

        with coll.lock:
            if coll.index.ntotal == 0:
                return []
            allowed: Optional[set[int]] = None
            if metadata_filter:
                allowed = {fid for fid, p in coll.payloads.items() if matches_filter(p, metadata_filter)}
                if not allowed:
                    return []
            scores, ids = coll.index.search(qv, coll.index.ntotal)
            results = [
                RetrievalResult(
                    chunk_payload=coll.payloads[int(fid)],
                    similarity_score=self._similarity(config.distance_metric, float(score)),
                )
                for score, fid in zip(scores[0], ids[0])
                if fid >= 0 and (allowed is None or int(fid) in allowed)
            ]

        results.sort(key=_rank_key)
        return results[:limit]

    @staticmethod
    def _similarity(metric: DistanceMetric, raw: float) -> float:
        if metric == DistanceMetric.EUCLIDEAN:
            # IndexFlatL2 reports squared distances
            return 1.0 / (1.0 + float(np.sqrt(max(raw, 0.0))))
        return raw

    # --- Introspection --------------------------------------------------------

    def count(self, collection: str) -> int:
        return self._get(collection).index.ntotal

    def document_ids(self, collection: str) -> set[str]:
        coll = self._get(collection)
        with coll.lock:
            return {p.document_id for p in coll.payloads.values()}

    def distinct_values(self, collection: str, field: str) -> list[str]:
        coll = self._get(collection)
        with coll.lock:
            values = {getattr(p, field, None) for p in coll.payloads.values()}
        return sorted(str(v) for v in values if v not in (None, ""))

    # --- Persistence ----------------------------------------------------------

    def save(self, index_dir: Path = INDEX_DIR) -> None:
        """Persist every collection: FAISS index + payloads + manifest."""
        for name, coll in self._collections.items():
            coll_dir = Path(index_dir) / name
            coll_dir.mkdir(parents=True, exist_ok=True)
            with coll.lock:
                faiss.write_index(coll.index, str(coll_dir / "faiss.index"))
                records = [
                    {"fid": fid, "entry_id": coll.entry_ids[fid], "payload": p.model_dump(mode="json")}
                    for fid, p in coll.payloads.items()
                ]
                manifest = {
                    **coll.config.model_dump(mode="json"),
                    "total_vectors": coll.index.ntotal,
                    "total_documents": len({p.document_id for p in coll.payloads.values()}),
                }
            save_json(records, coll_dir / "payloads.json")
            save_json(manifest, coll_dir / "collection.json")
            logger.info(f"[FAISSIndex] Saved {name!r}: {manifest['total_vectors']} vectors -> {coll_dir}")

    @classmethod
    def load(cls, index_dir: Path = INDEX_DIR) -> "FAISSVectorIndex":
        """Load every collection persisted under `index_dir`."""
        index_dir = Path(index_dir)
        if not index_dir.exists():
            raise FileNotFoundError(f"Index directory not found: {index_dir}")

        instance = cls()
        for manifest_path in sorted(index_dir.glob("*/collection.json")):
            coll_dir = manifest_path.parent
            manifest = load_json(manifest_path)
            config = CollectionConfig(
                collection_name=manifest["collection_name"],
                vector_dimension=manifest["vector_dimension"],
                distance_metric=manifest["distance_metric"],
                embedding_model_version=manifest["embedding_model_version"],
            )
            coll = _Collection(config)
            coll.index = faiss.read_index(str(coll_dir / "faiss.index"))
            for record in load_json(coll_dir / "payloads.json"):
                fid = int(record["fid"])
                coll.payloads[fid] = ChunkPayload(**record["payload"])
                coll.entry_ids[fid] = record["entry_id"]
            if coll.index.ntotal != len(coll.payloads):
                raise IndexIntegrityError(
                    f"{coll_dir}: {coll.index.ntotal} vectors but {len(coll.payloads)} payloads"
                )
            instance._collections[config.collection_name] = coll
            logger.info(f"[FAISSIndex] Loaded {config.collection_name!r}: {coll.index.ntotal} vectors")
        return instance
