############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# vector_store.py: Vector persistence and HNSW similarity search
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Vector store.

Vectors are persisted in ``embedding_vectors`` (one current row per
(source_id, model_id), superseded rows kept) and served from an in-memory
FAISS HNSW index per model. Vectors are L2-normalized so inner product is
cosine similarity.

HNSW does not support deletion, so a superseded vector stays in the index
as a tombstone and is filtered out at query time until ``rebuild()``
compacts the index. Filters are applied after an over-fetch; the fetch is
widened until enough matches survive or the index is exhausted.

Incremental sync pages through rows by id. Ids are assigned at insert but
become visible at commit, so a slow writer can commit a lower id after a
sync has moved past it; each sync re-reads the last ``sync_overlap_ids``
ids and the index skips the rows it already holds.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

import faiss
import numpy as np

from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.core.errors import ValidationError
from aiorch.app.db import crud
from aiorch.app.db.session import run_db_operation
from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)

_SYNC_PAGE = 5000


@dataclass
class VectorRecord:
    """A persisted embedding record."""

    id: int
    source_id: str
    source_type: str
    content_hash: str
    model_id: str
    dimension: int
    vector: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "VectorRecord":
        return cls(
            id=row.id,
            source_id=row.source_id,
            source_type=row.source_type,
            content_hash=row.content_hash,
            model_id=row.model_id,
            dimension=row.dimension,
            vector=list(row.vector),
            metadata=dict(row.attributes or {}),
            created_at=crud._ensure_aware(row.created_at),
        )


@dataclass
class VectorMatch:
    """One search hit."""

    source_id: str
    source_type: str
    content_hash: str
    model_id: str
    score: float
    vector_id: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class SearchFilters:
    """
    Post-filters applied to index candidates.

    ``equals`` matches metadata keys exactly (e.g. ``channel_id``);
    ``created_from``/``created_to`` bound created_at inclusively.
    """

    source_type: Optional[str] = None
    equals: Dict[str, Any] = field(default_factory=dict)
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SearchFilters":
        """Build from a flat dict; ``created_at`` may be {"from": dt, "to": dt}."""
        if not data:
            return cls()
        data = dict(data)
        created = data.pop("created_at", None) or {}
        return cls(
            source_type=data.pop("source_type", None),
            created_from=created.get("from"),
            created_to=created.get("to"),
            equals=data,
        )

    def is_empty(self) -> bool:
        return not (self.source_type or self.equals or self.created_from or self.created_to)

    def matches(self, entry: "_IndexedVector") -> bool:
        if self.source_type is not None and entry.source_type != self.source_type:
            return False
        for key, value in self.equals.items():
            if entry.metadata.get(key) != value:
                return False
        if self.created_from is not None and (entry.created_at is None or entry.created_at < self.created_from):
            return False
        if self.created_to is not None and (entry.created_at is None or entry.created_at > self.created_to):
            return False
        return True


@dataclass
class IndexHealth:
    """Periodic health figures for one model's index."""

    model_id: str
    dimension: int
    size: int
    live: int
    tombstones: int
    recall: Optional[float]
    sample_size: int
    computed_at: datetime

    @property
    def tombstone_ratio(self) -> float:
        return self.tombstones / self.size if self.size else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "dimension": self.dimension,
            "size": self.size,
            "live": self.live,
            "tombstones": self.tombstones,
            "tombstone_ratio": round(self.tombstone_ratio, 4),
            "recall": round(self.recall, 4) if self.recall is not None else None,
            "sample_size": self.sample_size,
            "computed_at": self.computed_at.isoformat(),
        }


@dataclass
class _IndexedVector:
    id: int
    source_id: str
    source_type: str
    content_hash: str
    vector: np.ndarray
    metadata: Dict[str, Any]
    created_at: Optional[datetime]


def _normalize(vector: Sequence[float]) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(array))
    if norm == 0.0 or not np.isfinite(norm):
        raise ValidationError("Vector must be finite and non-zero")
    return array / norm


class _ModelIndex:
    """HNSW index plus live-entry bookkeeping for one model."""

    def __init__(self, model_id: str, dimension: int, m: int, ef_construction: int, ef_search: int):
        self.model_id = model_id
        self.dimension = dimension
        self._m = m
        self._ef_construction = ef_construction
        self._ef_search = ef_search

        self._hnsw = faiss.IndexHNSWFlat(dimension, m, faiss.METRIC_INNER_PRODUCT)
        self._hnsw.hnsw.efConstruction = ef_construction
        self._hnsw.hnsw.efSearch = ef_search
        self.index = faiss.IndexIDMap(self._hnsw)

        self.entries: Dict[int, _IndexedVector] = {}
        self.tombstones: Set[int] = set()
        self.current_by_source: Dict[str, int] = {}

    @property
    def size(self) -> int:
        return int(self.index.ntotal)

    def knows(self, vector_id: int) -> bool:
        return vector_id in self.entries or vector_id in self.tombstones

    def add(self, entries: List[_IndexedVector]) -> int:
        fresh: List[_IndexedVector] = []
        for entry in entries:
            if self.knows(entry.id):
                continue
            previous = self.current_by_source.get(entry.source_id)
            if previous is not None and previous > entry.id:
                # An older row arriving after its successor is already superseded
                self.tombstones.add(entry.id)
                fresh.append(entry)
                continue
            if previous is not None:
                self.entries.pop(previous, None)
                self.tombstones.add(previous)
            self.current_by_source[entry.source_id] = entry.id
            self.entries[entry.id] = entry
            fresh.append(entry)
        if fresh:
            matrix = np.stack([e.vector for e in fresh]).astype(np.float32)
            ids = np.asarray([e.id for e in fresh], dtype=np.int64)
            self.index.add_with_ids(matrix, ids)
        return len(fresh)

    def tombstone(self, vector_id: int) -> None:
        entry = self.entries.pop(vector_id, None)
        if entry is not None:
            self.tombstones.add(vector_id)
            if self.current_by_source.get(entry.source_id) == vector_id:
                del self.current_by_source[entry.source_id]

    def search(self, query: np.ndarray, k: int):
        self._hnsw.hnsw.efSearch = max(self._ef_search, k)
        scores, ids = self.index.search(query.reshape(1, -1), k)
        return scores[0], ids[0]

    def exact_search(self, query: np.ndarray, k: int) -> List[int]:
        if not self.entries:
            return []
        ids = np.fromiter(self.entries.keys(), dtype=np.int64, count=len(self.entries))
        matrix = np.stack([self.entries[int(i)].vector for i in ids])
        scores = matrix @ query
        order = np.argsort(-scores)[:k]
        return [int(ids[i]) for i in order]

    def rebuilt(self) -> "_ModelIndex":
        fresh = _ModelIndex(self.model_id, self.dimension, self._m, self._ef_construction, self._ef_search)
        fresh.add(sorted(self.entries.values(), key=lambda e: e.id))
        return fresh


class VectorStore:
    """Persists embedding records and answers similarity queries."""

    def __init__(
        self,
        session_factory=None,
        clock: Clock = SYSTEM_CLOCK,
        default_model_id: Optional[str] = None,
        hnsw_m: int = 32,
        ef_construction: int = 64,
        ef_search: int = 64,
        overfetch_factor: int = 4,
        recall_sample_size: int = 50,
        rebuild_tombstone_ratio: float = 0.2,
        sync_overlap_ids: int = 500,
        retry_policy=None,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._default_model_id = default_model_id
        self._hnsw_m = hnsw_m
        self._ef_construction = ef_construction
        self._ef_search = ef_search
        self._overfetch = max(1, overfetch_factor)
        self._recall_sample_size = recall_sample_size
        self._rebuild_ratio = rebuild_tombstone_ratio
        self._sync_overlap = max(0, sync_overlap_ids)
        self._retry_policy = retry_policy

        self._indexes: Dict[str, _ModelIndex] = {}
        self._health: Dict[str, IndexHealth] = {}
        self._last_synced_id = 0
        self._sync_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, session_factory=None, clock: Clock = SYSTEM_CLOCK, retry_policy=None) -> "VectorStore":
        return cls(
            session_factory=session_factory,
            clock=clock,
            default_model_id=settings.embedding_model_id,
            hnsw_m=settings.vector_hnsw_m,
            ef_construction=settings.vector_ef_construction,
            ef_search=settings.vector_ef_search,
            overfetch_factor=settings.vector_overfetch_factor,
            recall_sample_size=settings.vector_recall_sample_size,
            rebuild_tombstone_ratio=settings.vector_rebuild_tombstone_ratio,
            sync_overlap_ids=settings.vector_sync_overlap_ids,
            retry_policy=retry_policy,
        )

    # ------------------------------------------------------------------
    # Index bookkeeping
    # ------------------------------------------------------------------

    def _index_for(self, model_id: str, dimension: int) -> _ModelIndex:
        index = self._indexes.get(model_id)
        if index is None:
            index = _ModelIndex(model_id, dimension, self._hnsw_m, self._ef_construction, self._ef_search)
            self._indexes[model_id] = index
        elif index.dimension != dimension:
            raise ValidationError(
                f"Model '{model_id}' vectors have dimension {index.dimension}, got {dimension}",
                model_id=model_id,
                expected=index.dimension,
                actual=dimension,
            )
        return index

    def dimension_for(self, model_id: str) -> Optional[int]:
        index = self._indexes.get(model_id)
        return index.dimension if index else None

    def _apply(self, records: Iterable[VectorRecord], superseded_ids: Iterable[int] = ()) -> int:
        by_model: Dict[str, List[_IndexedVector]] = {}
        for record in records:
            by_model.setdefault(record.model_id, []).append(
                _IndexedVector(
                    id=record.id,
                    source_id=record.source_id,
                    source_type=record.source_type,
                    content_hash=record.content_hash,
                    vector=_normalize(record.vector),
                    metadata=record.metadata,
                    created_at=record.created_at,
                )
            )
        added = 0
        for model_id, entries in by_model.items():
            added += self._index_for(model_id, entries[0].vector.shape[0]).add(entries)
        for vector_id in superseded_ids:
            for index in self._indexes.values():
                index.tombstone(vector_id)
        return added

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Warm every index from the current rows in ``embedding_vectors``."""
        async with self._sync_lock:
            self._indexes.clear()
            self._health.clear()
            self._last_synced_id = 0
        loaded = await self.sync()
        logger.info("vector_index_loaded", vectors=loaded, models=list(self._indexes))
        return loaded

    async def sync(self) -> int:
        """Add rows written since the last sync (by any process). Returns rows added."""
        if self._session_factory is None:
            return 0
        added = 0
        async with self._sync_lock:
            cursor = max(0, self._last_synced_id - self._sync_overlap)
            while True:
                after_id = cursor

                async def op(db):
                    rows = await crud.get_current_vectors(db, after_id=after_id, limit=_SYNC_PAGE)
                    return [VectorRecord.from_row(r) for r in rows]

                records = await run_db_operation(self._session_factory, op, "vector_sync")
                if not records:
                    break
                added += self._apply(records)
                cursor = max(r.id for r in records)
                self._last_synced_id = max(self._last_synced_id, cursor)
                if len(records) < _SYNC_PAGE:
                    break
        return added

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(
        self,
        source_id: str,
        vector: Sequence[float],
        content_hash: str,
        model_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        source_type: str = "message",
    ) -> VectorRecord:
        """Store the current vector for (source_id, model_id), superseding the previous one."""
        records = await self.upsert_many([{
            "source_id": source_id,
            "source_type": source_type,
            "vector": vector,
            "content_hash": content_hash,
            "model_id": model_id,
            "metadata": metadata,
        }])
        return records[0]

    async def upsert_many(self, records: List[Dict[str, Any]]) -> List[VectorRecord]:
        """Persist many records in one transaction and apply them to the index."""
        if not records:
            return []
        rows_in = []
        for record in records:
            vector = [float(v) for v in record["vector"]]
            if not vector:
                raise ValidationError("Vector must not be empty", source_id=record["source_id"])
            known = self.dimension_for(record["model_id"])
            if known is not None and known != len(vector):
                raise ValidationError(
                    f"Model '{record['model_id']}' vectors have dimension {known}, got {len(vector)}",
                    model_id=record["model_id"],
                    expected=known,
                    actual=len(vector),
                )
            rows_in.append({
                "source_id": record["source_id"],
                "source_type": record.get("source_type") or "message",
                "content_hash": record["content_hash"],
                "model_id": record["model_id"],
                "vector": vector,
                "attributes": record.get("metadata") or None,
            })

        now = self._clock.now()

        async def op(db):
            rows, superseded = await crud.upsert_vectors(db, rows_in, now=now)
            return [VectorRecord.from_row(r) for r in rows], superseded

        stored, superseded = await run_db_operation(
            self._session_factory, op, "vector_upsert", self._retry_policy
        )
        self._apply(stored, superseded)
        return stored

    async def find_by_hashes(self, content_hashes: Iterable[str], model_id: str) -> Dict[str, VectorRecord]:
        """Current records (any source) whose content hash is in ``content_hashes``."""
        hashes = list(set(content_hashes))
        if not hashes:
            return {}

        async def op(db):
            found = await crud.find_current_vectors_by_hashes(db, hashes, model_id)
            return {h: VectorRecord.from_row(r) for h, r in found.items()}

        return await run_db_operation(self._session_factory, op, "vector_find_by_hashes")

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query_vector: Sequence[float],
        filters: Optional[Any] = None,
        top_k: int = 10,
        threshold: float = 0.0,
        model_id: Optional[str] = None,
    ) -> List[VectorMatch]:
        """
        Ranked matches by cosine similarity, best first.

        Args:
            query_vector: Query embedding from the same model
            filters: SearchFilters or a flat dict (see SearchFilters.from_dict)
            top_k: Maximum matches to return
            threshold: Minimum similarity
            model_id: Index to search; defaults to the embedding model
        """
        if top_k <= 0:
            raise ValidationError("top_k must be positive", top_k=top_k)
        model_id = model_id or self._default_model_id
        index = self._indexes.get(model_id)
        if index is None or not index.entries:
            return []

        query = _normalize(query_vector)
        if query.shape[0] != index.dimension:
            raise ValidationError(
                f"Query dimension {query.shape[0]} does not match index dimension {index.dimension}",
                model_id=model_id,
            )
        if not isinstance(filters, SearchFilters):
            filters = SearchFilters.from_dict(filters)

        total = index.size
        k = min(total, top_k * self._overfetch + len(index.tombstones))
        while True:
            scores, ids = index.search(query, k)
            matches: List[VectorMatch] = []
            for score, vector_id in zip(scores, ids):
                if vector_id < 0:
                    continue
                entry = index.entries.get(int(vector_id))
                if entry is None or float(score) < threshold:
                    continue
                if not filters.matches(entry):
                    continue
                matches.append(
                    VectorMatch(
                        source_id=entry.source_id,
                        source_type=entry.source_type,
                        content_hash=entry.content_hash,
                        model_id=model_id,
                        score=float(score),
                        vector_id=entry.id,
                        metadata=entry.metadata,
                        created_at=entry.created_at,
                    )
                )
            below_threshold = len(scores) > 0 and float(scores[-1]) < threshold
            if len(matches) >= top_k or k >= total or below_threshold:
                break
            k = min(total, k * 2)

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def compute_health(self, model_id: Optional[str] = None, k: int = 10) -> Dict[str, IndexHealth]:
        """
        Size, tombstones and approximate recall@k per model.

        Recall compares HNSW results to exact search for a deterministic
        sample of live vectors used as queries.
        """
        models = [model_id] if model_id else list(self._indexes)
        results: Dict[str, IndexHealth] = {}
        for name in models:
            index = self._indexes.get(name)
            if index is None:
                continue
            live_ids = sorted(index.entries)
            sample_size = min(self._recall_sample_size, len(live_ids))
            recall = None
            if sample_size:
                rng = np.random.default_rng(len(live_ids))
                sample = rng.choice(live_ids, size=sample_size, replace=False)
                depth = min(k, len(live_ids))
                hits = 0
                for vector_id in sample:
                    query = index.entries[int(vector_id)].vector
                    exact = set(index.exact_search(query, depth))
                    _, ids = index.search(query, min(index.size, depth + len(index.tombstones)))
                    approx = [int(i) for i in ids if int(i) in index.entries][:depth]
                    hits += len(exact.intersection(approx))
                recall = hits / float(sample_size * depth)
            health = IndexHealth(
                model_id=name,
                dimension=index.dimension,
                size=index.size,
                live=len(index.entries),
                tombstones=len(index.tombstones),
                recall=recall,
                sample_size=sample_size,
                computed_at=self._clock.now(),
            )
            self._health[name] = health
            results[name] = health
        return results

    def rebuild(self, model_id: Optional[str] = None) -> int:
        """Rebuild indexes without tombstones. Returns tombstones dropped."""
        dropped = 0
        for name in [model_id] if model_id else list(self._indexes):
            index = self._indexes.get(name)
            if index is None:
                continue
            dropped += len(index.tombstones)
            self._indexes[name] = index.rebuilt()
            logger.info("vector_index_rebuilt", model_id=name, live=len(index.entries), dropped=len(index.tombstones))
        return dropped

    def maintain(self) -> Dict[str, Dict[str, Any]]:
        """Rebuild indexes whose tombstone ratio is too high, then recompute health."""
        for name, index in list(self._indexes.items()):
            ratio = len(index.tombstones) / index.size if index.size else 0.0
            if ratio >= self._rebuild_ratio and index.tombstones:
                self.rebuild(name)
        return {name: h.to_dict() for name, h in self.compute_health().items()}

    def stats(self) -> Dict[str, Any]:
        return {
            "models": {
                name: {
                    "dimension": index.dimension,
                    "size": index.size,
                    "live": len(index.entries),
                    "tombstones": len(index.tombstones),
                    "health": self._health[name].to_dict() if name in self._health else None,
                }
                for name, index in self._indexes.items()
            },
            "last_synced_id": self._last_synced_id,
        }

