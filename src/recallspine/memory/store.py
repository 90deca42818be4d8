"""Memory store: records + embeddings + temporal index + cluster index.

One store owns one isolated memory space. Inserts are serialised by an
``asyncio.Lock``; the embedding call happens before the lock is taken, so a
provider failure never leaves partial state behind. Reads work on snapshots
of the record map and are not locked.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

import numpy as np

from recallspine.config import Config
from recallspine.embeddings.backends import EmbeddingBackend, create_embedder
from recallspine.exceptions import MalformedRecordError, PersistenceError, ProviderError
from recallspine.memory.clustering import ClusterIndex
from recallspine.memory.diversity import DiversityGuard, RebalanceReport
from recallspine.memory.temporal import TemporalIndex
from recallspine.storage.snapshot import SnapshotStore
from recallspine.types import (
    Cluster,
    MemoryMetadata,
    MemoryRecord,
    MemoryType,
    coerce_memory_type,
    validate_metadata,
)
from recallspine.utils import content_hash, iso_str, to_datetime, utcnow

logger = logging.getLogger(__name__)


def memory_id_for(text: str, timestamp: datetime) -> str:
    """Deterministic id: identical text at an identical instant collides."""
    millis = int(timestamp.timestamp() * 1000)
    return f"mem_{millis}_{content_hash(text.encode('utf-8'))[:12]}"


class MemoryStore:
    def __init__(
        self,
        config: Config | None = None,
        embedder: EmbeddingBackend | None = None,
        persist: bool = True,
    ) -> None:
        self.config = config or Config()
        self.embedder = embedder or create_embedder(self.config.embedding)
        self.guard = DiversityGuard(self.config.clusters)
        self._lock = asyncio.Lock()
        self._dims: int | None = None
        self._dirty = False
        self.last_rebalance: RebalanceReport | None = None

        self._snapshots: SnapshotStore | None = None
        self._records: dict[str, MemoryRecord] = {}
        self.temporal = TemporalIndex()
        self.clusters = ClusterIndex(
            threshold=self.config.clusters.similarity_threshold,
            max_clusters=self.config.clusters.max_clusters,
        )
        if persist:
            self._snapshots = SnapshotStore(self.config.embeddings_path, self.config.clusters_path)
            try:
                self.config.ensure_dirs()
            except OSError:
                self._dirty = True
                logger.exception("cannot create data dir %s; continuing in memory", self.config.data_dir)
            else:
                self._load()

    def _load(self) -> None:
        assert self._snapshots is not None
        snap = self._snapshots.load()
        self._records = snap.records
        self.temporal = TemporalIndex(snap.temporal)
        self.clusters = ClusterIndex(
            threshold=self.config.clusters.similarity_threshold,
            max_clusters=self.config.clusters.max_clusters,
            clusters=snap.clusters,
        )
        if self._records:
            self._dims = int(next(iter(self._records.values())).embedding.shape[0])
        if self._reconcile():
            self._persist()
        logger.info("loaded %d memories and %d clusters", len(self._records), len(self.clusters))

    def _reconcile(self) -> bool:
        """Make loaded records and clusters agree; True when anything changed."""
        pruned = self.clusters.prune_missing(self._records)
        if pruned:
            logger.warning("pruned missing members from %s", ", ".join(pruned))
        orphans = []
        for rec in self._records.values():
            cluster = self.clusters.get(rec.cluster_id)
            if cluster is None or rec.id not in cluster.member_ids:
                orphans.append(rec)
        for rec in sorted(orphans, key=lambda r: (r.timestamp, r.id)):
            if rec.cluster_id is not None:
                logger.warning("memory %s points at missing %s; reassigning", rec.id, rec.cluster_id)
            rec.cluster_id = None
            self.clusters.assign(rec, self._records)
        return bool(pruned or orphans)

    # --- Read access ---

    def __len__(self) -> int:
        return len(self._records)

    def get(self, memory_id: str) -> MemoryRecord | None:
        return self._records.get(memory_id)

    def records(self) -> list[MemoryRecord]:
        return list(self._records.values())

    def cluster_of(self, record: MemoryRecord) -> Cluster | None:
        return self.clusters.get(record.cluster_id)

    def cluster_neighbors(self, record: MemoryRecord, limit: int = 3) -> list[MemoryRecord]:
        cluster = self.cluster_of(record)
        if cluster is None:
            return []
        out: list[MemoryRecord] = []
        for mid in cluster.member_ids:
            if mid == record.id:
                continue
            rec = self._records.get(mid)
            if rec is not None:
                out.append(rec)
            if len(out) >= limit:
                break
        return out

    # --- Embedding ---

    async def embed(self, text: str) -> np.ndarray:
        """Embed *text* through the provider, truncated to its input ceiling."""
        limit = self.config.embedding.max_input_chars
        truncated = text[:limit] if limit > 0 else text
        try:
            vec = await self.embedder.embed_single(truncated)
        except Exception as exc:
            raise ProviderError(f"embedding failed: {exc}") from exc
        arr = np.ascontiguousarray(np.asarray(vec, dtype=np.float32).ravel())
        if arr.size == 0:
            raise ProviderError("embedding provider returned an empty vector")
        if self._dims is not None and arr.shape[0] != self._dims:
            raise ProviderError(f"embedding has {arr.shape[0]} dims, store uses {self._dims}")
        return arr

    # --- Writes ---

    async def add_memory(
        self,
        text: str,
        timestamp: datetime | str | float | None = None,
        memory_type: MemoryType | str = MemoryType.CONVERSATION,
        metadata: MemoryMetadata | dict[str, Any] | None = None,
    ) -> MemoryRecord:
        """Embed, index, cluster and persist one memory.

        Raises ``MalformedRecordError`` before any provider call for empty
        text or invalid metadata, and ``ProviderError`` (with no state
        change) when the embedding call fails.
        """
        if not isinstance(text, str) or not text.strip():
            raise MalformedRecordError("memory text must be a non-empty string")
        mtype = coerce_memory_type(memory_type)
        meta = validate_metadata(mtype, metadata)
        try:
            ts = to_datetime(timestamp)
        except (TypeError, ValueError) as exc:
            raise MalformedRecordError(f"invalid timestamp {timestamp!r}") from exc

        memory_id = memory_id_for(text, ts)
        existing = self._records.get(memory_id)
        if existing is not None:
            logger.debug("duplicate memory %s ignored", memory_id)
            return existing

        embedding = await self.embed(text)

        async with self._lock:
            existing = self._records.get(memory_id)
            if existing is not None:
                return existing
            if self._dims is None:
                self._dims = int(embedding.shape[0])
            elif embedding.shape[0] != self._dims:
                raise ProviderError(f"embedding has {embedding.shape[0]} dims, store uses {self._dims}")

            record = MemoryRecord(
                id=memory_id,
                text=text,
                timestamp=ts,
                type=mtype,
                metadata=meta,
                embedding=embedding,
            )
            self._records[memory_id] = record
            self.temporal.add(memory_id, ts)
            self._cluster(record)
            self._apply_retention(keep=record.id)
            self._persist()
            return record

    def _cluster(self, record: MemoryRecord) -> None:
        if self.guard.needs_rebalance(self.clusters):
            self.last_rebalance = self.guard.enforce(self.clusters, self._records) or self.last_rebalance
        cluster, created = self.clusters.assign(record, self._records)
        if created:
            logger.info("new cluster %s keywords=%s", cluster.id, cluster.keywords)
            if self.guard.needs_rebalance(self.clusters):
                self.last_rebalance = self.guard.enforce(self.clusters, self._records) or self.last_rebalance

    # --- Retention ---

    def _remove(self, record: MemoryRecord) -> None:
        self.clusters.remove_member(record, self._records)
        self.temporal.discard(record.id, record.timestamp)
        self._records.pop(record.id, None)

    def _apply_retention(self, keep: str | None = None) -> list[str]:
        cfg = self.config.retention
        removed: list[str] = []
        if cfg.max_age_days > 0:
            removed.extend(mid for mid in self._stale_ids(cfg.max_age_days) if mid != keep)
        if cfg.max_memories > 0:
            overflow = len(self._records) - len(removed) - cfg.max_memories
            if overflow > 0:
                oldest = sorted(
                    (r for r in self._records.values() if r.id not in removed and r.id != keep),
                    key=lambda r: (r.timestamp, r.id),
                )
                removed.extend(r.id for r in oldest[:overflow])
        for mid in removed:
            self._remove(self._records[mid])
        if removed:
            logger.info("retention pruned %d memories", len(removed))
        return removed

    def _stale_ids(self, max_age_days: float, limit: int | None = None) -> list[str]:
        cutoff = utcnow() - timedelta(days=max_age_days)
        stale = sorted(
            (r for r in self._records.values() if r.timestamp < cutoff),
            key=lambda r: (r.timestamp, r.id),
        )
        if limit is not None:
            stale = stale[:limit]
        return [r.id for r in stale]

    async def forget_stale(
        self,
        max_age_days: float,
        dry_run: bool = True,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Preview or delete memories older than *max_age_days*."""
        async with self._lock:
            candidates = self._stale_ids(max_age_days, limit=limit)
            if not dry_run:
                for mid in candidates:
                    self._remove(self._records[mid])
                if candidates:
                    self._persist()
            return {
                "dry_run": dry_run,
                "candidate_count": len(candidates),
                "candidate_ids": candidates,
                "removed": 0 if dry_run else len(candidates),
            }

    # --- Persistence ---

    def _persist(self) -> None:
        if self._snapshots is None:
            return
        try:
            self._snapshots.save_memories(self._records, self.temporal.to_dict())
            self._snapshots.save_clusters(self.clusters.to_dict())
            self._dirty = False
        except PersistenceError:
            self._dirty = True
            logger.exception("snapshot write failed; continuing in memory")

    def flush(self) -> bool:
        """Retry persistence; True when the snapshot on disk is current."""
        self._persist()
        return not self._dirty

    # --- Stats ---

    def get_stats(self) -> dict[str, Any]:
        records = list(self._records.values())
        clusters = self.clusters.all()
        types: dict[str, int] = {}
        for r in records:
            types[r.type.value] = types.get(r.type.value, 0) + 1
        temporal_range = None
        if records:
            oldest = min(r.timestamp for r in records)
            newest = max(r.timestamp for r in records)
            temporal_range = {
                "oldest": iso_str(oldest),
                "newest": iso_str(newest),
                "span_seconds": (newest - oldest).total_seconds(),
            }
        return {
            "total_memories": len(records),
            "total_clusters": len(clusters),
            "average_cluster_size": (
                sum(c.size for c in clusters) / len(clusters) if clusters else 0.0
            ),
            "memory_types": types,
            "temporal_range": temporal_range,
            "dominant_cluster_ratio": self.guard.ratio(self.clusters),
            "persistence_pending": self._dirty,
        }

    async def close(self) -> None:
        if self._dirty:
            self.flush()
        await self.embedder.close()
