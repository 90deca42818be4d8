"""Online nearest-centroid clustering of memory embeddings."""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Iterable, Mapping

import numpy as np

from recallspine.types import Cluster, MemoryRecord
from recallspine.utils import utcnow

logger = logging.getLogger(__name__)

_CLUSTER_ID_RE = re.compile(r"^cluster_(\d+)$")

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "by", "from", "up", "about", "into", "through", "during", "before", "after",
    "above", "below", "between", "among", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "can", "this", "that", "these", "those",
    "there", "their", "them", "they", "then", "than", "what", "when", "where",
    "which", "while", "with", "your", "just", "also", "very", "some",
})


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """dot(a, b) / (|a| |b|); 0.0 for zero vectors or mismatched lengths."""
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        return 0.0
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(a, b) / denom, -1.0, 1.0))


def mean_centroid(vectors: Iterable[np.ndarray]) -> np.ndarray | None:
    vecs = [np.asarray(v, dtype=np.float32) for v in vectors]
    if not vecs:
        return None
    return np.mean(np.stack(vecs), axis=0).astype(np.float32)


def extract_keywords(text: str, limit: int = 5) -> list[str]:
    """Top *limit* stop-word-filtered tokens longer than 3 chars, by frequency.

    Ties keep first-occurrence order.
    """
    cleaned = re.sub(r"[^\w\s]", "", (text or "").lower())
    words = [w for w in cleaned.split() if len(w) > 3 and w not in STOPWORDS]
    counts = Counter(words)
    return [w for w, _ in counts.most_common(limit)]


class ClusterIndex:
    """Cluster registry plus the attach/create/merge operations on it.

    Clusters are always iterated in ascending id order, and ids are
    zero-padded sequence numbers, so equal-similarity ties resolve to the
    oldest cluster.
    """

    def __init__(
        self,
        threshold: float = 0.7,
        max_clusters: int = 50,
        clusters: Mapping[str, Cluster] | None = None,
    ) -> None:
        self.threshold = threshold
        self.max_clusters = max_clusters
        self._clusters: dict[str, Cluster] = dict(clusters or {})
        self._next_seq = self._max_seq() + 1

    def _max_seq(self) -> int:
        best = 0
        for cid in self._clusters:
            m = _CLUSTER_ID_RE.match(cid)
            if m:
                best = max(best, int(m.group(1)))
        return best

    def _new_id(self) -> str:
        cid = f"cluster_{self._next_seq:06d}"
        self._next_seq += 1
        return cid

    # --- Read access ---

    def __len__(self) -> int:
        return len(self._clusters)

    def __contains__(self, cluster_id: object) -> bool:
        return cluster_id in self._clusters

    def get(self, cluster_id: str | None) -> Cluster | None:
        if cluster_id is None:
            return None
        return self._clusters.get(cluster_id)

    def all(self) -> list[Cluster]:
        return [self._clusters[cid] for cid in sorted(self._clusters)]

    def to_dict(self) -> dict[str, dict]:
        return {c.id: c.to_dict() for c in self.all()}

    # --- Assignment ---

    def best_match(self, embedding: np.ndarray) -> tuple[Cluster | None, float]:
        """Most similar cluster (lowest id on ties) and its similarity."""
        best: Cluster | None = None
        best_sim = 0.0
        for cluster in self.all():
            if not cluster.member_ids:
                continue
            sim = cosine_similarity(embedding, cluster.centroid)
            if sim > best_sim:
                best, best_sim = cluster, sim
        return best, best_sim

    def assign(self, record: MemoryRecord, records: Mapping[str, MemoryRecord]) -> tuple[Cluster, bool]:
        """Attach *record* to its nearest cluster or open a new one.

        Returns ``(cluster, created)`` and sets ``record.cluster_id``.
        """
        best, sim = self.best_match(record.embedding)
        at_cap = self.max_clusters > 0 and len(self._clusters) >= self.max_clusters
        if best is not None and (sim > self.threshold or at_cap):
            if sim <= self.threshold:
                logger.debug("cluster cap %d reached; attaching %s to %s at %.3f",
                             self.max_clusters, record.id, best.id, sim)
            self._attach(best, record, records)
            return best, False
        return self._create(record), True

    def _attach(self, cluster: Cluster, record: MemoryRecord,
                records: Mapping[str, MemoryRecord]) -> None:
        if record.id not in cluster.member_ids:
            cluster.member_ids.append(record.id)
        record.cluster_id = cluster.id
        self.recompute_centroid(cluster, records)
        cluster.updated = utcnow()

    def _create(self, record: MemoryRecord) -> Cluster:
        now = utcnow()
        cluster = Cluster(
            id=self._new_id(),
            member_ids=[record.id],
            centroid=np.array(record.embedding, dtype=np.float32, copy=True),
            keywords=extract_keywords(record.text),
            created=now,
            updated=now,
            type=record.type,
        )
        self._clusters[cluster.id] = cluster
        record.cluster_id = cluster.id
        logger.debug("created %s for %s keywords=%s", cluster.id, record.id, cluster.keywords)
        return cluster

    def recompute_centroid(self, cluster: Cluster, records: Mapping[str, MemoryRecord]) -> None:
        centroid = mean_centroid(
            records[mid].embedding for mid in cluster.member_ids if mid in records
        )
        if centroid is not None:
            cluster.centroid = centroid

    # --- Structural changes ---

    def merge(
        self,
        survivor_id: str,
        victim_ids: list[str],
        records: Mapping[str, MemoryRecord],
    ) -> Cluster:
        """Fold *victim_ids* into *survivor_id* and repoint member records."""
        survivor = self._clusters[survivor_id]
        for vid in victim_ids:
            if vid == survivor_id:
                continue
            victim = self._clusters.pop(vid, None)
            if victim is None:
                continue
            for mid in victim.member_ids:
                if mid not in survivor.member_ids:
                    survivor.member_ids.append(mid)
                rec = records.get(mid)
                if rec is not None:
                    rec.cluster_id = survivor.id
            for kw in victim.keywords:
                if kw not in survivor.keywords:
                    survivor.keywords.append(kw)
        self.recompute_centroid(survivor, records)
        survivor.updated = utcnow()
        return survivor

    def prune_missing(self, records: Mapping[str, MemoryRecord]) -> list[str]:
        """Drop member ids that *records* does not hold or that point elsewhere.

        Clusters left empty are deleted. Returns the ids of clusters that
        changed.
        """
        changed: list[str] = []
        for cluster in self.all():
            live = [
                mid for mid in cluster.member_ids
                if mid in records and records[mid].cluster_id == cluster.id
            ]
            if len(live) == len(cluster.member_ids):
                continue
            changed.append(cluster.id)
            cluster.member_ids = live
            if not live:
                del self._clusters[cluster.id]
                continue
            self.recompute_centroid(cluster, records)
        return changed

    def remove_member(self, record: MemoryRecord, records: Mapping[str, MemoryRecord]) -> None:
        """Detach *record*; an emptied cluster is deleted."""
        cluster = self.get(record.cluster_id)
        record.cluster_id = None
        if cluster is None:
            return
        if record.id in cluster.member_ids:
            cluster.member_ids.remove(record.id)
        if not cluster.member_ids:
            del self._clusters[cluster.id]
            return
        self.recompute_centroid(cluster, records)
        cluster.updated = utcnow()
