"""Embedding-based search over the memory store with composite relevance."""

from __future__ import annotations

import math
from datetime import datetime

import numpy as np

from recallspine.config import RetrievalConfig
from recallspine.memory.clustering import cosine_similarity
from recallspine.memory.store import MemoryStore
from recallspine.memory.temporal import matches_temporal_filter
from recallspine.types import MemoryRecord, MemoryType, SearchHit, TemporalFilter, coerce_memory_type
from recallspine.utils import age_days, tokenize, utcnow


def keyword_matches(memory_text: str, query: str) -> int:
    """Number of distinct query tokens that also occur in *memory_text*."""
    memory_words = set(tokenize(memory_text))
    return sum(1 for w in set(tokenize(query)) if w in memory_words)


class SemanticSearch:
    """Scores every memory against a query embedding."""

    def __init__(self, store: MemoryStore, config: RetrievalConfig | None = None) -> None:
        self.store = store
        self.config = config or RetrievalConfig()

    def relevance_score(
        self,
        memory: MemoryRecord,
        query: str,
        similarity: float,
        now: datetime | None = None,
    ) -> float:
        cfg = self.config
        score = similarity

        window = max(1e-6, float(cfg.recency_window_days))
        score += math.exp(-max(0.0, age_days(memory.timestamp, now)) / window) * cfg.recency_weight

        if memory.metadata.importance:
            score += memory.metadata.importance * cfg.importance_weight

        score += keyword_matches(memory.text, query) * cfg.keyword_match_weight

        cluster = self.store.cluster_of(memory)
        if cluster is not None and cluster.size > 1:
            score += min(cfg.cluster_boost_per_doubling * math.log2(cluster.size), cfg.cluster_boost_cap)

        return min(score, 1.0)

    async def search(
        self,
        query: str,
        max_results: int | None = None,
        min_similarity: float | None = None,
        temporal_filter: TemporalFilter | None = None,
        type_filter: MemoryType | str | None = None,
        include_clusters: bool = True,
        query_vector: np.ndarray | None = None,
        now: datetime | None = None,
    ) -> list[SearchHit]:
        """Rank memories for *query*.

        Embeds the query unless *query_vector* is given, which lets several
        strategies share one provider call. ``ProviderError`` propagates.
        """
        cfg = self.config
        max_results = cfg.search_max_results if max_results is None else max_results
        min_similarity = cfg.search_min_similarity if min_similarity is None else min_similarity
        wanted_type = coerce_memory_type(type_filter) if type_filter is not None else None
        now = now or utcnow()

        if query_vector is None:
            query_vector = await self.store.embed(query)

        hits: list[SearchHit] = []
        for memory in self.store.records():
            if wanted_type is not None and memory.type is not wanted_type:
                continue
            if temporal_filter is not None and not matches_temporal_filter(
                memory.timestamp, temporal_filter, now=now,
                tolerance_days=cfg.temporal_tolerance_days,
            ):
                continue
            similarity = cosine_similarity(query_vector, memory.embedding)
            if similarity < min_similarity:
                continue
            hits.append(SearchHit(
                memory=memory,
                similarity=similarity,
                relevance_score=self.relevance_score(memory, query, similarity, now=now),
            ))

        hits.sort(key=lambda h: (h.relevance_score, h.similarity), reverse=True)
        hits = hits[:max(0, max_results)]

        if include_clusters:
            for hit in hits:
                hit.cluster = self.store.cluster_of(hit.memory)
                hit.related = self.store.cluster_neighbors(hit.memory, limit=cfg.neighbor_limit)
        return hits
