"""Multi-strategy retrieval: semantic, keyword, temporal and cross-reference.

Strategies run concurrently and share a single query embedding. Their
candidates are deduplicated by text prefix and fused into one ranking. A
failing strategy is logged and skipped; the call as a whole never raises and
degrades to an empty ``fallback`` result instead.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from datetime import datetime
from typing import Any, Awaitable

import numpy as np

from recallspine.config import Config
from recallspine.memory.store import MemoryStore
from recallspine.memory.temporal import parse_temporal_reference
from recallspine.retrieval.keyword import ConversationHistory, KeywordSearch
from recallspine.retrieval.semantic import SemanticSearch
from recallspine.types import (
    Fragment,
    MemoryMetadata,
    MemoryRecord,
    MemoryType,
    QueryAnalysis,
    RetrievalResult,
    RetrieveOptions,
    SearchHit,
)
from recallspine.utils import age_days, utcnow

logger = logging.getLogger(__name__)

STRATEGIES = ("semantic", "traditional", "temporal", "cross_reference")

_TEMPORAL_HINT_RE = re.compile(r"\b(last|recently|yesterday|earlier|before|when did)\b")
_TRADITIONAL_HINT_RE = re.compile(r"\b(exact|keyword)\b")
_CROSS_REF_HINT_RE = re.compile(r"\b(related|similar|like)\b")
_QUERY_TYPES = [
    ("temporal", re.compile(r"\b(when|last time|earlier|before)\b")),
    ("semantic", re.compile(r"\b(what|how|why)\b")),
    ("cross_reference", _CROSS_REF_HINT_RE),
    ("traditional", _TRADITIONAL_HINT_RE),
]


def analyze_query(query: str) -> QueryAnalysis:
    """Cheap keyword heuristics deciding which strategies are worth running."""
    lower = (query or "").lower()
    query_type = next((name for name, rx in _QUERY_TYPES if rx.search(lower)), "general")
    return QueryAnalysis(
        needs_semantic=True,
        needs_traditional=bool(_TRADITIONAL_HINT_RE.search(lower)),
        needs_temporal=(
            parse_temporal_reference(query) is not None
            or bool(_TEMPORAL_HINT_RE.search(lower))
        ),
        needs_cross_reference=bool(_CROSS_REF_HINT_RE.search(lower)),
        query_type=query_type,
    )


class _SharedQueryVector:
    """Embeds the query at most once per retrieval call."""

    def __init__(self, store: MemoryStore, query: str) -> None:
        self._store = store
        self._query = query
        self._task: asyncio.Future[np.ndarray] | None = None

    async def get(self) -> np.ndarray:
        if self._task is None:
            self._task = asyncio.ensure_future(self._store.embed(self._query))
        return await self._task


def _hit_to_fragment(hit: SearchHit, source: str) -> Fragment:
    return Fragment(
        text=hit.memory.text,
        similarity=hit.similarity,
        relevance_score=hit.relevance_score,
        timestamp=hit.memory.timestamp,
        type=hit.memory.type.value,
        source=source,
        memory_id=hit.memory.id,
        cluster=hit.cluster,
        related=list(hit.related),
    )


class RetrievalOrchestrator:
    """Upstream façade: ``add_memory``, ``retrieve_context``, ``smart_search``."""

    def __init__(
        self,
        store: MemoryStore,
        history: ConversationHistory | None = None,
        config: Config | None = None,
    ) -> None:
        self.store = store
        self.config = config or store.config
        self.history = history
        self.semantic = SemanticSearch(store, self.config.retrieval)
        self.keyword = KeywordSearch(history, self.config.retrieval)

    # --- Writes ---

    async def add_memory(
        self,
        text: str,
        timestamp: datetime | str | float | None = None,
        memory_type: MemoryType | str = MemoryType.CONVERSATION,
        metadata: MemoryMetadata | dict[str, Any] | None = None,
    ) -> MemoryRecord:
        return await self.store.add_memory(
            text, timestamp=timestamp, memory_type=memory_type, metadata=metadata,
        )

    # --- Strategies ---

    async def _semantic_strategy(self, query: str, shared: _SharedQueryVector,
                                 max_results: int, now: datetime) -> list[Fragment]:
        hits = await self.semantic.search(
            query,
            max_results=max_results * 2,
            min_similarity=self.config.retrieval.semantic_min_similarity,
            query_vector=await shared.get(),
            now=now,
        )
        return [_hit_to_fragment(h, "semantic") for h in hits]

    async def _traditional_strategy(self, query: str, profile_id: str,
                                    max_results: int) -> list[Fragment]:
        return await self.keyword.search(query, profile_id, max_results)

    async def _temporal_strategy(self, query: str, shared: _SharedQueryVector,
                                 max_results: int, now: datetime) -> list[Fragment]:
        temporal_ref = parse_temporal_reference(query, now=now)
        if temporal_ref is None:
            return []
        hits = await self.semantic.search(
            query,
            max_results=max_results * 2,
            min_similarity=self.config.retrieval.temporal_min_similarity,
            temporal_filter=temporal_ref,
            query_vector=await shared.get(),
            now=now,
        )
        fragments = [_hit_to_fragment(h, "temporal") for h in hits]
        for f in fragments:
            f.temporal_match = temporal_ref.pattern
        return fragments

    async def _cross_reference_strategy(self, query: str, shared: _SharedQueryVector,
                                        max_results: int, now: datetime) -> list[Fragment]:
        cfg = self.config.retrieval
        primaries = await self.semantic.search(
            query,
            max_results=cfg.cross_reference_seed_count,
            min_similarity=cfg.semantic_min_similarity,
            query_vector=await shared.get(),
            now=now,
        )
        fragments: list[Fragment] = []
        for hit in primaries:
            for related in hit.related:
                fragments.append(Fragment(
                    text=related.text,
                    similarity=cfg.cross_reference_similarity,
                    relevance_score=cfg.cross_reference_relevance,
                    timestamp=related.timestamp,
                    type=related.type.value,
                    source="cross_reference",
                    memory_id=related.id,
                    cluster=self.store.cluster_of(related),
                    cross_reference=True,
                    primary_memory=hit.memory.text[:100],
                ))
        return fragments[:max_results]

    # --- Fusion ---

    def _final_score(self, fragment: Fragment, now: datetime) -> float:
        cfg = self.config.retrieval
        score = fragment.relevance_score or 0.0
        if fragment.source == "semantic":
            score += cfg.semantic_boost
        if fragment.temporal_match:
            score += cfg.temporal_boost
        if fragment.cross_reference:
            score += cfg.cross_reference_boost
        window = max(1e-6, float(cfg.fusion_recency_days))
        score += math.exp(-max(0.0, age_days(fragment.timestamp, now)) / window) * cfg.fusion_recency_weight
        if fragment.cluster is not None:
            score += min(fragment.cluster.size * cfg.fusion_cluster_boost_per_member,
                         cfg.fusion_cluster_boost_cap)
        return min(score, 1.0)

    def rank(self, fragments: list[Fragment], now: datetime | None = None) -> list[Fragment]:
        """Deduplicate by text prefix (highest relevance wins), then fuse scores."""
        now = now or utcnow()
        prefix = self.config.retrieval.dedup_prefix_chars
        unique: dict[str, Fragment] = {}
        for fragment in fragments:
            key = fragment.text[:prefix]
            current = unique.get(key)
            if current is None or current.relevance_score < fragment.relevance_score:
                unique[key] = fragment
        ranked = list(unique.values())
        for fragment in ranked:
            fragment.final_score = self._final_score(fragment, now)
        ranked.sort(key=lambda f: (f.final_score, f.relevance_score), reverse=True)
        return ranked

    # --- Entry points ---

    async def retrieve_context(
        self,
        query: str,
        profile_id: str = "default",
        options: RetrieveOptions | None = None,
        now: datetime | None = None,
    ) -> RetrievalResult:
        opts = options or RetrieveOptions(max_results=self.config.retrieval.default_max_results)
        try:
            now = now or utcnow()
            shared = _SharedQueryVector(self.store, query)
            planned: list[tuple[str, Awaitable[list[Fragment]]]] = []
            if opts.include_semantic:
                planned.append(("semantic", self._semantic_strategy(query, shared, opts.max_results, now)))
            if opts.include_traditional:
                planned.append(("traditional", self._traditional_strategy(query, profile_id, opts.max_results)))
            if opts.include_temporal:
                planned.append(("temporal", self._temporal_strategy(query, shared, opts.max_results, now)))
            if opts.include_cross_reference:
                planned.append(("cross_reference", self._cross_reference_strategy(query, shared, opts.max_results, now)))

            outcomes = await asyncio.gather(*(coro for _, coro in planned), return_exceptions=True)

            counts = {name: 0 for name in STRATEGIES}
            failed: list[str] = []
            candidates: list[Fragment] = []
            for (name, _), outcome in zip(planned, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    logger.warning("%s strategy failed: %s", name, outcome)
                    failed.append(name)
                    continue
                counts[name] = len(outcome)
                candidates.extend(outcome)

            ranked = self.rank(candidates, now=now)
            all_failed = bool(planned) and len(failed) == len(planned)
            return RetrievalResult(
                fragments=ranked[:opts.max_results],
                search_types=counts,
                failed_strategies=failed,
                intelligence="fallback" if all_failed else "multi_layer",
            )
        except Exception:
            logger.exception("context retrieval failed for query %r", query[:80])
            return RetrievalResult(intelligence="fallback")

    async def smart_search(
        self,
        query: str,
        profile_id: str = "default",
        max_results: int | None = None,
    ) -> RetrievalResult:
        analysis = analyze_query(query)
        options = RetrieveOptions(
            max_results=max_results or self.config.retrieval.default_max_results,
            include_semantic=analysis.needs_semantic,
            include_traditional=analysis.needs_traditional,
            include_temporal=analysis.needs_temporal,
            include_cross_reference=analysis.needs_cross_reference,
        )
        result = await self.retrieve_context(query, profile_id=profile_id, options=options)
        result.query_analysis = analysis
        return result

    # --- Introspection ---

    def get_stats(self) -> dict[str, Any]:
        semantic = self.store.get_stats()
        count = getattr(self.history, "count", None)
        return {
            "semantic": semantic,
            "traditional": {
                "total_messages": count() if callable(count) else 0,
            },
            "strategies": list(STRATEGIES),
        }

    async def close(self) -> None:
        await self.store.close()
