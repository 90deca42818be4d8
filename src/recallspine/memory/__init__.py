"""Semantic memory: store, clustering, diversity guard and temporal index."""

from recallspine.memory.clustering import ClusterIndex, cosine_similarity, extract_keywords
from recallspine.memory.diversity import DiversityGuard, RebalanceReport
from recallspine.memory.store import MemoryStore, memory_id_for
from recallspine.memory.temporal import (
    TemporalIndex,
    matches_temporal_filter,
    parse_temporal_reference,
)

__all__ = [
    "ClusterIndex",
    "DiversityGuard",
    "MemoryStore",
    "RebalanceReport",
    "TemporalIndex",
    "cosine_similarity",
    "extract_keywords",
    "matches_temporal_filter",
    "memory_id_for",
    "parse_temporal_reference",
]
