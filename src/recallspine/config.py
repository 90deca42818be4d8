"""recallspine configuration."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _default_data_dir() -> Path:
    return Path(os.environ.get("RECALLSPINE_DATA_DIR", Path(__file__).resolve().parents[2] / "data"))


DEFAULT_WATCH_KEYWORDS = [
    "robot", "servo", "command", "movement", "tonypi", "motor", "sensor",
]


class EmbeddingConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("RECALLSPINE_EMBED_PROVIDER", "hash"))
    api_key: str = Field(default_factory=lambda: os.environ.get("OPENAI_API_KEY", ""))
    base_url: str = "https://api.openai.com/v1"
    model: str = "text-embedding-3-small"
    dims: int = 384
    max_input_chars: int = 8191
    timeout: float = 30.0


class ClusterConfig(BaseModel):
    similarity_threshold: float = 0.7
    max_clusters: int = 50
    diversity_ceiling: float = 0.6
    watch_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_WATCH_KEYWORDS))


class RetrievalConfig(BaseModel):
    default_max_results: int = 5
    search_max_results: int = 10
    search_min_similarity: float = 0.3
    recency_window_days: float = 30.0
    recency_weight: float = 0.2
    importance_weight: float = 0.1
    keyword_match_weight: float = 0.05
    cluster_boost_per_doubling: float = 0.025
    cluster_boost_cap: float = 0.1
    neighbor_limit: int = 3
    # Fusion stage
    fusion_recency_days: float = 7.0
    fusion_recency_weight: float = 0.1
    semantic_boost: float = 0.15
    temporal_boost: float = 0.10
    cross_reference_boost: float = 0.05
    fusion_cluster_boost_per_member: float = 0.02
    fusion_cluster_boost_cap: float = 0.1
    dedup_prefix_chars: int = 100
    # Strategy thresholds
    semantic_min_similarity: float = 0.1
    temporal_min_similarity: float = 0.05
    cross_reference_seed_count: int = 3
    cross_reference_similarity: float = 0.5
    cross_reference_relevance: float = 0.6
    keyword_min_jaccard: float = 0.3
    history_window: int = 10
    temporal_tolerance_days: float = 1.0


class RetentionConfig(BaseModel):
    # 0 disables the limit.
    max_memories: int = 0
    max_age_days: float = 0.0


class HistoryConfig(BaseModel):
    max_messages_per_profile: int = 50


class APIConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8430
    bearer_token: str = Field(default_factory=lambda: os.environ.get("RECALLSPINE_API_TOKEN", ""))


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    clusters: ClusterConfig = Field(default_factory=ClusterConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @property
    def memory_dir(self) -> Path:
        return self.data_dir / "semantic_memory"

    @property
    def embeddings_path(self) -> Path:
        return self.memory_dir / "embeddings.json"

    @property
    def clusters_path(self) -> Path:
        return self.memory_dir / "clusters.json"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.memory_dir]:
            d.mkdir(parents=True, exist_ok=True)
