"""Core data types shared across the memory and retrieval layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from recallspine.exceptions import MalformedRecordError
from recallspine.utils import iso_str, parse_iso, utcnow


class MemoryType(str, Enum):
    CONVERSATION = "conversation"
    FACT = "fact"
    EVENT = "event"
    OBSERVATION = "observation"
    REFLECTION = "reflection"


class MemoryMetadata(BaseModel):
    """Typed metadata attached to a memory at insertion time."""

    model_config = ConfigDict(extra="forbid")

    importance: float | None = Field(default=None, ge=0.0, le=1.0)
    profile_id: str | None = None
    session_id: str | None = None
    sender: Literal["user", "assistant", "system"] | None = None
    source: str | None = None
    tags: list[str] = Field(default_factory=list)
    attributes: dict[str, str] = Field(default_factory=dict)


def validate_metadata(
    memory_type: MemoryType,
    metadata: MemoryMetadata | dict[str, Any] | None,
) -> MemoryMetadata:
    """Validate caller metadata against the rules for *memory_type*."""
    if metadata is None:
        meta = MemoryMetadata()
    elif isinstance(metadata, MemoryMetadata):
        meta = metadata
    else:
        try:
            meta = MemoryMetadata.model_validate(metadata)
        except ValidationError as exc:
            raise MalformedRecordError(f"invalid metadata: {exc}") from exc
    if meta.sender is not None and memory_type is not MemoryType.CONVERSATION:
        raise MalformedRecordError(
            f"sender is only valid on conversation memories, not {memory_type.value}"
        )
    return meta


def coerce_memory_type(raw: MemoryType | str) -> MemoryType:
    if isinstance(raw, MemoryType):
        return raw
    try:
        return MemoryType(str(raw).strip().lower())
    except ValueError as exc:
        raise MalformedRecordError(f"unknown memory type: {raw!r}") from exc


@dataclass
class MemoryRecord:
    id: str
    text: str
    timestamp: datetime
    type: MemoryType
    metadata: MemoryMetadata
    embedding: np.ndarray
    cluster_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "timestamp": iso_str(self.timestamp),
            "type": self.type.value,
            "metadata": self.metadata.model_dump(exclude_none=True),
            "cluster_id": self.cluster_id,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any], embedding: np.ndarray) -> "MemoryRecord":
        return cls(
            id=d["id"],
            text=d["text"],
            timestamp=parse_iso(d["timestamp"]),
            type=MemoryType(d.get("type", MemoryType.CONVERSATION.value)),
            metadata=MemoryMetadata.model_validate(d.get("metadata") or {}),
            embedding=embedding,
            cluster_id=d.get("cluster_id"),
        )


@dataclass
class Cluster:
    id: str
    member_ids: list[str]
    centroid: np.ndarray
    keywords: list[str] = field(default_factory=list)
    created: datetime = field(default_factory=utcnow)
    updated: datetime = field(default_factory=utcnow)
    type: MemoryType = MemoryType.CONVERSATION

    @property
    def size(self) -> int:
        return len(self.member_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "member_ids": list(self.member_ids),
            "centroid": self.centroid,
            "keywords": list(self.keywords),
            "created": iso_str(self.created),
            "updated": iso_str(self.updated),
            "type": self.type.value,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Cluster":
        return cls(
            id=d["id"],
            member_ids=list(d.get("member_ids", [])),
            centroid=np.asarray(d["centroid"], dtype=np.float32),
            keywords=list(d.get("keywords", [])),
            created=parse_iso(d["created"]),
            updated=parse_iso(d["updated"]),
            type=MemoryType(d.get("type", MemoryType.CONVERSATION.value)),
        )


@dataclass
class TemporalFilter:
    type: Literal["relative", "absolute"]
    pattern: str
    target_date: datetime
    days_offset: float | None = None


@dataclass
class SearchHit:
    """One ranked result of a semantic search."""
    memory: MemoryRecord
    similarity: float
    relevance_score: float
    cluster: Cluster | None = None
    related: list[MemoryRecord] = field(default_factory=list)


@dataclass
class Fragment:
    """A candidate context fragment produced by one retrieval strategy."""
    text: str
    similarity: float
    relevance_score: float
    timestamp: datetime
    type: str
    source: str
    memory_id: str | None = None
    cluster: Cluster | None = None
    related: list[MemoryRecord] = field(default_factory=list)
    temporal_match: str | None = None
    cross_reference: bool = False
    primary_memory: str | None = None
    final_score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "memory_id": self.memory_id,
            "source": self.source,
            "type": self.type,
            "timestamp": iso_str(self.timestamp),
            "similarity": round(float(self.similarity), 6),
            "relevance_score": round(float(self.relevance_score), 6),
            "final_score": round(float(self.final_score), 6),
            "cluster_id": self.cluster.id if self.cluster else None,
            "cluster_size": self.cluster.size if self.cluster else 0,
            "temporal_match": self.temporal_match,
            "cross_reference": self.cross_reference,
            "primary_memory": self.primary_memory,
        }


@dataclass
class RetrieveOptions:
    max_results: int = 5
    include_semantic: bool = True
    include_traditional: bool = True
    include_temporal: bool = True
    include_cross_reference: bool = True


@dataclass
class QueryAnalysis:
    needs_semantic: bool
    needs_traditional: bool
    needs_temporal: bool
    needs_cross_reference: bool
    query_type: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "needs_semantic": self.needs_semantic,
            "needs_traditional": self.needs_traditional,
            "needs_temporal": self.needs_temporal,
            "needs_cross_reference": self.needs_cross_reference,
            "query_type": self.query_type,
        }


@dataclass
class RetrievalResult:
    fragments: list[Fragment] = field(default_factory=list)
    search_types: dict[str, int] = field(default_factory=dict)
    failed_strategies: list[str] = field(default_factory=list)
    intelligence: str = "multi_layer"
    query_analysis: QueryAnalysis | None = None

    @property
    def fallback(self) -> bool:
        return self.intelligence == "fallback"

    def to_dict(self) -> dict[str, Any]:
        return {
            "fragments": [f.to_dict() for f in self.fragments],
            "search_types": dict(self.search_types),
            "failed_strategies": list(self.failed_strategies),
            "intelligence": self.intelligence,
            "query_analysis": self.query_analysis.to_dict() if self.query_analysis else None,
        }
