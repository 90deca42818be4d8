"""Diversity guard: keeps one watched topic from dominating the clusters."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

from recallspine.config import ClusterConfig
from recallspine.memory.clustering import ClusterIndex
from recallspine.types import Cluster, MemoryRecord

logger = logging.getLogger(__name__)


@dataclass
class RebalanceReport:
    survivor_id: str
    merged_ids: list[str] = field(default_factory=list)
    ratio_before: float = 0.0
    ratio_after: float = 0.0


class DiversityGuard:
    def __init__(self, config: ClusterConfig | None = None) -> None:
        cfg = config or ClusterConfig()
        self.ceiling = float(cfg.diversity_ceiling)
        self.watch_list = frozenset(k.strip().lower() for k in cfg.watch_keywords if k.strip())

    def is_dominant(self, cluster: Cluster) -> bool:
        return any(kw.lower() in self.watch_list for kw in cluster.keywords)

    def ratio(self, index: ClusterIndex) -> float:
        clusters = index.all()
        if not clusters:
            return 0.0
        return sum(1 for c in clusters if self.is_dominant(c)) / len(clusters)

    def needs_rebalance(self, index: ClusterIndex) -> bool:
        return self.ratio(index) > self.ceiling

    def enforce(
        self,
        index: ClusterIndex,
        records: Mapping[str, MemoryRecord],
    ) -> RebalanceReport | None:
        """Merge surplus dominant clusters when the ratio breaches the ceiling."""
        ratio_before = self.ratio(index)
        if ratio_before <= self.ceiling:
            return None

        clusters = index.all()
        dominant = [c for c in clusters if self.is_dominant(c)]
        if len(dominant) < 2:
            return None

        total = len(clusters)
        others = total - len(dominant)
        keep = len(dominant)
        # Each merge removes one dominant cluster and one cluster overall.
        while keep > 1 and keep / (others + keep) > self.ceiling:
            keep -= 1

        ordered = sorted(dominant, key=lambda c: (c.updated, c.id))
        survivor = ordered[-1]
        victims = [c.id for c in ordered[: len(dominant) - keep]]
        if not victims:
            return None

        index.merge(survivor.id, victims, records)
        report = RebalanceReport(
            survivor_id=survivor.id,
            merged_ids=victims,
            ratio_before=ratio_before,
            ratio_after=self.ratio(index),
        )
        logger.warning(
            "dominant-topic ratio %.2f > %.2f; merged %d clusters into %s (now %.2f)",
            report.ratio_before, self.ceiling, len(victims), survivor.id, report.ratio_after,
        )
        return report
