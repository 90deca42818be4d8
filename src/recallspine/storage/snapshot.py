"""JSON snapshot persistence for the memory index and the cluster index."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from recallspine.exceptions import PersistenceError
from recallspine.types import Cluster, MemoryRecord
from recallspine.utils import iso_str, json_dumps, json_loads, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    records: dict[str, MemoryRecord] = field(default_factory=dict)
    temporal: dict[str, list[str]] = field(default_factory=dict)
    clusters: dict[str, Cluster] = field(default_factory=dict)


class SnapshotStore:
    """Reads and rewrites the two persisted documents wholesale.

    ``embeddings.json``: ``{embeddings, memoryIndex, temporalIndex, lastUpdated}``
    ``clusters.json``:   ``{clusters, lastUpdated}``
    """

    def __init__(self, embeddings_path: Path | str, clusters_path: Path | str) -> None:
        self.embeddings_path = Path(embeddings_path)
        self.clusters_path = Path(clusters_path)

    # --- Load ---

    def load(self) -> Snapshot:
        snap = Snapshot()
        mem_doc = self._read(self.embeddings_path)
        if mem_doc:
            vectors = self._section(mem_doc, "embeddings")
            for mid, raw in self._section(mem_doc, "memoryIndex").items():
                vec = vectors.get(mid)
                if vec is None:
                    logger.warning("memory %s has no stored embedding; skipping", mid)
                    continue
                try:
                    snap.records[mid] = MemoryRecord.from_dict(raw, np.asarray(vec, dtype=np.float32))
                except (KeyError, TypeError, ValueError):
                    logger.exception("skipping unreadable memory %s in %s", mid, self.embeddings_path)
            snap.temporal = {
                k: [mid for mid in ids if mid in snap.records]
                for k, ids in self._section(mem_doc, "temporalIndex").items()
                if isinstance(ids, list)
            }
        cl_doc = self._read(self.clusters_path)
        if cl_doc:
            for cid, raw in self._section(cl_doc, "clusters").items():
                try:
                    snap.clusters[cid] = Cluster.from_dict(raw)
                except (KeyError, TypeError, ValueError):
                    logger.exception("skipping unreadable cluster %s in %s", cid, self.clusters_path)
        return snap

    @staticmethod
    def _section(doc: dict[str, Any], key: str) -> dict[str, Any]:
        value = doc.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            logger.warning("snapshot section %r is not an object; ignoring", key)
            return {}
        return value

    def _read(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            logger.info("no snapshot at %s, starting fresh", path)
            return None
        try:
            data = json_loads(path.read_bytes())
        except (OSError, ValueError):
            quarantine = path.with_name(f"{path.name}.corrupt-{int(utcnow().timestamp())}")
            logger.exception("unreadable snapshot %s; moving it to %s", path, quarantine)
            try:
                os.replace(path, quarantine)
            except OSError:
                logger.exception("could not quarantine %s", path)
            return None
        if not isinstance(data, dict):
            logger.warning("snapshot %s is not a JSON object; ignoring", path)
            return None
        return data

    # --- Save ---

    def save_memories(self, records: dict[str, MemoryRecord], temporal: dict[str, list[str]]) -> None:
        doc = {
            "embeddings": {mid: r.embedding for mid, r in records.items()},
            "memoryIndex": {mid: r.to_dict() for mid, r in records.items()},
            "temporalIndex": temporal,
            "lastUpdated": iso_str(utcnow()),
        }
        self._write(self.embeddings_path, doc)

    def save_clusters(self, clusters: dict[str, dict]) -> None:
        self._write(self.clusters_path, {"clusters": clusters, "lastUpdated": iso_str(utcnow())})

    def _write(self, path: Path, doc: dict[str, Any]) -> None:
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(json_dumps(doc, indent=True))
            os.replace(tmp, path)
        except (OSError, TypeError) as exc:
            raise PersistenceError(f"failed to write {path}: {exc}") from exc
