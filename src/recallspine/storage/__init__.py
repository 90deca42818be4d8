"""Persistence backends."""

from recallspine.storage.snapshot import Snapshot, SnapshotStore

__all__ = ["Snapshot", "SnapshotStore"]
