"""recallspine exception hierarchy."""

from __future__ import annotations


class RecallSpineError(Exception):
    """Base class for all recallspine errors."""


class ProviderError(RecallSpineError):
    """The embedding provider failed; the in-flight operation was aborted."""


class PersistenceError(RecallSpineError):
    """Reading or writing a persisted snapshot failed."""


class MalformedRecordError(RecallSpineError, ValueError):
    """A memory was rejected before embedding (empty text, bad metadata)."""
