"""recallspine: semantic memory clustering and multi-strategy retrieval."""

__version__ = "0.1.0"

from recallspine.config import Config
from recallspine.exceptions import (
    MalformedRecordError,
    PersistenceError,
    ProviderError,
    RecallSpineError,
)
from recallspine.memory.store import MemoryStore
from recallspine.retrieval.keyword import InMemoryHistory
from recallspine.retrieval.orchestrator import RetrievalOrchestrator

__all__ = [
    "__version__",
    "Config",
    "InMemoryHistory",
    "MalformedRecordError",
    "MemoryStore",
    "PersistenceError",
    "ProviderError",
    "RecallSpineError",
    "RetrievalOrchestrator",
]
