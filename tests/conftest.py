from __future__ import annotations

import re

import numpy as np
import pytest

from recallspine.config import Config
from recallspine.memory.store import MemoryStore

# Word -> axis. Texts on the same topic land almost on top of each other,
# texts on different topics are nearly orthogonal.
DEFAULT_VOCAB = {
    "budget": 0, "money": 0, "spending": 0, "savings": 0, "expenses": 0,
    "quarterly": 0, "spreadsheet": 0,
    "robot": 1, "servo": 1, "motor": 1,
    "pasta": 2, "recipe": 2, "dinner": 2, "cooking": 2,
    "flight": 3, "trip": 3, "travel": 3, "hotel": 3, "hiking": 4, "mountains": 4, "trails": 4,
}


class TopicEmbedder:
    def __init__(self, vocab: dict[str, int] | None = None, dims: int = 8) -> None:
        self.vocab = DEFAULT_VOCAB if vocab is None else vocab
        self.dims = dims
        self.calls = 0
        self.closed = False

    def _encode(self, text: str) -> np.ndarray:
        vec = np.zeros((self.dims,), dtype=np.float32)
        for token in re.findall(r"[a-z]+", text.lower()):
            axis = self.vocab.get(token)
            if axis is not None:
                vec[axis] += 1.0
        vec[self.dims - 1] += 0.1
        return vec / np.linalg.norm(vec)

    async def embed(self, texts: list[str]) -> np.ndarray:
        self.calls += len(texts)
        return np.stack([self._encode(t) for t in texts])

    async def embed_single(self, text: str) -> np.ndarray:
        self.calls += 1
        return self._encode(text)

    async def close(self) -> None:
        self.closed = True


class FailingEmbedder:
    dims = 8

    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, texts: list[str]) -> np.ndarray:
        self.calls += 1
        raise RuntimeError("provider unavailable")

    async def embed_single(self, text: str) -> np.ndarray:
        self.calls += 1
        raise RuntimeError("provider unavailable")

    async def close(self) -> None:
        return None


@pytest.fixture
def make_embedder():
    return TopicEmbedder


@pytest.fixture
def failing_embedder() -> FailingEmbedder:
    return FailingEmbedder()


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides) -> Config:
        return Config(data_dir=tmp_path / "data", **overrides)
    return _make


@pytest.fixture
def make_store(make_config):
    def _make(embedder=None, persist: bool = True, **overrides) -> MemoryStore:
        return MemoryStore(make_config(**overrides), embedder=embedder or TopicEmbedder(), persist=persist)
    return _make
