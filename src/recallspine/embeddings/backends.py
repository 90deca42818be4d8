"""Embedding providers behind one async protocol."""

from __future__ import annotations

import asyncio
import hashlib
import re
from typing import Any, Protocol, runtime_checkable

import httpx
import numpy as np

from recallspine.config import EmbeddingConfig


@runtime_checkable
class EmbeddingBackend(Protocol):
    dims: int

    async def embed(self, texts: list[str]) -> np.ndarray: ...
    async def embed_single(self, text: str) -> np.ndarray: ...
    async def close(self) -> None: ...


class _HTTPEmbedder:
    """Lazily opened ``httpx.AsyncClient`` shared by the remote providers."""

    def __init__(self, base_url: str, dims: int, timeout: float,
                 headers: dict[str, str] | None = None) -> None:
        self.base_url = base_url
        self.dims = dims
        self.timeout = timeout
        self._headers = headers or {}
        self._client: httpx.AsyncClient | None = None

    async def _client_for_request(self) -> httpx.AsyncClient:
        client = self._client
        if client is None or client.is_closed:
            client = httpx.AsyncClient(base_url=self.base_url, headers=self._headers,
                                       timeout=self.timeout)
            self._client = client
        return client

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._client_for_request()
        resp = await client.post(path, json=payload)
        resp.raise_for_status()
        return resp.json()

    def _as_matrix(self, rows: list[list[float]], expected: int) -> np.ndarray:
        if len(rows) != expected:
            raise RuntimeError(f"expected {expected} embeddings, got {len(rows)}")
        return np.asarray(rows, dtype=np.float32).reshape(expected, -1)

    async def embed(self, texts: list[str]) -> np.ndarray:
        raise NotImplementedError

    async def embed_single(self, text: str) -> np.ndarray:
        matrix = await self.embed([text])
        return matrix[0]

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None and not client.is_closed:
            await client.aclose()


class OpenAIEmbedder(_HTTPEmbedder):
    """Any OpenAI-compatible ``POST /embeddings`` endpoint."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "text-embedding-3-small",
        dims: int = 1536,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        super().__init__(base_url=base_url, dims=dims, timeout=timeout, headers=headers)
        self.api_key = api_key
        self.model = model

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, self.dims), dtype=np.float32)
        if not self.api_key:
            raise RuntimeError("provider 'openai' needs an API key (OPENAI_API_KEY)")
        payload: dict[str, Any] = {"model": self.model, "input": texts}
        # Only the v3 models accept a requested output width.
        if self.model.startswith("text-embedding-3"):
            payload["dimensions"] = self.dims
        body = await self._post("/embeddings", payload)
        data = sorted(body.get("data", []), key=lambda row: row.get("index", 0))
        return self._as_matrix([row["embedding"] for row in data], len(texts))


class OllamaEmbedder(_HTTPEmbedder):
    """Local Ollama server, batched through ``POST /api/embed``."""

    def __init__(
        self,
        model: str = "nomic-embed-text",
        dims: int = 768,
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 30.0,
    ) -> None:
        super().__init__(base_url=base_url, dims=dims, timeout=timeout)
        self.model = model

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, self.dims), dtype=np.float32)
        body = await self._post("/api/embed", {"model": self.model, "input": texts})
        rows = body.get("embeddings") or []
        if any(not row for row in rows):
            raise RuntimeError(f"ollama model {self.model} returned an empty embedding")
        return self._as_matrix(rows, len(texts))


class HashEmbedder:
    """Offline embedder: a hashed bag of words, word pairs and character trigrams.

    Needs no network or model download, and the same text always maps to the
    same unit vector. Texts sharing words, or word stems through the
    trigrams, get a positive cosine similarity.
    """

    _WORD_RE = re.compile(r"[a-z0-9']+")
    _WEIGHTS = {"word": 3.0, "pair": 1.5, "tri": 0.5}

    def __init__(self, dims: int = 384) -> None:
        if dims < 32:
            raise ValueError(f"HashEmbedder needs at least 32 dims, got {dims}")
        self.dims = int(dims)

    def _features(self, text: str) -> list[tuple[str, str]]:
        words = self._WORD_RE.findall((text or "").lower())
        feats = [("word", w) for w in words]
        feats.extend(("pair", f"{a} {b}") for a, b in zip(words, words[1:]))
        for w in words:
            padded = f"<{w}>"
            feats.extend(("tri", padded[i:i + 3]) for i in range(len(padded) - 2))
        return feats

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dims, dtype=np.float32)
        for kind, feat in self._features(text):
            digest = hashlib.blake2b(f"{kind}|{feat}".encode("utf-8"), digest_size=8).digest()
            slot, negative = divmod(int.from_bytes(digest, "big"), 2)
            weight = self._WEIGHTS[kind]
            vec[slot % self.dims] += -weight if negative else weight
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm > 0.0 else vec

    async def embed(self, texts: list[str]) -> np.ndarray:
        out = np.zeros((len(texts), self.dims), dtype=np.float32)
        for row, text in enumerate(texts):
            out[row] = self._vector(text)
        return out

    async def embed_single(self, text: str) -> np.ndarray:
        return self._vector(text)

    async def close(self) -> None:
        return None


class SentenceTransformerEmbedder:
    """Runs a sentence-transformers model in a worker thread.

    The model loads on first use. Its native width must equal ``dims``.
    """

    def __init__(self, model: str = "all-MiniLM-L6-v2", dims: int = 384) -> None:
        self.model = model
        self.dims = dims
        self._st = None

    def _load(self):
        if self._st is None:
            try:
                import sentence_transformers
            except ImportError as exc:
                raise RuntimeError(
                    "provider 'sbert' needs sentence-transformers: "
                    "pip install 'recallspine[semantic]'"
                ) from exc
            st = sentence_transformers.SentenceTransformer(self.model)
            width = st.get_sentence_embedding_dimension()
            if width and width != self.dims:
                raise RuntimeError(f"{self.model} produces {width}-dim vectors, config expects {self.dims}")
            self._st = st
        return self._st

    def _encode(self, texts: list[str]) -> np.ndarray:
        vectors = self._load().encode(texts, normalize_embeddings=True, show_progress_bar=False)
        return np.atleast_2d(np.asarray(vectors, dtype=np.float32))

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, self.dims), dtype=np.float32)
        return await asyncio.to_thread(self._encode, texts)

    async def embed_single(self, text: str) -> np.ndarray:
        matrix = await self.embed([text])
        return matrix[0]

    async def close(self) -> None:
        self._st = None


_SBERT_DEFAULT = "all-MiniLM-L6-v2"
_OLLAMA_DEFAULT = "nomic-embed-text"


def create_embedder(config: EmbeddingConfig | None = None) -> EmbeddingBackend:
    """Build the provider named by ``config.provider``."""
    cfg = config or EmbeddingConfig()
    provider = (cfg.provider or "hash").strip().lower()
    # OpenAI model names are the config default; other providers need their own.
    foreign_model = not cfg.model or cfg.model.startswith("text-embedding")

    if provider == "hash":
        return HashEmbedder(dims=cfg.dims)
    if provider == "openai":
        return OpenAIEmbedder(api_key=cfg.api_key, model=cfg.model, dims=cfg.dims,
                              base_url=cfg.base_url, timeout=cfg.timeout)
    if provider == "ollama":
        return OllamaEmbedder(model=_OLLAMA_DEFAULT if foreign_model else cfg.model,
                              dims=cfg.dims, timeout=cfg.timeout)
    if provider in ("sbert", "sentence-transformers"):
        return SentenceTransformerEmbedder(model=_SBERT_DEFAULT if foreign_model else cfg.model,
                                           dims=cfg.dims)
    raise ValueError(f"unknown embedding provider {cfg.provider!r}")
