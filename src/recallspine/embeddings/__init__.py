"""Embedding providers and abstractions."""

from recallspine.embeddings.backends import (
    EmbeddingBackend,
    HashEmbedder,
    OllamaEmbedder,
    OpenAIEmbedder,
    SentenceTransformerEmbedder,
    create_embedder,
)

__all__ = [
    "EmbeddingBackend",
    "OpenAIEmbedder",
    "OllamaEmbedder",
    "HashEmbedder",
    "SentenceTransformerEmbedder",
    "create_embedder",
]
