"""Retrieval strategies and the orchestrator that fuses them."""

from recallspine.retrieval.keyword import (
    ConversationHistory,
    HistoryMessage,
    InMemoryHistory,
    KeywordSearch,
    jaccard_similarity,
)
from recallspine.retrieval.orchestrator import RetrievalOrchestrator, analyze_query
from recallspine.retrieval.semantic import SemanticSearch, keyword_matches

__all__ = [
    "ConversationHistory",
    "HistoryMessage",
    "InMemoryHistory",
    "KeywordSearch",
    "RetrievalOrchestrator",
    "SemanticSearch",
    "analyze_query",
    "jaccard_similarity",
    "keyword_matches",
]
