from __future__ import annotations

import asyncio

import pytest

from recallspine.config import RetrievalConfig
from recallspine.retrieval.keyword import (
    ConversationHistory,
    InMemoryHistory,
    KeywordSearch,
    jaccard_similarity,
)


def test_jaccard_similarity():
    assert jaccard_similarity("budget for groceries", "groceries budget") == pytest.approx(2 / 3)
    assert jaccard_similarity("", "") == 0.0
    assert jaccard_similarity("alpha", "beta") == 0.0


def test_history_is_bounded_per_profile():
    history = InMemoryHistory(max_messages=3)
    for i in range(5):
        history.append("alice", "user", f"message {i}")
    history.append("bob", "user", "hello")

    recent = asyncio.run(history.recent_messages("alice", 10))
    assert [m.text for m in recent] == ["message 2", "message 3", "message 4"]
    assert [m.text for m in asyncio.run(history.recent_messages("alice", 2))] == ["message 3", "message 4"]
    assert asyncio.run(history.recent_messages("nobody", 10)) == []
    assert history.count() == 4
    assert history.count("bob") == 1
    assert history.profiles() == ["alice", "bob"]
    assert isinstance(history, ConversationHistory)


def test_keyword_search_scores_recent_user_messages_only():
    history = InMemoryHistory()
    history.append("p1", "user", "what is my budget for groceries")
    history.append("p1", "assistant", "your budget for groceries is 400")
    history.append("p1", "user", "book a flight")
    history.append("p1", "user", "groceries budget")

    fragments = asyncio.run(KeywordSearch(history).search("budget for groceries", "p1", 5))

    assert [f.text for f in fragments] == ["groceries budget", "what is my budget for groceries"]
    assert all(f.source == "traditional" for f in fragments)
    assert fragments[0].relevance_score == fragments[0].similarity


def test_keyword_search_window_and_missing_history():
    history = InMemoryHistory()
    history.append("p1", "user", "budget for groceries")
    for i in range(3):
        history.append("p1", "user", f"filler {i}")

    narrow = KeywordSearch(history, RetrievalConfig(history_window=3))
    assert asyncio.run(narrow.search("budget for groceries", "p1", 5)) == []

    assert asyncio.run(KeywordSearch(None).search("budget", "p1", 5)) == []
