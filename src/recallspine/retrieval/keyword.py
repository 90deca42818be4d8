"""Keyword-overlap search against recent conversation history."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

from recallspine.config import RetrievalConfig
from recallspine.types import Fragment, MemoryType
from recallspine.utils import to_datetime, tokenize


@dataclass
class HistoryMessage:
    sender: str
    text: str
    timestamp: datetime = field(default_factory=lambda: to_datetime(None))


@runtime_checkable
class ConversationHistory(Protocol):
    async def recent_messages(self, profile_id: str, limit: int) -> list[HistoryMessage]: ...


class InMemoryHistory:
    """Bounded per-profile message log (oldest messages fall off)."""

    def __init__(self, max_messages: int = 50) -> None:
        self.max_messages = max_messages
        self._messages: dict[str, deque[HistoryMessage]] = {}

    def append(
        self,
        profile_id: str,
        sender: str,
        text: str,
        timestamp: datetime | str | float | None = None,
    ) -> HistoryMessage:
        msg = HistoryMessage(sender=sender, text=text, timestamp=to_datetime(timestamp))
        log = self._messages.setdefault(profile_id, deque(maxlen=self.max_messages))
        log.append(msg)
        return msg

    async def recent_messages(self, profile_id: str, limit: int) -> list[HistoryMessage]:
        log = self._messages.get(profile_id)
        if not log:
            return []
        return list(log)[-limit:] if limit > 0 else []

    def count(self, profile_id: str | None = None) -> int:
        if profile_id is not None:
            return len(self._messages.get(profile_id, ()))
        return sum(len(v) for v in self._messages.values())

    def profiles(self) -> list[str]:
        return sorted(self._messages)


def jaccard_similarity(text1: str, text2: str) -> float:
    words1 = set(tokenize(text1))
    words2 = set(tokenize(text2))
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


class KeywordSearch:
    """Scores the profile's recent user messages by token-set Jaccard overlap."""

    def __init__(self, history: ConversationHistory | None,
                 config: RetrievalConfig | None = None) -> None:
        self.history = history
        self.config = config or RetrievalConfig()

    async def search(self, query: str, profile_id: str, max_results: int) -> list[Fragment]:
        if self.history is None:
            return []
        messages = await self.history.recent_messages(profile_id, self.config.history_window)
        fragments: list[Fragment] = []
        for msg in messages:
            if msg.sender != "user":
                continue
            similarity = jaccard_similarity(msg.text, query)
            if similarity > self.config.keyword_min_jaccard:
                fragments.append(Fragment(
                    text=msg.text,
                    similarity=similarity,
                    relevance_score=similarity,
                    timestamp=msg.timestamp,
                    type=MemoryType.CONVERSATION.value,
                    source="traditional",
                ))
        fragments.sort(key=lambda f: f.similarity, reverse=True)
        return fragments[:max_results]
