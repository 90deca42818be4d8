from __future__ import annotations

import asyncio
import math
from datetime import timedelta

import pytest

from recallspine.config import RetrievalConfig
from recallspine.exceptions import ProviderError
from recallspine.memory.temporal import parse_temporal_reference
from recallspine.retrieval.semantic import SemanticSearch, keyword_matches
from recallspine.utils import utcnow


def test_keyword_matches_counts_distinct_query_tokens():
    assert keyword_matches("Monthly budget review, budget again", "budget budget review plan") == 2
    assert keyword_matches("nothing shared", "budget") == 0


def test_relevance_score_components(make_store):
    store = make_store(persist=False)
    now = utcnow()
    rec = asyncio.run(store.add_memory("monthly budget review", timestamp=now,
                                       metadata={"importance": 0.5}))
    search = SemanticSearch(store, RetrievalConfig())

    # 0.5 similarity + 0.2 recency + 0.05 importance + 0.05 keyword
    assert search.relevance_score(rec, "budget", 0.5, now=now) == pytest.approx(0.8)

    aged = now + timedelta(days=30)
    expected = 0.5 + 0.2 * math.exp(-1) + 0.05 + 0.05
    assert search.relevance_score(rec, "budget", 0.5, now=aged) == pytest.approx(expected)

    assert search.relevance_score(rec, "budget", 0.99, now=now) == 1.0


def test_relevance_score_cluster_boost_grows_with_log_size(make_store):
    store = make_store(persist=False)
    now = utcnow()

    async def _run():
        recs = []
        for text in ["budget alpha", "budget beta", "budget gamma", "budget delta"]:
            recs.append(await store.add_memory(text, timestamp=now))
        return recs

    recs = asyncio.run(_run())
    assert store.cluster_of(recs[0]).size == 4
    search = SemanticSearch(store)
    # log2(4) * 0.025 = 0.05, no keyword overlap with "zzz"
    assert search.relevance_score(recs[0], "zzz", 0.3, now=now) == pytest.approx(0.3 + 0.2 + 0.05)


def test_search_filters_by_similarity_and_type(make_store):
    store = make_store(persist=False)
    now = utcnow()

    async def _run():
        await store.add_memory("monthly budget review", timestamp=now - timedelta(days=3))
        await store.add_memory("savings target for spending", timestamp=now - timedelta(days=1))
        await store.add_memory("budget is a fact", timestamp=now, memory_type="fact")
        await store.add_memory("pasta recipe for dinner", timestamp=now)
        search = SemanticSearch(store)
        everything = await search.search("budget", now=now)
        facts = await search.search("budget", type_filter="fact", now=now)
        top1 = await search.search("budget", max_results=1, now=now)
        return everything, facts, top1

    everything, facts, top1 = asyncio.run(_run())

    assert {h.memory.text for h in everything} == {
        "monthly budget review", "savings target for spending", "budget is a fact",
    }
    assert all(h.similarity >= 0.3 for h in everything)
    assert [h.memory.text for h in facts] == ["budget is a fact"]
    assert len(top1) == 1

    scores = [(h.relevance_score, h.similarity) for h in everything]
    assert scores == sorted(scores, reverse=True)

    first = everything[0]
    assert first.cluster is not None and first.cluster.size == 3
    assert len(first.related) == 2
    assert first.memory.id not in {r.id for r in first.related}


def test_search_with_temporal_filter_and_shared_vector(make_store, make_embedder):
    embedder = make_embedder()
    store = make_store(embedder=embedder, persist=False)
    now = utcnow()

    async def _run():
        await store.add_memory("budget meeting notes", timestamp=now - timedelta(days=1))
        await store.add_memory("budget planning", timestamp=now - timedelta(days=10))
        vector = await store.embed("budget")
        calls_before = embedder.calls
        hits = await SemanticSearch(store).search(
            "budget yesterday",
            temporal_filter=parse_temporal_reference("yesterday", now=now),
            query_vector=vector,
            now=now,
        )
        return hits, embedder.calls - calls_before

    hits, extra_calls = asyncio.run(_run())
    assert [h.memory.text for h in hits] == ["budget meeting notes"]
    assert extra_calls == 0


def test_search_propagates_provider_errors(make_store, failing_embedder):
    store = make_store(embedder=failing_embedder, persist=False)
    with pytest.raises(ProviderError):
        asyncio.run(SemanticSearch(store).search("budget"))


def test_search_on_empty_store_returns_nothing(make_store):
    store = make_store(persist=False)
    assert asyncio.run(SemanticSearch(store).search("budget")) == []


def test_budget_and_hiking_scenario_survives_reload(make_store):
    store = make_store()

    async def _run(s):
        return await SemanticSearch(s).search("budget", min_similarity=0.0)

    async def _seed():
        a = await store.add_memory("Discussed quarterly budget planning")
        b = await store.add_memory("Reviewed the budget spreadsheet again")
        c = await store.add_memory("Talked about hiking trails this weekend")
        return a, b, c

    a, b, c = asyncio.run(_seed())
    assert a.cluster_id == b.cluster_id != c.cluster_id

    hits = asyncio.run(_run(store))
    assert [h.memory.id for h in hits][-1] == c.id
    assert {h.memory.id for h in hits[:2]} == {a.id, b.id}

    reloaded_hits = asyncio.run(_run(make_store()))
    assert [(h.memory.id, round(h.similarity, 6)) for h in reloaded_hits] == [
        (h.memory.id, round(h.similarity, 6)) for h in hits
    ]
