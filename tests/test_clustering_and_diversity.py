from __future__ import annotations

import asyncio
from datetime import timedelta

import numpy as np
import pytest

from recallspine.config import ClusterConfig
from recallspine.memory.clustering import ClusterIndex, cosine_similarity, extract_keywords
from recallspine.memory.diversity import DiversityGuard
from recallspine.types import MemoryMetadata, MemoryRecord, MemoryType
from recallspine.utils import utcnow


def _axis(i: int, dims: int = 8) -> np.ndarray:
    v = np.zeros((dims,), dtype=np.float32)
    v[i] = 1.0
    return v


def _rec(rid: str, text: str, embedding: np.ndarray) -> MemoryRecord:
    return MemoryRecord(
        id=rid,
        text=text,
        timestamp=utcnow(),
        type=MemoryType.CONVERSATION,
        metadata=MemoryMetadata(),
        embedding=np.asarray(embedding, dtype=np.float32),
    )


def test_cosine_similarity_edge_cases():
    assert cosine_similarity(_axis(0), _axis(0)) == pytest.approx(1.0)
    assert cosine_similarity(_axis(0), _axis(1)) == pytest.approx(0.0)
    assert cosine_similarity(np.zeros(8), _axis(1)) == 0.0
    assert cosine_similarity(np.ones(4), np.ones(8)) == 0.0


def test_extract_keywords_filters_short_and_stop_words():
    kws = extract_keywords("The robot servo needs the servo calibration before dinner, with care!")
    assert kws[0] == "servo"
    assert "robot" in kws and "calibration" in kws
    assert "the" not in kws and "with" not in kws and "before" not in kws
    assert len(kws) <= 5


def test_assign_attaches_above_threshold_and_creates_otherwise():
    index = ClusterIndex(threshold=0.7)
    records: dict[str, MemoryRecord] = {}

    a = _rec("a", "monthly budget review", _axis(0))
    records["a"] = a
    cluster_a, created = index.assign(a, records)
    assert created and cluster_a.id == "cluster_000001"
    assert a.cluster_id == "cluster_000001"

    near = _axis(0) * 0.9 + _axis(1) * 0.3
    b = _rec("b", "budget for groceries", near)
    records["b"] = b
    cluster_b, created = index.assign(b, records)
    assert not created and cluster_b is cluster_a
    assert cluster_a.member_ids == ["a", "b"]
    expected = np.mean(np.stack([a.embedding, b.embedding]), axis=0)
    assert np.allclose(cluster_a.centroid, expected)

    c = _rec("c", "pasta recipe", _axis(2))
    records["c"] = c
    cluster_c, created = index.assign(c, records)
    assert created and cluster_c.id == "cluster_000002"
    assert len(index) == 2


def test_similarity_exactly_at_threshold_opens_new_cluster():
    index = ClusterIndex()
    records = {"a": _rec("a", "first", _axis(0))}
    index.assign(records["a"], records)
    records["b"] = _rec("b", "second", np.array([0.6, 0.8, 0, 0, 0, 0, 0, 0], dtype=np.float32))
    index.threshold = cosine_similarity(records["b"].embedding, index.get("cluster_000001").centroid)
    _, created = index.assign(records["b"], records)
    assert created


def test_ties_go_to_lowest_cluster_id():
    index = ClusterIndex(threshold=0.5)
    records = {
        "a": _rec("a", "left", _axis(0)),
        "b": _rec("b", "right", _axis(1)),
    }
    index.assign(records["a"], records)
    index.assign(records["b"], records)
    both = (_axis(0) + _axis(1)) / np.sqrt(2)
    records["c"] = _rec("c", "middle", both)
    cluster, created = index.assign(records["c"], records)
    assert not created and cluster.id == "cluster_000001"


def test_cluster_cap_forces_attach_to_best_positive_match():
    index = ClusterIndex(threshold=0.9, max_clusters=2)
    records = {
        "a": _rec("a", "one", _axis(0)),
        "b": _rec("b", "two", _axis(1)),
    }
    index.assign(records["a"], records)
    index.assign(records["b"], records)

    records["c"] = _rec("c", "three", _axis(1) * 0.5 + _axis(2))
    cluster, created = index.assign(records["c"], records)
    assert not created and cluster.id == "cluster_000002"

    # Nothing positively similar: a new cluster even at the cap.
    records["d"] = _rec("d", "four", _axis(5))
    _, created = index.assign(records["d"], records)
    assert created and len(index) == 3


def test_ids_continue_after_reload_and_remove_member_drops_empty_clusters():
    index = ClusterIndex()
    records = {"a": _rec("a", "alpha", _axis(0)), "b": _rec("b", "beta", _axis(1))}
    index.assign(records["a"], records)
    index.assign(records["b"], records)

    index.remove_member(records["a"], records)
    assert "cluster_000001" not in index
    assert records["a"].cluster_id is None

    reloaded = ClusterIndex(clusters={c.id: c for c in index.all()})
    records["c"] = _rec("c", "gamma", _axis(2))
    cluster, _ = reloaded.assign(records["c"], records)
    assert cluster.id == "cluster_000003"


def _dominated_index():
    index = ClusterIndex()
    records: dict[str, MemoryRecord] = {}
    texts = [
        "robot servo calibration",
        "robot motor torque",
        "robot sensor drift",
        "pasta recipe dinner",
    ]
    for i, text in enumerate(texts):
        rec = _rec(f"m{i}", text, _axis(i))
        records[rec.id] = rec
        index.assign(rec, records)
    base = utcnow() - timedelta(hours=1)
    for i, cluster in enumerate(index.all()):
        cluster.updated = base + timedelta(minutes=i)
    return index, records


def test_guard_ratio_counts_watch_list_clusters():
    index, _ = _dominated_index()
    guard = DiversityGuard(ClusterConfig())
    assert guard.ratio(index) == pytest.approx(0.75)
    assert guard.needs_rebalance(index)


def test_guard_merges_oldest_dominant_clusters_into_newest():
    index, records = _dominated_index()
    guard = DiversityGuard(ClusterConfig(diversity_ceiling=0.6))

    report = guard.enforce(index, records)
    assert report is not None
    assert report.survivor_id == "cluster_000003"
    assert report.merged_ids == ["cluster_000001", "cluster_000002"]
    assert report.ratio_before == pytest.approx(0.75)
    assert report.ratio_after == pytest.approx(0.5)

    assert len(index) == 2
    survivor = index.get("cluster_000003")
    assert sorted(survivor.member_ids) == ["m0", "m1", "m2"]
    assert all(records[m].cluster_id == "cluster_000003" for m in ("m0", "m1", "m2"))
    assert records["m3"].cluster_id == "cluster_000004"
    assert "servo" in survivor.keywords and "sensor" in survivor.keywords


def test_guard_leaves_balanced_index_alone():
    index, records = _dominated_index()
    guard = DiversityGuard(ClusterConfig(diversity_ceiling=0.8))
    assert guard.enforce(index, records) is None
    assert len(index) == 4


def test_store_rebalances_when_new_cluster_tips_the_ratio(make_store, make_embedder):
    vocab = {"pasta": 0, "servo": 1, "motor": 2}
    store = make_store(embedder=make_embedder(vocab), persist=False)

    async def _run():
        await store.add_memory("pasta recipe for dinner")
        await store.add_memory("robot servo calibration")
        await store.add_memory("robot motor torque check")

    asyncio.run(_run())

    report = store.last_rebalance
    assert report is not None
    assert report.survivor_id == "cluster_000003"
    assert report.merged_ids == ["cluster_000002"]
    stats = store.get_stats()
    assert stats["total_clusters"] == 2
    assert stats["dominant_cluster_ratio"] == pytest.approx(0.5)
    assert {r.cluster_id for r in store.records() if "robot" in r.text} == {"cluster_000003"}
