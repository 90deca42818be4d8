from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from recallspine.api.routes import create_app
from recallspine.config import APIConfig


@pytest.fixture
def client(make_config, make_embedder):
    return TestClient(create_app(config=make_config(), embedder=make_embedder()))


def test_health(client):
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_add_and_search_memories(client):
    resp = client.post("/api/v1/memories", json={"text": "monthly budget review",
                                                 "metadata": {"importance": 0.4}})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["id"].startswith("mem_")
    assert body["cluster_id"] == "cluster_000001"
    assert body["metadata"]["importance"] == 0.4

    client.post("/api/v1/memories", json={"text": "pasta recipe for dinner", "type": "fact"})

    resp = client.post("/api/v1/memories/search", json={"query": "budget"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["count"] == 1
    assert data["results"][0]["memory"]["text"] == "monthly budget review"

    resp = client.post("/api/v1/memories/search", json={"query": "budget", "type_filter": "fact",
                                                        "min_similarity": 0.0})
    assert [r["memory"]["text"] for r in resp.json()["results"]] == ["pasta recipe for dinner"]


@pytest.mark.parametrize(
    "payload",
    [
        {"text": ""},
        {"text": "budget", "metadata": {"importance": 5}},
        {"text": "budget", "type": "dream"},
    ],
)
def test_malformed_memories_are_422(client, payload):
    assert client.post("/api/v1/memories", json=payload).status_code == 422


def test_provider_failure_is_502(make_config, failing_embedder):
    client = TestClient(create_app(config=make_config(), embedder=failing_embedder))
    resp = client.post("/api/v1/memories", json={"text": "monthly budget review"})
    assert resp.status_code == 502
    assert "embedding failed" in resp.json()["detail"]


def test_retrieve_uses_history_and_memories(client):
    client.post("/api/v1/memories", json={"text": "monthly budget review"})
    resp = client.post("/api/v1/history", json={"profile_id": "p1", "text": "budget for groceries"})
    assert resp.status_code == 200

    resp = client.post("/api/v1/retrieve", json={"query": "budget for groceries", "profile_id": "p1"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["intelligence"] == "multi_layer"
    assert data["search_types"]["semantic"] == 1
    assert data["search_types"]["traditional"] == 1
    sources = {f["source"] for f in data["fragments"]}
    assert sources == {"semantic", "traditional"}

    resp = client.post("/api/v1/smart-search", json={"query": "what is the budget"})
    assert resp.status_code == 200
    assert resp.json()["query_analysis"]["query_type"] == "semantic"


def test_stats(client):
    client.post("/api/v1/memories", json={"text": "monthly budget review"})
    client.post("/api/v1/history", json={"text": "hello"})
    stats = client.get("/api/v1/stats").json()
    assert stats["semantic"]["total_memories"] == 1
    assert stats["traditional"]["total_messages"] == 1


def test_bearer_token_required_when_configured(make_config, make_embedder):
    cfg = make_config(api=APIConfig(bearer_token="s3cret"))
    client = TestClient(create_app(config=cfg, embedder=make_embedder()))

    assert client.get("/api/v1/health").status_code == 200
    assert client.get("/api/v1/stats").status_code == 401
    assert client.get("/api/v1/stats", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/api/v1/stats", headers={"Authorization": "Bearer s3cret"}).status_code == 200


def test_lifespan_closes_the_store_on_shutdown(make_config, make_embedder):
    embedder = make_embedder()
    app = create_app(config=make_config(), embedder=embedder)
    with TestClient(app) as client:
        assert client.post("/api/v1/memories", json={"text": "monthly budget review"}).status_code == 200
        assert embedder.closed is False
    assert embedder.closed is True
