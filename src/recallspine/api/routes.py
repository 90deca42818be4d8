"""FastAPI HTTP API for recallspine."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from recallspine import __version__
from recallspine.config import Config
from recallspine.embeddings.backends import EmbeddingBackend
from recallspine.exceptions import MalformedRecordError, ProviderError
from recallspine.memory.store import MemoryStore
from recallspine.retrieval.keyword import InMemoryHistory
from recallspine.retrieval.orchestrator import RetrievalOrchestrator
from recallspine.types import RetrieveOptions


# --- Request/Response Models ---

class AddMemoryRequest(BaseModel):
    text: str
    timestamp: str | None = None
    type: str = "conversation"
    metadata: dict[str, Any] = Field(default_factory=dict)


class MemoryItem(BaseModel):
    id: str
    text: str
    timestamp: str
    type: str
    cluster_id: str | None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchRequest(BaseModel):
    query: str
    max_results: int = 10
    min_similarity: float = 0.3
    type_filter: str | None = None


class SearchHitItem(BaseModel):
    memory: MemoryItem
    similarity: float
    relevance_score: float
    related_ids: list[str] = Field(default_factory=list)


class SearchResponse(BaseModel):
    results: list[SearchHitItem]
    count: int


class RetrieveRequest(BaseModel):
    query: str
    profile_id: str = "default"
    max_results: int = 5
    include_semantic: bool = True
    include_traditional: bool = True
    include_temporal: bool = True
    include_cross_reference: bool = True


class SmartSearchRequest(BaseModel):
    query: str
    profile_id: str = "default"
    max_results: int = 5


class HistoryRequest(BaseModel):
    profile_id: str = "default"
    sender: str = "user"
    text: str
    timestamp: str | None = None


def _memory_item(record) -> MemoryItem:
    d = record.to_dict()
    return MemoryItem(
        id=d["id"], text=d["text"], timestamp=d["timestamp"], type=d["type"],
        cluster_id=d["cluster_id"], metadata=d["metadata"],
    )


# --- App factory ---

def get_orchestrator(request: Request) -> RetrievalOrchestrator:
    orch = getattr(request.app.state, "orchestrator", None)
    if orch is None:
        raise HTTPException(status_code=500, detail="Retrieval engine not initialized")
    return orch


def create_app(
    data_dir: str | None = None,
    config: Config | None = None,
    embedder: EmbeddingBackend | None = None,
) -> FastAPI:
    config = config or Config()
    if data_dir:
        config.data_dir = Path(data_dir)
    history = InMemoryHistory(max_messages=config.history.max_messages_per_profile)
    store = MemoryStore(config, embedder=embedder)
    orchestrator = RetrievalOrchestrator(store, history=history, config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await orchestrator.close()

    app = FastAPI(
        title="recallspine API",
        version=__version__,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.history = history

    token = config.api.bearer_token

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        if request.url.path in ("/api/v1/health", "/docs", "/openapi.json"):
            return await call_next(request)
        if token:
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer ") or auth[7:] != token:
                return ORJSONResponse({"detail": "Unauthorized"}, status_code=401)
        return await call_next(request)

    # --- Routes ---

    @app.get("/api/v1/health")
    async def health():
        return {"status": "ok", "service": "recallspine"}

    @app.get("/api/v1/stats")
    async def stats(orch: RetrievalOrchestrator = Depends(get_orchestrator)):
        return orch.get_stats()

    @app.post("/api/v1/memories", response_model=MemoryItem)
    async def add_memory(req: AddMemoryRequest,
                         orch: RetrievalOrchestrator = Depends(get_orchestrator)):
        try:
            record = await orch.add_memory(
                req.text, timestamp=req.timestamp, memory_type=req.type,
                metadata=req.metadata or None,
            )
        except MalformedRecordError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except ProviderError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return _memory_item(record)

    @app.post("/api/v1/memories/search", response_model=SearchResponse)
    async def search(req: SearchRequest, orch: RetrievalOrchestrator = Depends(get_orchestrator)):
        try:
            hits = await orch.semantic.search(
                req.query, max_results=req.max_results,
                min_similarity=req.min_similarity, type_filter=req.type_filter,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except ProviderError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return SearchResponse(
            results=[
                SearchHitItem(
                    memory=_memory_item(h.memory),
                    similarity=h.similarity,
                    relevance_score=h.relevance_score,
                    related_ids=[r.id for r in h.related],
                )
                for h in hits
            ],
            count=len(hits),
        )

    @app.post("/api/v1/retrieve")
    async def retrieve(req: RetrieveRequest, orch: RetrievalOrchestrator = Depends(get_orchestrator)):
        options = RetrieveOptions(
            max_results=req.max_results,
            include_semantic=req.include_semantic,
            include_traditional=req.include_traditional,
            include_temporal=req.include_temporal,
            include_cross_reference=req.include_cross_reference,
        )
        result = await orch.retrieve_context(req.query, profile_id=req.profile_id, options=options)
        return result.to_dict()

    @app.post("/api/v1/smart-search")
    async def smart_search(req: SmartSearchRequest,
                           orch: RetrievalOrchestrator = Depends(get_orchestrator)):
        result = await orch.smart_search(req.query, profile_id=req.profile_id,
                                         max_results=req.max_results)
        return result.to_dict()

    @app.post("/api/v1/history")
    async def add_history(req: HistoryRequest, request: Request):
        msg = request.app.state.history.append(
            req.profile_id, req.sender, req.text, timestamp=req.timestamp,
        )
        return {"profile_id": req.profile_id, "sender": msg.sender,
                "timestamp": msg.timestamp.isoformat()}

    return app
