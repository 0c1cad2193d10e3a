"""FastAPI HTTP API for StorySpine."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from storyspine.config import Config
from storyspine.embeddings import EmbeddingBackend, create_embedder
from storyspine.engine import MemoryEngine
from storyspine.exceptions import SummaryFailedError, TaskBusyError, VectorIOError
from storyspine.host import ChatMessage, HostEvent
from storyspine.storage.sqlite_store import SQLiteStore
from storyspine.types import Event


# --- Request/Response Models ---

class MessageIn(BaseModel):
    mes: str = ""
    is_user: bool = False
    name: str = ""

    def to_message(self) -> ChatMessage:
        return ChatMessage(mes=self.mes, is_user=self.is_user, name=self.name)


class TranscriptRequest(BaseModel):
    messages: list[MessageIn] = Field(default_factory=list)

    def chat(self) -> list[ChatMessage]:
        return [m.to_message() for m in self.messages]


class HostEventRequest(TranscriptRequest):
    kind: HostEvent
    floor: int


class InjectionRequest(TranscriptRequest):
    pending_user_message: str | None = None
    exclude_last_ai: bool = False


class InjectionResponse(BaseModel):
    text: str
    depth: int | None
    injected: bool


class SummaryRequest(TranscriptRequest):
    target_floor: int | None = None


class RollbackRequest(BaseModel):
    floor: int


class EventsUpdateRequest(BaseModel):
    events: list[dict[str, Any]]


class ExportRequest(BaseModel):
    path: str | None = None


class ImportRequest(BaseModel):
    path: str


# --- Engine registry ---

class EngineRegistry:
    """One engine per chat over a shared database and embedding client."""

    def __init__(self, config: Config, embedder: EmbeddingBackend | None = None) -> None:
        self.config = config
        config.ensure_dirs()
        self.sqlite = SQLiteStore(config.db_path)
        self.embedder = embedder or create_embedder(config.embedding)
        self._engines: dict[str, MemoryEngine] = {}

    def get(self, chat_id: str) -> MemoryEngine:
        engine = self._engines.get(chat_id)
        if engine is None:
            engine = MemoryEngine(self.config, chat_id, sqlite=self.sqlite, embedder=self.embedder)
            self._engines[chat_id] = engine
        return engine

    async def close(self) -> None:
        for engine in self._engines.values():
            close = getattr(engine._chat, "close", None)
            if close is not None:
                await close()
        self._engines.clear()
        await self.embedder.close()
        self.sqlite.close()


_registry: EngineRegistry | None = None


def get_registry() -> EngineRegistry:
    if _registry is None:
        raise HTTPException(status_code=500, detail="Engine registry not initialized")
    return _registry


def get_engine(chat_id: str, registry: EngineRegistry = Depends(get_registry)) -> MemoryEngine:
    return registry.get(chat_id)


def create_app(data_dir: str | None = None, config: Config | None = None,
               embedder: EmbeddingBackend | None = None) -> FastAPI:
    global _registry
    config = config or Config()
    if data_dir:
        config.data_dir = Path(data_dir)
    _registry = EngineRegistry(config, embedder=embedder)
    registry = _registry

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await registry.close()

    app = FastAPI(
        title="StorySpine Memory API",
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

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

    @app.exception_handler(TaskBusyError)
    async def task_busy(request: Request, exc: TaskBusyError):
        return ORJSONResponse({"detail": str(exc), "task": exc.task}, status_code=409)

    @app.exception_handler(VectorIOError)
    async def vector_io_error(request: Request, exc: VectorIOError):
        return ORJSONResponse({"detail": str(exc)}, status_code=400)

    @app.exception_handler(SummaryFailedError)
    async def summary_failed(request: Request, exc: SummaryFailedError):
        return ORJSONResponse({"detail": str(exc), "attempts": exc.attempts}, status_code=502)

    # --- Routes ---

    @app.get("/api/v1/health")
    async def health():
        return {"status": "ok", "service": "storyspine"}

    @app.get("/api/v1/chats/{chat_id}/status")
    async def get_status(engine: MemoryEngine = Depends(get_engine)):
        return engine.status()

    @app.post("/api/v1/chats/{chat_id}/host-event")
    async def host_event(req: HostEventRequest, engine: MemoryEngine = Depends(get_engine)):
        """Apply a host message lifecycle event (sent, received, deleted, swiped, edited, chat change)."""
        return await engine.on_message(req.kind, req.floor, req.chat())

    @app.post("/api/v1/chats/{chat_id}/injection", response_model=InjectionResponse)
    async def injection(req: InjectionRequest, engine: MemoryEngine = Depends(get_engine)):
        inj = await engine.build_injection(
            req.chat(),
            pending_user_message=req.pending_user_message,
            exclude_last_ai=req.exclude_last_ai,
        )
        if inj is None:
            return InjectionResponse(text="", depth=None, injected=False)
        return InjectionResponse(text=inj.text, depth=inj.depth, injected=True)

    @app.post("/api/v1/chats/{chat_id}/summary")
    async def summarize(req: SummaryRequest, engine: MemoryEngine = Depends(get_engine)):
        result = await engine.summarize(req.chat(), target_floor=req.target_floor)
        return result.to_dict()

    @app.get("/api/v1/chats/{chat_id}/hide-range")
    async def hide_range(engine: MemoryEngine = Depends(get_engine)):
        return {"range": engine.hide_range()}

    @app.get("/api/v1/chats/{chat_id}/relationships")
    async def relationships(engine: MemoryEngine = Depends(get_engine)):
        return {"relationships": engine.relationships()}

    @app.post("/api/v1/chats/{chat_id}/rollback")
    async def rollback(req: RollbackRequest, engine: MemoryEngine = Depends(get_engine)):
        return engine.rollback(req.floor)

    @app.put("/api/v1/chats/{chat_id}/events")
    async def update_events(req: EventsUpdateRequest, engine: MemoryEngine = Depends(get_engine)):
        try:
            events = [Event.from_dict(e) for e in req.events]
        except (KeyError, TypeError, ValueError) as e:
            raise HTTPException(status_code=422, detail=f"invalid event: {e}")
        return await engine.update_events(events)

    @app.post("/api/v1/chats/{chat_id}/atoms/extract")
    async def extract_atoms(req: TranscriptRequest, engine: MemoryEngine = Depends(get_engine)):
        return await engine.extract_atoms(req.chat())

    @app.post("/api/v1/chats/{chat_id}/vectors/generate")
    async def generate_vectors(req: TranscriptRequest, engine: MemoryEngine = Depends(get_engine)):
        return await engine.generate_vectors(req.chat())

    @app.post("/api/v1/chats/{chat_id}/vectors/cancel")
    async def cancel_vectors(engine: MemoryEngine = Depends(get_engine)):
        engine.cancel_vectors()
        return {"cancelled": True}

    @app.delete("/api/v1/chats/{chat_id}/vectors")
    async def clear_vectors(engine: MemoryEngine = Depends(get_engine)):
        if engine.guard.is_running("vector"):
            raise TaskBusyError("vector")
        engine.clear_vectors()
        return engine.status()

    @app.post("/api/v1/chats/{chat_id}/vectors/export")
    async def export_vectors(req: ExportRequest, engine: MemoryEngine = Depends(get_engine)):
        return engine.export_vectors(req.path)

    @app.post("/api/v1/chats/{chat_id}/vectors/import")
    async def import_vectors(req: ImportRequest, engine: MemoryEngine = Depends(get_engine)):
        if not Path(req.path).exists():
            raise HTTPException(status_code=404, detail=f"File not found: {req.path}")
        return engine.import_vectors(req.path).to_dict()

    return app
