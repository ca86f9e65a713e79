import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import StreamingResponse

from app.chat.errors import (
    ChatError,
    CompletionError,
    InvalidStateError,
    PersistenceError,
    QuotaExceeded,
    SessionNotFound,
    SubscriptionError,
    ValidationError,
)
from app.chat.feed import ChangeFeedSubscriber
from app.chat.history import SessionHistory
from app.chat.models import MessageRole, SessionStatus
from app.chat.orchestrator import OrchestratorState, SessionOrchestrator
from app.chat.repository import SessionRepository
from app.config import Settings, load_settings
from app.log import configure_logging, get_logger, log_event
from app.metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL, SESSIONS_EVICTED_TOTAL
from app.middleware.request_id import RequestIdMiddleware
from app.providers.base import CompletionClient
from app.providers.factory import get_completion_client
from app.store.base import RecordStore
from app.store.factory import get_record_store

logger = get_logger("api")


@dataclass
class Engine:
    """Components shared by every request; one completion client paces all sessions."""

    settings: Settings
    store: RecordStore
    completion: CompletionClient
    feed: ChangeFeedSubscriber
    repository: SessionRepository
    history: SessionHistory
    orchestrators: Dict[str, SessionOrchestrator] = field(default_factory=dict)
    last_used: Dict[str, float] = field(default_factory=dict)
    registry_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def new_orchestrator(self) -> SessionOrchestrator:
        return SessionOrchestrator(
            self.repository,
            self.completion,
            self.feed,
            self.settings,
            history=self.history,
        )

    def register(self, session_id: str, orch: SessionOrchestrator) -> None:
        self.orchestrators[session_id] = orch
        self.last_used[session_id] = time.monotonic()

    def lookup(self, session_id: str) -> Optional[SessionOrchestrator]:
        orch = self.orchestrators.get(session_id)
        if orch is not None:
            self.last_used[session_id] = time.monotonic()
        return orch

    def forget(self, session_id: str) -> Optional[SessionOrchestrator]:
        self.last_used.pop(session_id, None)
        return self.orchestrators.pop(session_id, None)

    async def evict_idle(self) -> int:
        async with self.registry_lock:
            return await self._evict_idle_locked()

    async def _evict_idle_locked(self) -> int:
        """Close orchestrators idle past the TTL; caller holds registry_lock.

        An orchestrator mid-operation or with a stream attached is never idle.
        """
        now = time.monotonic()
        ttl = self.settings.session_idle_ttl
        stale = [
            sid
            for sid, orch in self.orchestrators.items()
            if not orch.in_use and now - self.last_used.get(sid, now) >= ttl
        ]
        for sid in stale:
            orch = self.forget(sid)
            if orch is None:
                continue
            await orch.aclose()
            log_event(logger, "session_evicted", sessionId=sid, idleTtl=ttl)
        if stale:
            SESSIONS_EVICTED_TOTAL.inc(len(stale))
        return len(stale)

    async def aclose(self) -> None:
        for orch in list(self.orchestrators.values()):
            await orch.aclose()
        self.orchestrators.clear()
        self.last_used.clear()
        await self.feed.aclose()
        await self.completion.aclose()
        await self.store.aclose()


def build_engine(settings: Settings) -> Engine:
    store = get_record_store(settings)
    repository = SessionRepository(store, priming_text=settings.priming_prompt)
    return Engine(
        settings=settings,
        store=store,
        completion=get_completion_client(settings),
        feed=ChangeFeedSubscriber(store),
        repository=repository,
        history=SessionHistory(repository, page_size=settings.history_page_size),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    settings = load_settings()
    configure_logging(settings.log_level)
    engine = build_engine(settings)
    app.state.engine = engine
    log_event(
        logger,
        "engine_config",
        provider=engine.completion.provider_name,
        model=engine.completion.model,
        store=engine.store.store_name,
        minRequestInterval=settings.min_request_interval,
        minResponseDelay=settings.min_response_delay,
    )
    app.state.idle_reaper_task = asyncio.create_task(_idle_reaper(engine))
    try:
        yield
    finally:
        # Shutdown
        task = app.state.idle_reaper_task
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        # Release every live feed subscription before the store goes away
        await engine.aclose()


async def _idle_reaper(engine: Engine) -> None:
    """Periodically close orchestrators of sessions nobody has touched for a while."""
    interval = max(1.0, min(engine.settings.session_idle_ttl, 60.0))
    while True:
        await asyncio.sleep(interval)
        try:
            await engine.evict_idle()
        except Exception as e:
            log_event(logger, "session_eviction_failed", logging.WARNING, error=f"{type(e).__name__}: {e}")


app = FastAPI(
    title="Wellness Chat API",
    description="Conversational session engine: sessions, paced assistant turns, live message feed, summaries.",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
    allow_credentials=False,
)
app.add_middleware(RequestIdMiddleware)


# HTTP metrics middleware
@app.middleware("http")
async def _http_metrics_middleware(request: Request, call_next):
    t0 = time.perf_counter()
    method = request.method
    route = request.scope.get("route")
    path = getattr(route, "path", None) or request.url.path
    status_code = 500
    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 500)
        route = request.scope.get("route")
        path = getattr(route, "path", None) or path
        return response
    finally:
        status_class = f"{status_code // 100}xx"
        HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status_class=status_class).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(time.perf_counter() - t0)


def _sse_data_event(text: str) -> str:
    """
    Encode text as a well-formed SSE data event.
    Splits on newlines and prefixes each with 'data: ', ending with a blank line.
    """
    lines = str(text).splitlines()
    if not lines:
        return "data: \n\n"
    return "".join(f"data: {line}\n" for line in lines) + "\n"


def _engine(request: Request) -> Engine:
    return request.app.state.engine


def _error_status(exc: ChatError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, SessionNotFound):
        return 404
    if isinstance(exc, InvalidStateError):
        return 409
    if isinstance(exc, QuotaExceeded):
        return 429
    if isinstance(exc, CompletionError):
        return 502
    if isinstance(exc, (PersistenceError, SubscriptionError)):
        return 503
    return 500


@app.exception_handler(ChatError)
async def _chat_error_handler(request: Request, exc: ChatError):
    status = _error_status(exc)
    log_event(
        logger,
        "request_failed",
        requestId=getattr(request.state, "request_id", None),
        path=request.url.path,
        error=exc.kind,
        status=status,
        message=str(exc)[:512],
    )
    headers = {}
    if isinstance(exc, QuotaExceeded) and exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse({"error": exc.kind, "message": str(exc)}, status_code=status, headers=headers)


async def _orchestrator_for(engine: Engine, session_id: str) -> SessionOrchestrator:
    """Live orchestrator of an active session, attaching one after a restart if needed."""
    async with engine.registry_lock:
        await engine._evict_idle_locked()
        orch = engine.lookup(session_id)
        if orch is not None:
            return orch
        orch = engine.new_orchestrator()
        try:
            await orch.attach(_coerce_id(session_id))
        except SubscriptionError:
            pass
        except Exception:
            await orch.aclose()
            raise
        if orch.state is OrchestratorState.ACTIVE:
            engine.register(session_id, orch)
        return orch


def _coerce_id(raw: str) -> Any:
    return int(raw) if raw.isdigit() else raw


def _require_str(body: Optional[Dict[str, Any]], key: str) -> str:
    value = (body or {}).get(key)
    if value is None or str(value).strip() == "":
        raise ValidationError(f"{key} is required")
    return str(value).strip()


@app.get("/health", tags=["meta"], description="Liveness endpoint for health checks.")
async def health():
    return {"status": "ok"}


@app.get("/metrics", tags=["meta"], include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/api/v1/sessions", tags=["sessions"], status_code=201, description="Start a session with its priming message.")
async def create_session(
    request: Request,
    body: Dict[str, Any] = Body(..., description="{ userId, title? }"),
):
    engine = _engine(request)
    owner = _require_str(body, "userId")
    title = (body or {}).get("title")
    orch = engine.new_orchestrator()
    degraded = False
    try:
        session = await orch.start_session(owner, title=str(title) if title else None)
    except SubscriptionError as e:
        # Usable without live push; clients poll GET /sessions/{id}
        session = e.session
        degraded = True
    except Exception:
        await orch.aclose()
        raise
    async with engine.registry_lock:
        engine.register(str(session.session_id), orch)
    out = session.to_json()
    out["messages"] = [m.to_json() for m in orch.messages]
    out["degraded"] = degraded
    return JSONResponse(out, status_code=201)


@app.get("/api/v1/sessions", tags=["sessions"], description="One page of a user's sessions, newest first.")
async def list_sessions(
    request: Request,
    userId: Optional[str] = Query(None, description="Owner id"),
    page: int = Query(0, ge=0),
    status: Optional[str] = Query(None, description="active | ended | archived"),
):
    if not userId:
        raise ValidationError("userId is required")
    try:
        status_filter = SessionStatus(status) if status else None
    except ValueError:
        raise ValidationError(f"unknown status {status!r}")
    engine = _engine(request)
    sessions = await engine.history.fetch_page(userId, page=page, status=status_filter)
    return {
        "page": page,
        "pageSize": engine.history.page_size,
        "sessions": [s.to_json() for s in sessions],
    }


@app.get("/api/v1/sessions/{session_id}", tags=["sessions"], description="Session with its ordered messages.")
async def get_session(request: Request, session_id: str):
    engine = _engine(request)
    orch = engine.lookup(session_id)
    if orch is not None and orch.session is not None:
        if orch.degraded:
            await orch.refresh()
        out = orch.session.to_json()
        out["messages"] = [m.to_json() for m in orch.messages]
        return out
    session = await engine.history.get_session(_coerce_id(session_id))
    return session.to_json()


@app.post("/api/v1/sessions/{session_id}/messages", tags=["sessions"], description="Send a user message and get the assistant reply.")
async def post_message(
    request: Request,
    session_id: str,
    body: Dict[str, Any] = Body(..., description="{ content }"),
):
    engine = _engine(request)
    content = str((body or {}).get("content") or "")
    orch = await _orchestrator_for(engine, session_id)
    before = {m.message_id for m in orch.messages}
    reply = await orch.send_user_message(content)
    user_msg = next(
        (m for m in orch.messages if m.role is MessageRole.USER and m.message_id not in before),
        None,
    )
    return {
        "sessionId": orch.session_id,
        "userMessage": user_msg.to_json() if user_msg else None,
        "assistantMessage": reply.to_json(),
    }


@app.post("/api/v1/sessions/{session_id}/end", tags=["sessions"], description="End a session and generate its summary.")
async def end_session(request: Request, session_id: str):
    engine = _engine(request)
    orch = await _orchestrator_for(engine, session_id)
    result = await orch.end_session()
    async with engine.registry_lock:
        engine.forget(session_id)
    await orch.aclose()
    out = result.session.to_json()
    out["summaryError"] = (
        {"error": getattr(result.error, "kind", "completion_error"), "message": str(result.error)}
        if result.error
        else None
    )
    return out


@app.post("/api/v1/sessions/{session_id}/archive", tags=["sessions"], description="Archive an ended session (idempotent).")
async def archive_session(request: Request, session_id: str):
    engine = _engine(request)
    orch = engine.lookup(session_id)
    if orch is not None:
        session = await orch.archive_session()
    else:
        session = await engine.history.archive_session(_coerce_id(session_id))
    return session.to_json()


@app.get("/api/v1/sessions/{session_id}/stream", tags=["sessions"], description="SSE stream of new messages in a session.")
async def stream_session(
    request: Request,
    session_id: str,
    replay: bool = Query(False, description="Send the existing history first"),
):
    engine = _engine(request)
    orch = await _orchestrator_for(engine, session_id)
    heartbeat = engine.settings.sse_heartbeat_seconds
    request_id = getattr(request.state, "request_id", None)
    queue = orch.add_listener()
    history = orch.messages if replay else []

    async def event_stream():
        try:
            for m in history:
                yield _sse_data_event(json.dumps(m.to_json()))
            while orch.state is OrchestratorState.ACTIVE:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=heartbeat)
                except asyncio.TimeoutError:
                    # SSE comment keeps proxies from closing an idle stream
                    yield ": keepalive\n\n"
                    continue
                if item is None:
                    break
                yield _sse_data_event(json.dumps(item.to_json()))
            yield "data: [DONE]\n\n"
        finally:
            orch.remove_listener(queue)
            log_event(logger, "session_stream_closed", sessionId=session_id, requestId=request_id)

    resp = StreamingResponse(event_stream(), media_type="text/event-stream; charset=utf-8")
    # SSE anti-buffering headers
    resp.headers["Cache-Control"] = "no-cache, no-transform"
    resp.headers["Connection"] = "keep-alive"
    # Disable nginx proxy buffering if present
    resp.headers["X-Accel-Buffering"] = "no"
    return resp


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema["tags"] = [
        {"name": "meta", "description": "Service metadata and liveness"},
        {"name": "sessions", "description": "Chat sessions, messages, summaries and the live feed (SSE)"},
    ]
    openapi_schema["servers"] = [
        {"url": "http://localhost:8000", "description": "Local dev"}
    ]
    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi  # type: ignore[assignment]
