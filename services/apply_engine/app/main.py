from __future__ import annotations

import asyncio
import json
import time
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import StreamingResponse

from .container import Services, build_services
from .deps import CORRELATION_HEADER, correlation_id, get_services
from .errors import ApplyEngineError
from .events import QueueSubscription
from .migrations import migrate
from .models import ErrorModel
from .routers.ai import router as ai_router
from .routers.files import router as files_router
from .routers.preview import router as preview_router
from .routers.txn import router as txn_router
from .session_log import CORRELATION_ID, REQ_ID, append_session, read_session_tail
from .settings import Settings, get_settings


VERSION = "0.1.0"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def sse_frame(event_type: str, payload: dict[str, Any]) -> str:
    return f"event: {event_type}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def sse_frames(
    sub: QueueSubscription,
    *,
    is_disconnected: Callable[[], Awaitable[bool]],
    limit: int | None = None,
    keepalive_s: float = 10.0,
    poll_s: float = 0.1,
) -> AsyncIterator[str]:
    """Forward queued notifier events as SSE frames; emit keepalive comments while idle."""
    yield ": connected\n\n"
    sent = 0
    last_keepalive = time.time()
    while limit is None or sent < limit:
        if await is_disconnected():
            break
        ev = sub.get(timeout=0)
        if ev is None:
            if time.time() - last_keepalive > keepalive_s:
                last_keepalive = time.time()
                yield ": keepalive\n\n"
            await asyncio.sleep(poll_s)
            continue
        yield sse_frame(ev.type, ev.model_dump(by_alias=True))
        sent += 1


def _error_body(request: Request, settings: Settings, *, code: str, message: str, details: dict[str, Any] | None, exc: BaseException | None) -> dict[str, Any]:
    d = dict(details or {})
    if settings.is_production:
        d.pop("error", None)
    body = ErrorModel(
        code=code,
        message=message,
        details=d or None,
        correlation_id=correlation_id(request),
        timestamp=_now_iso(),
        stack=None if settings.is_production or exc is None else "".join(traceback.format_exception(exc))[-4000:],
    )
    return body.model_dump(by_alias=True, exclude_none=True)


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or get_settings()
    services = services or build_services(settings)
    started_at = time.time()

    app = FastAPI(title="Apply Engine", version=VERSION)
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _request_log_middleware(request: Request, call_next):
        started = time.time()
        req_id = uuid.uuid4().hex[:12]
        cid = (request.headers.get(CORRELATION_HEADER) or "").strip() or str(uuid.uuid4())
        request.state.correlation_id = cid
        req_token = REQ_ID.set(req_id)
        cid_token = CORRELATION_ID.set(cid)
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            response.headers[CORRELATION_HEADER] = cid
            return response
        finally:
            dur_ms = int(max(0.0, (time.time() - started) * 1000.0))
            append_session(
                settings,
                {
                    "type": "http",
                    "method": request.method,
                    "path": request.url.path,
                    "query": str(request.url.query),
                    "status": status,
                    "duration_ms": dur_ms,
                },
            )
            CORRELATION_ID.reset(cid_token)
            REQ_ID.reset(req_token)

    @app.exception_handler(ApplyEngineError)
    async def _apply_error_handler(request: Request, exc: ApplyEngineError) -> JSONResponse:
        if exc.status_code >= 500:
            append_session(settings, {"type": "http.error", "code": exc.code, "message": exc.message, "path": request.url.path})
        body = _error_body(request, settings, code=exc.code, message=exc.message, details=exc.details, exc=exc)
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [{"loc": [str(p) for p in e.get("loc", ())], "msg": str(e.get("msg")), "type": str(e.get("type"))} for e in exc.errors()]
        body = _error_body(request, settings, code="VALIDATION_FAILED", message="Invalid request", details={"errors": errors}, exc=None)
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(Exception)
    async def _unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        append_session(settings, {"type": "http.unhandled", "path": request.url.path, "error": f"{type(exc).__name__}: {exc}"})
        body = _error_body(
            request,
            settings,
            code="INTERNAL_SERVER_ERROR",
            message="Internal server error",
            details={"error": str(exc)},
            exc=exc,
        )
        cid = getattr(request.state, "correlation_id", None)
        headers = {CORRELATION_HEADER: cid} if cid else None
        return JSONResponse(status_code=500, content=body, headers=headers)

    @app.on_event("startup")
    def _startup() -> None:
        if settings.db_url:
            try:
                res = migrate(settings.db_url)
                append_session(settings, {"type": "db.migrate", "applied": res.applied, "already": res.already_applied})
            except Exception as e:
                # Plans endpoints will surface the DB error; keep the rest of the API up.
                append_session(settings, {"type": "db.migrate.failed", "error": str(e)})
        services.start()
        append_session(settings, {"type": "startup", "version": VERSION, **services.fs.describe()})

    @app.on_event("shutdown")
    def _shutdown() -> None:
        services.stop()

    app.include_router(ai_router)
    app.include_router(files_router)
    app.include_router(preview_router)
    app.include_router(txn_router)

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, Any]:
        svc = get_services(request)
        return {
            "status": "healthy",
            "service": "apply-engine",
            "version": VERSION,
            "env": settings.env,
            "uptimeS": round(time.time() - started_at, 3),
            "timestamp": _now_iso(),
            "features": {
                "postgresPlans": bool(settings.db_url),
                "formatOnSave": bool(settings.format_cmd),
                "previewBuilds": bool(settings.build_cmd),
            },
            "subscribers": svc.notifier.subscriber_count(),
        }

    @app.get("/stream")
    async def stream(request: Request, limit: int | None = Query(None, ge=1)) -> StreamingResponse:
        svc = get_services(request)
        sub = svc.notifier.open_queue()

        async def gen() -> AsyncIterator[str]:
            try:
                async for frame in sse_frames(sub, is_disconnected=request.is_disconnected, limit=limit):
                    yield frame
            finally:
                sub.close()
                svc.notifier.unsubscribe(sub.id)

        return StreamingResponse(
            gen(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/api/dev/session/log")
    def dev_session_log(tail: int = 200) -> dict[str, Any]:
        tail_n = max(10, min(2000, int(tail)))
        return {"tail": tail_n, "ndjson": read_session_tail(settings, tail_n)}

    return app


app = create_app()
