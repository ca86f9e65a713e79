import contextvars
import time
import uuid
from typing import Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.log import get_logger, log_event

logger = get_logger("http")

_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)


def current_request_id() -> Optional[str]:
    """Request id of the HTTP request being served, if any.

    Outbound completion calls forward it as X-Request-Id.
    """
    return _request_id.get()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Accepts or generates X-Request-Id, exposes it to the handling task, and echoes it on the response.

    Also emits a minimal JSON log for each request with method, path, status, and latency_ms.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.perf_counter()
        req_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = req_id
        token = _request_id.set(req_id)
        try:
            response = await call_next(request)
        finally:
            _request_id.reset(token)
        response.headers["X-Request-Id"] = req_id

        log_event(
            logger,
            "http_request",
            requestId=req_id,
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            latency_ms=int((time.perf_counter() - start) * 1000),
        )
        return response
