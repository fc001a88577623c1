"""
Tracing ids and the editing session key.

The segment editor sends one X-Correlation-ID per editing session and may
send an X-Request-ID per call. Both are kept in context variables so log
records and upstream calls carry them; missing ids are generated for
tracing only.

Only a client-sent correlation id names an editing session. It is stored on
``request.state.editing_session`` and keys the per-session field catalog;
a generated one never does, so anonymous calls do not fill the cache.
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Callable, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
REQUEST_HEADER = "X-Request-ID"

correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")


def generate_id() -> str:
    return uuid.uuid4().hex[:12]


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds tracing ids for the request and echoes them on the response."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        editing_session = request.headers.get(CORRELATION_HEADER, "").strip() or None
        correlation_id = editing_session or generate_id()
        request_id = request.headers.get(REQUEST_HEADER, "").strip() or generate_id()

        # Left set after the call so the outermost error handler can still read them
        correlation_id_ctx.set(correlation_id)
        request_id_ctx.set(request_id)
        request.state.editing_session = editing_session

        response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers[REQUEST_HEADER] = request_id
        return response


def editing_session_key(request: Request) -> Optional[str]:
    """Client-sent session id for this request, or None for anonymous calls."""
    return getattr(request.state, "editing_session", None)


def tracing_headers() -> Dict[str, str]:
    """Current tracing ids as outbound headers, for calls made on the request's behalf."""
    headers = {}
    if correlation_id_ctx.get():
        headers[CORRELATION_HEADER] = correlation_id_ctx.get()
    if request_id_ctx.get():
        headers[REQUEST_HEADER] = request_id_ctx.get()
    return headers


def get_correlation_id() -> str:
    return correlation_id_ctx.get() or "unknown"


def get_request_id() -> str:
    return request_id_ctx.get() or "unknown"


class CorrelationLogFilter(logging.Filter):
    """
    Adds ``correlation_id`` and ``request_id`` to every record so the format
    string can reference them outside a request too.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        record.request_id = get_request_id()
        return True
