"""HTTP middleware: request ids, access logging and queue error responses."""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from offline_queue.errors import ErrorResponse, QueueError
from offline_queue.logging_config import get_trace_id, trace_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

# Polled constantly by orchestrators; logged at DEBUG only.
QUIET_PATHS = frozenset({"/healthz", "/ready", "/live"})


def resolve_request_id(header_value: str | None) -> str:
    """Reuse the caller's id when it is sane, otherwise mint one."""
    if header_value and _VALID_REQUEST_ID.match(header_value):
        return header_value
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        started = time.perf_counter()
        with trace_context(request_id):
            response = await call_next(request)
            elapsed_ms = (time.perf_counter() - started) * 1000
            level = logging.DEBUG if request.url.path in QUIET_PATHS else logging.INFO
            logger.log(
                level,
                f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)",
                extra={"extra_fields": {"status_code": response.status_code, "duration_ms": round(elapsed_ms, 1)}},
            )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    trace_id = getattr(request.state, "request_id", None) or get_trace_id()
    if exc.status_code >= 500:
        logger.error(f"{exc.code.value} on {request.url.path}: {exc.message}")
    body = ErrorResponse(code=exc.code.value, message=exc.message, details=exc.details, trace_id=trace_id)
    headers = {REQUEST_ID_HEADER: trace_id} if trace_id else None
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True), headers=headers)


def setup_middleware(app: FastAPI) -> None:
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(QueueError, queue_error_handler)
