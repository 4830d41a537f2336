"""Request tracking for the operator API.

Every request gets an ``X-Request-ID`` (taken from the caller or generated)
and an operator name from ``X-Operator``. Both are kept in a context var so
controller log lines can be traced back to the request and the person who
issued it. Mutating calls are logged at INFO; the read-only endpoints that
dashboards poll are logged at DEBUG.
"""

from __future__ import annotations

import time
import uuid
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Dict, Any, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from bluegreen import metrics

_request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})

logger = logging.getLogger(__name__)

READ_ONLY_METHODS = {"GET", "HEAD", "OPTIONS"}


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach request id and operator to the context, the logs and the response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        operator = request.headers.get("X-Operator") or "anonymous"
        mutating = request.method not in READ_ONLY_METHODS
        request.state.request_id = request_id

        _request_context.set({
            "request_id": request_id,
            "operator": operator,
            "path": request.url.path,
            "method": request.method,
            "timestamp": time.time(),
        })
        fields = {"request_id": request_id, "operator": operator, "path": request.url.path}

        level = logging.INFO if mutating else logging.DEBUG
        logger.log(level, f"[{request_id}] {operator} {request.method} {request.url.path}", extra=fields)

        start_time = time.time()
        response = await call_next(request)
        latency_ms = (time.time() - start_time) * 1000

        response.headers["X-Request-ID"] = request_id
        metrics.API_REQUESTS.labels(
            method=request.method, status=str(response.status_code)
        ).inc()

        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        logger.log(
            level,
            f"[{request_id}] {operator} {request.method} {request.url.path} "
            f"-> {response.status_code} {latency_ms:.2f}ms",
            extra={**fields, "status_code": response.status_code, "latency_ms": latency_ms},
        )

        return response


def get_request_context() -> Dict[str, Any]:
    """The current request's id, operator, path and method."""
    return _request_context.get()


def get_request_id() -> Optional[str]:
    ctx = _request_context.get()
    return ctx.get("request_id") if ctx else None


def get_operator() -> str:
    return _request_context.get().get("operator", "anonymous")


@contextmanager
def log_context(**kwargs):
    """Temporarily add fields (e.g. the operation name) to the request context."""
    ctx = _request_context.get().copy()
    ctx.update(kwargs)
    token = _request_context.set(ctx)
    try:
        yield
    finally:
        _request_context.reset(token)
