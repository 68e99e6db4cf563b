"""Correlation ID middleware for request tracing."""

from __future__ import annotations

import time
import uuid
from contextvars import ContextVar

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from provisioner.infrastructure.observability.metrics import (
    API_REQUEST_DURATION,
    API_REQUESTS_TOTAL,
)


correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Adds a correlation ID to every request and its log lines.

    Also records request count and latency, labelled by route template
    rather than raw path.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = request.headers.get(
            CORRELATION_HEADER, str(uuid.uuid4())
        )
        correlation_id_ctx.set(correlation_id)

        start = time.perf_counter()
        with structlog.contextvars.bound_contextvars(correlation_id=correlation_id):
            response = await call_next(request)
        elapsed = time.perf_counter() - start

        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        API_REQUESTS_TOTAL.labels(
            method=request.method, endpoint=endpoint, status_code=str(response.status_code)
        ).inc()
        API_REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(elapsed)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def get_correlation_id() -> str:
    """Get the current correlation ID."""
    return correlation_id_ctx.get()
