"""Request context, trace propagation and access logging middleware."""

import logging
import re
import time
import uuid
from typing import Callable, Optional

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match
from starlette.types import ASGIApp

from .exceptions import InternalServerError
from .observability import REQUEST_COUNT, REQUEST_DURATION

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"

# Requests on these prefixes come from the payment provider, not from clients
PROVIDER_PATH_PREFIXES = ("/v1/webhooks/",)

TRACEPARENT = re.compile(r"^00-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")


def parse_traceparent(header: Optional[str]) -> Optional[tuple[str, str, str]]:
    """
    Parse a W3C traceparent header into ``(trace_id, parent_id, flags)``.

    https://www.w3.org/TR/trace-context/
    """
    if not header:
        return None
    match = TRACEPARENT.match(header.strip().lower())
    if not match:
        return None
    trace_id, parent_id, flags = match.groups()
    if trace_id == "0" * 32 or parent_id == "0" * 16:
        return None
    return trace_id, parent_id, flags


def route_template(request: Request) -> str:
    """Return the matched route path, keeping metric labels bounded."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
    return "unmatched"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Establish the identifiers every log line of a request carries.

    The request id comes from ``X-Request-ID`` or is generated; the trace
    context continues an incoming ``traceparent`` or starts a new trace.
    Both are bound into the structlog context together with the caller's
    Idempotency-Key, and echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        parsed = parse_traceparent(request.headers.get("traceparent"))
        trace_id, parent_span_id, flags = parsed if parsed else (uuid.uuid4().hex, None, "01")
        span_id = uuid.uuid4().hex[:16]
        tracestate = request.headers.get("tracestate")

        request.state.request_id = request_id
        request.state.trace_context = {
            "trace_id": trace_id,
            "span_id": span_id,
            "parent_span_id": parent_span_id,
            "flags": flags,
        }

        context = {"request_id": request_id, "trace_id": trace_id}
        idempotency_key = request.headers.get(IDEMPOTENCY_KEY_HEADER)
        if idempotency_key:
            context["idempotency_key"] = idempotency_key
        structlog.contextvars.bind_contextvars(**context)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars(*context)

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["traceparent"] = f"00-{trace_id}-{span_id}-{flags}"
        if tracestate:
            response.headers["tracestate"] = tracestate
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """
    Log each request once and record request metrics.

    Bodies are never logged: webhook payloads are signed provider data and
    booking requests carry renter identifiers. Errors escaping the routers
    are answered with a problem details body like every other failure.
    """

    def __init__(self, app: ASGIApp, skip_paths: Optional[tuple[str, ...]] = None):
        super().__init__(app)
        self.skip_paths = skip_paths or ("/health", "/ready", "/metrics", "/favicon.ico")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.skip_paths:
            return await call_next(request)

        endpoint = route_template(request)
        log_data = {
            "request_id": getattr(request.state, "request_id", None),
            "method": request.method,
            "endpoint": endpoint,
            "caller": "provider" if path.startswith(PROVIDER_PATH_PREFIXES) else "client",
        }

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error while serving request", extra=log_data)
            problem = InternalServerError(error_id=log_data["request_id"], instance=str(request.url))
            response = JSONResponse(
                status_code=500,
                content=problem.problem_details,
                media_type="application/problem+json",
            )
        duration = time.perf_counter() - start_time

        status_code = response.status_code
        REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status_code=str(status_code)).inc()
        REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(duration)

        log_data["status_code"] = status_code
        log_data["duration_ms"] = round(duration * 1000, 2)
        if status_code >= 500:
            logger.error("Request failed", extra=log_data)
        elif status_code >= 400:
            logger.warning("Request rejected", extra=log_data)
        else:
            logger.info("Request served", extra=log_data)
        return response


def setup_middleware(app, enable_access_log: bool = True) -> None:
    """Install the request middleware; the last one added runs first."""
    if enable_access_log:
        app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestContextMiddleware)
