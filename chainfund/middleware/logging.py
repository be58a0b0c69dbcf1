"""
Request logging.

Binds a request id, the trace id and the caller into the structlog context,
so every log line written while handling a request (webhook reconciliation,
payout dispatch) carries them. Health and metrics endpoints are not logged.
"""
import time
import uuid

import structlog
from fastapi import Request
from opentelemetry import trace

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PATHS = {"/health", "/health/ready", "/metrics"}


def _trace_id() -> str:
    span = trace.get_current_span()
    if span and span.get_span_context().is_valid:
        return format(span.get_span_context().trace_id, '032x')
    return ""


def _request_context(request: Request) -> dict:
    context = {
        "request_id": request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex,
        "trace_id": _trace_id(),
    }
    user_id = request.headers.get("x-user-id")
    if user_id:
        context["user_id"] = user_id
    path = request.url.path
    if path.startswith("/webhooks/"):
        context["webhook_provider"] = path.rsplit("/", 1)[-1]
    elif path.startswith("/cron/"):
        context["cron_job"] = path.rsplit("/", 1)[-1]
    return context


async def logging_middleware(request: Request, call_next):
    if request.url.path in QUIET_PATHS:
        return await call_next(request)

    start_time = time.time()
    context = _request_context(request)
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**context)

    logger.info(
        "Request started",
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else ""
    )

    try:
        response = await call_next(request)
    except Exception:
        logger.exception(
            "Request crashed",
            method=request.method,
            path=request.url.path,
            latency_seconds=round(time.time() - start_time, 3)
        )
        raise

    response.headers[REQUEST_ID_HEADER] = context["request_id"]
    log = logger.warning if response.status_code >= 500 else logger.info
    log(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        latency_seconds=round(time.time() - start_time, 3)
    )
    return response
