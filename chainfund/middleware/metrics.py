"""
Prometheus metrics for the donation engine
"""
import time

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

webhook_events_total = Counter(
    'webhook_events_total',
    'Payment provider webhook events by outcome',
    ['provider', 'event', 'outcome']
)

ledger_updates_total = Counter(
    'ledger_updates_total',
    'Campaign ledger mutations',
    ['kind']
)

commission_grants_total = Counter(
    'commission_grants_total',
    'Commission payouts created',
    ['kind']
)

payout_transitions_total = Counter(
    'payout_transitions_total',
    'Payout status transitions',
    ['payout_type', 'status']
)

notifications_total = Counter(
    'notifications_total',
    'Notification publish attempts',
    ['status']
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Collect request count and latency per route"""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        # Route template keeps label cardinality bounded
        endpoint = request.url.path
        route = request.scope.get('route')
        if route is not None and hasattr(route, 'path'):
            endpoint = route.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=str(response.status_code)
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        return response


async def metrics_endpoint(request: Request):
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
