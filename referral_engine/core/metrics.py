"""Prometheus metrics for the referral engine.

HTTP request metrics plus counters for period transitions, signups,
awarded bonus points and scheduler runs.
"""

import re
import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)
from starlette.middleware.base import BaseHTTPMiddleware

from referral_engine.config import settings


def get_registry() -> CollectorRegistry:
    """Get the appropriate registry for the current mode."""
    if settings.environment == "production":
        # With multiple workers, aggregate through the multiprocess collector
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        return registry
    return REGISTRY


APP_INFO = Info("referral_engine", "Referral engine application information")
APP_INFO.info({
    "version": "0.1.0",
    "environment": settings.environment,
})


# HTTP Request Metrics
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently being processed",
    ["method", "endpoint"],
)


# Referral Metrics
PERIOD_TRANSITIONS_TOTAL = Counter(
    "referral_periods_transitions_total",
    "Referral period state transitions",
    ["transition"],  # "created", "activated", "completed", "deleted"
)

SIGNUPS_TOTAL = Counter(
    "referral_signups_total",
    "Referral code signups",
    ["linked"],  # "true" when a period link was created
)

BONUS_POINTS_AWARDED = Counter(
    "referral_bonus_points_awarded_total",
    "Bonus points appended to the ledger",
    ["bonus_type"],
)

SCHEDULER_RUNS_TOTAL = Counter(
    "referral_scheduler_runs_total",
    "Reset scheduler ticks",
    ["result"],  # "idle", "rolled_over", "error"
)


def normalize_endpoint(path: str) -> str:
    """Normalize endpoint path to reduce metric cardinality.

    Replaces wallet addresses and numeric IDs with placeholders.
    """
    path = re.sub(r"0x[0-9a-fA-F]{40}", "{address}", path)
    path = re.sub(r"/\d+(/|$)", "/{id}\\1", path)
    return path


def record_period_transition(transition: str) -> None:
    PERIOD_TRANSITIONS_TOTAL.labels(transition=transition).inc()


def record_signup(linked: bool) -> None:
    SIGNUPS_TOTAL.labels(linked=str(linked).lower()).inc()


def record_bonus_awarded(bonus_type: str, points: int) -> None:
    """Record points appended to the bonus ledger."""
    if points > 0:
        BONUS_POINTS_AWARDED.labels(bonus_type=bonus_type).inc(points)


def record_scheduler_run(result: str) -> None:
    SCHEDULER_RUNS_TOTAL.labels(result=result).inc()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to automatically track HTTP metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        normalized = normalize_endpoint(request.url.path)

        HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=normalized).inc()
        start_time = time.perf_counter()
        status = 500

        try:
            response = await call_next(request)
            status = response.status_code
        finally:
            duration = time.perf_counter() - start_time
            HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=normalized).dec()
            HTTP_REQUESTS_TOTAL.labels(
                method=method,
                endpoint=normalized,
                status=status,
            ).inc()
            HTTP_REQUEST_DURATION.labels(
                method=method,
                endpoint=normalized,
            ).observe(duration)

        return response


async def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    registry = get_registry()
    return generate_latest(registry), CONTENT_TYPE_LATEST
