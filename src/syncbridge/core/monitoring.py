"""Prometheus metrics, Sentry integration, and reconciliation run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry for the API process
- track_reconciliation_run(): Context manager for bulk-match run metrics
- record_match_outcome() / record_conflicts(): per-record counters
- get_metrics_response(): FastAPI route handler for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Reconciliation Metrics ───────────────────────────────────────────────────

reconciliation_records_total = Counter(
    "reconciliation_records_total",
    "Source records processed by bulk-match runs",
    ["source", "target", "status"],
)

reconciliation_runs_total = Counter(
    "reconciliation_runs_total",
    "Bulk-match runs by outcome",
    ["source", "status"],
)

reconciliation_run_duration_seconds = Histogram(
    "reconciliation_run_duration_seconds",
    "Bulk-match run duration in seconds",
    ["source"],
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0),
)

reconciliation_conflicts_total = Counter(
    "reconciliation_conflicts_total",
    "Field conflicts detected on linked records",
    ["field"],
)

reconciliation_runs_in_progress = Gauge(
    "reconciliation_runs_in_progress",
    "Bulk-match runs currently executing",
)

# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route template keeps label cardinality bounded (/mappings/{mapping_id})
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Reconciliation Helpers ───────────────────────────────────────────────────


@asynccontextmanager
async def track_reconciliation_run(source: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks a bulk-match run.

    Usage:
        async with track_reconciliation_run("photo") as tracker:
            result = await engine.run_bulk_match(...)
            tracker["status"] = "completed" if result.success else "failed"

    Records duration, the in-progress gauge, and the run outcome. An
    exception escaping the block is recorded as ``error``.
    """
    tracker: dict[str, Any] = {"status": "completed"}
    reconciliation_runs_in_progress.inc()
    start_time = time.perf_counter()
    try:
        yield tracker
    except Exception:
        tracker["status"] = "error"
        raise
    finally:
        reconciliation_runs_in_progress.dec()
        reconciliation_run_duration_seconds.labels(source=source).observe(
            time.perf_counter() - start_time
        )
        reconciliation_runs_total.labels(source=source, status=tracker["status"]).inc()


def record_match_outcome(source: str, target: str | None, status: str) -> None:
    reconciliation_records_total.labels(source=source, target=target or "none", status=status).inc()


def record_conflicts(fields: Iterable[str]) -> None:
    for field in fields:
        reconciliation_conflicts_total.labels(field=field).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
