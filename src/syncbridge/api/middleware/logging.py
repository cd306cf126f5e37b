"""Structured request logging middleware.

Every request is logged once as ``request_completed`` (or ``request_error``)
with method, path, route group, status and duration. The request id is
bound into structlog contextvars for the whole request, so engine events
such as ``reconciliation.record_matched`` carry it as well. Bulk-match
responses expose their run id in ``X-Run-ID``; it is logged alongside.

Production renders JSON; other environments use the console renderer.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.syncbridge.config import Environment, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
RUN_ID_HEADER = "X-Run-ID"


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(message)s")

    processors: list = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def route_group(path: str) -> str:
    """First segment after the API version: ``/v1/reconciliation/runs/x`` -> ``reconciliation``."""
    parts = [p for p in path.split("/") if p]
    if parts and parts[0].startswith("v") and parts[0][1:].isdigit():
        parts = parts[1:]
    return parts[0] if parts else "root"


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request and propagates X-Request-ID (the caller's, or a new UUID)."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            fields = {
                "method": request.method,
                "path": request.url.path,
                "route_group": route_group(request.url.path),
            }
            try:
                response = await call_next(request)
            except Exception:
                logger.error("request_error", status_code=500, duration_ms=_elapsed_ms(started), **fields)
                raise

            response.headers[REQUEST_ID_HEADER] = request_id
            if RUN_ID_HEADER in response.headers:
                fields["run_id"] = response.headers[RUN_ID_HEADER]

            if response.status_code >= 500:
                log_method = logger.error
            elif response.status_code >= 400:
                log_method = logger.warning
            else:
                log_method = logger.info
            log_method(
                "request_completed",
                status_code=response.status_code,
                duration_ms=_elapsed_ms(started),
                **fields,
            )
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
