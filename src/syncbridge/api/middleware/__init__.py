"""API middleware package."""

from src.syncbridge.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
