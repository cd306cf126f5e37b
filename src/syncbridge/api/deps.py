"""FastAPI dependencies for authentication and shared services."""

from __future__ import annotations

import hmac
from typing import Any

from fastapi import HTTPException, Request, status

from src.syncbridge.config import get_settings


async def require_api_key(request: Request) -> str:
    """Validate the X-API-Key header against the configured keys.

    With no keys configured the API runs open; this is intended for local
    development only and is logged at startup.

    Raises:
        HTTPException(401): Missing or unknown key.
    """
    keys = get_settings().get_api_keys()
    if not keys:
        return "anonymous"

    api_key = request.headers.get("X-API-Key")
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    if not any(hmac.compare_digest(api_key, key) for key in keys):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return api_key


def get_reconciliation_engine(request: Request) -> Any:
    """Retrieve the ReconciliationEngine from app.state, 503 if not available."""
    engine = getattr(request.app.state, "reconciliation_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reconciliation engine not initialized",
        )
    return engine
