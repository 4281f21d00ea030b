"""FastAPI dependencies for the sync engine and webhook authentication."""

from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from src.membership_sync.config import Settings, get_settings
from src.membership_sync.engine import SyncEngine


def get_sync_engine(request: Request) -> SyncEngine:
    """Retrieve the SyncEngine from app.state, 503 if not available."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not initialized",
        )
    return engine


async def verify_webhook_token(
    x_webhook_token: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Check the shared webhook secret.

    An empty WEBHOOK_TOKEN disables the check (local development).

    Raises:
        HTTPException(401): If the header is missing or does not match.
    """
    expected = settings.WEBHOOK_TOKEN
    if not expected:
        return
    if not x_webhook_token or not hmac.compare_digest(x_webhook_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook token",
        )
