"""Inbound webhook endpoints.

The storefront and the registration forms post their events here. Every
handler answers 200 with the pipeline result even when steps failed: step
errors are already in the sync failure log, and a non-2xx answer would make
the storefront retry a purchase that has been taken.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request

from src.membership_sync.api.deps import get_sync_engine, verify_webhook_token
from src.membership_sync.engine import SyncEngine
from src.membership_sync.events.schemas import (
    OrderCompletedEvent,
    RegistrationSubmission,
    StatusChangedEvent,
)

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["webhooks"],
    dependencies=[Depends(verify_webhook_token)],
)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


@router.post("/orders")
async def order_completed(
    body: OrderCompletedEvent,
    request: Request,
    engine: SyncEngine = Depends(get_sync_engine),
) -> dict[str, Any]:
    """Storefront order paid."""
    logger.info(
        "webhooks.order_received",
        order_id=body.local_order_id,
        account_id=body.account_id,
        request_id=_request_id(request),
    )
    result = await engine.orchestrator.handle_order_completed(body)
    return result.as_dict()


@router.post("/registrations")
async def registration_submitted(
    body: RegistrationSubmission,
    request: Request,
    engine: SyncEngine = Depends(get_sync_engine),
) -> dict[str, Any]:
    """Registration form submitted."""
    logger.info(
        "webhooks.registration_received",
        account_id=body.account_id,
        request_id=_request_id(request),
    )
    result = await engine.orchestrator.handle_registration(body)
    return result.as_dict()


@router.post("/subscriptions")
async def subscription_status_changed(
    body: StatusChangedEvent,
    request: Request,
    engine: SyncEngine = Depends(get_sync_engine),
) -> dict[str, Any]:
    """Subscription status changed (cancellations deactivate)."""
    logger.info(
        "webhooks.status_received",
        account_id=body.account_id,
        new_status=body.new_status,
        request_id=_request_id(request),
    )
    result = await engine.orchestrator.handle_status_changed(body)
    return result.as_dict()
