"""Operator endpoints.

Manual sweep trigger, renewal status and statistics, the sync failure
console, rate-limit and cache inspection, suppressed email review, and the
business mapping tables held in the settings store.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from src.membership_sync.api.deps import get_sync_engine, verify_webhook_token
from src.membership_sync.directory.schemas import PaymentKind
from src.membership_sync.engine import SyncEngine
from src.membership_sync.events.failures import SyncFailureRecord
from src.membership_sync.mail.models import BlockedEmail
from src.membership_sync.membership.state_machine import PriceInfo

router = APIRouter(tags=["operations"], dependencies=[Depends(verify_webhook_token)])


# ── Request / Response Schemas ───────────────────────────────────────────────


class SweepRequest(BaseModel):
    today: date | None = None


class RenewalRequest(BaseModel):
    """Explicit renewal of one account, optionally with a payment."""

    level_name: str
    start: date
    order_id: str | None = None
    amount: float = 0.0
    paid_on: date | None = None
    payment_method: str | None = None


class RenewalStatusResponse(BaseModel):
    account_id: str
    renewal_date: date | None = None
    offset: int | None = None
    state: str
    template: str | None = None
    notification_due: bool
    grace_expired: bool


class SettingValue(BaseModel):
    value: Any


# ── Sweep ────────────────────────────────────────────────────────────────────


@router.post("/sweep")
async def run_sweep(
    body: SweepRequest | None = None,
    engine: SyncEngine = Depends(get_sync_engine),
) -> dict[str, Any]:
    """Run the renewal sweep now (same work as the daily job)."""
    report = await engine.sweeper.run(body.today if body else None)
    return report.as_dict()


@router.get("/sweep/statistics")
async def sweep_statistics(
    today: date | None = None,
    engine: SyncEngine = Depends(get_sync_engine),
) -> dict[str, int]:
    return await engine.sweeper.statistics(today)


# ── Accounts ─────────────────────────────────────────────────────────────────


@router.get("/accounts/{account_id}/renewal-status", response_model=RenewalStatusResponse)
async def renewal_status(
    account_id: str,
    today: date | None = None,
    engine: SyncEngine = Depends(get_sync_engine),
) -> RenewalStatusResponse:
    account = await engine.accounts.get(account_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Account not found: {account_id}",
        )
    check = engine.sweeper.check_account(account, today or date.today())
    return RenewalStatusResponse(
        account_id=check.account_id,
        renewal_date=check.renewal_date,
        offset=check.offset,
        state=check.state.value,
        template=check.template.value if check.template else None,
        notification_due=check.notification_due,
        grace_expired=check.grace_expired,
    )


@router.post("/accounts/{account_id}/renewals")
async def renew_account(
    account_id: str,
    body: RenewalRequest,
    engine: SyncEngine = Depends(get_sync_engine),
) -> dict[str, Any]:
    """Renew one account; a payment is recorded only when an order id is given."""
    price_info = None
    if body.order_id:
        price_info = PriceInfo(
            order_id=body.order_id,
            amount=body.amount,
            paid_on=body.paid_on or body.start,
            kind=PaymentKind.MEMBERSHIP,
            payment_method=body.payment_method,
        )
    result = await engine.orchestrator.handle_renewal(
        account_id, body.level_name, body.start, price_info
    )
    return result.as_dict()


# ── Sync Failure Console ─────────────────────────────────────────────────────


@router.get("/sync/failures", response_model=list[SyncFailureRecord])
async def list_sync_failures(
    unresolved_only: bool = True,
    limit: int = Query(default=100, ge=1, le=1000),
    engine: SyncEngine = Depends(get_sync_engine),
) -> list[SyncFailureRecord]:
    return await engine.failures.list_failures(unresolved_only=unresolved_only, limit=limit)


@router.post("/sync/failures/{failure_id}/resolve", response_model=SyncFailureRecord)
async def resolve_sync_failure(
    failure_id: int,
    engine: SyncEngine = Depends(get_sync_engine),
) -> SyncFailureRecord:
    record = await engine.failures.resolve(failure_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync failure not found: {failure_id}",
        )
    return record


# ── Remote Budget and Cache ──────────────────────────────────────────────────


@router.get("/sync/rate-limit")
async def rate_limit_status(engine: SyncEngine = Depends(get_sync_engine)) -> dict[str, Any]:
    return engine.rate_limiter.status()


@router.post("/cache/clear")
async def clear_cache(engine: SyncEngine = Depends(get_sync_engine)) -> dict[str, int]:
    """Drop every cached reference list and setting."""
    return {"cleared": engine.cache.clear()}


# ── Email Suppression ────────────────────────────────────────────────────────


@router.get("/mail/blocked", response_model=list[BlockedEmail])
async def blocked_emails(engine: SyncEngine = Depends(get_sync_engine)) -> list[BlockedEmail]:
    return engine.suppression.blocked()


# ── Settings Store ───────────────────────────────────────────────────────────


@router.get("/settings/{key}", response_model=SettingValue)
async def read_setting(key: str, engine: SyncEngine = Depends(get_sync_engine)) -> SettingValue:
    value = await engine.settings_store.get(key)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Setting not found: {key}",
        )
    return SettingValue(value=value)


@router.put("/settings/{key}", response_model=SettingValue)
async def write_setting(
    key: str,
    body: SettingValue,
    engine: SyncEngine = Depends(get_sync_engine),
) -> SettingValue:
    await engine.settings_store.set(key, body.value)
    return body
