"""Sync failure log for the operator retry console.

Every pipeline step error is persisted here instead of being shown to the
customer. Operators list unresolved failures and mark them resolved once
the underlying problem has been fixed and the event replayed.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from pydantic import BaseModel
from sqlalchemy import Boolean, DateTime, Integer, String, Text, func, select
from sqlalchemy.orm import Mapped, mapped_column

from src.membership_sync.core.database import Base, SessionFactory
from src.membership_sync.core.errors import StepError

logger = structlog.get_logger(__name__)


class SyncFailureModel(Base):
    """One failed pipeline step."""

    __tablename__ = "sync_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    account_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    step: Mapped[str] = mapped_column(String(50), nullable=False)
    error_type: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SyncFailureRecord(BaseModel):
    id: int
    event_type: str
    account_id: str | None = None
    order_id: str | None = None
    step: str
    error_type: str
    message: str
    resolved: bool = False
    created_at: datetime | None = None
    resolved_at: datetime | None = None


def _to_record(model: SyncFailureModel) -> SyncFailureRecord:
    return SyncFailureRecord(
        id=model.id,
        event_type=model.event_type,
        account_id=model.account_id,
        order_id=model.order_id,
        step=model.step,
        error_type=model.error_type,
        message=model.message,
        resolved=model.resolved,
        created_at=model.created_at,
        resolved_at=model.resolved_at,
    )


class SyncFailureRepository:
    """Append and resolve sync failures.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        event_type: str,
        errors: list[StepError],
        account_id: str | None = None,
        order_id: str | None = None,
    ) -> int:
        """Persist step errors for one event. Returns the number written."""
        if not errors:
            return 0
        async for session in self._session_factory():
            for error in errors:
                session.add(
                    SyncFailureModel(
                        event_type=event_type,
                        account_id=account_id,
                        order_id=order_id,
                        step=error.step,
                        error_type=error.error_type,
                        message=error.message[:2000],
                    )
                )
            await session.commit()
        logger.info(
            "sync_failures.recorded",
            event_type=event_type,
            account_id=account_id,
            order_id=order_id,
            count=len(errors),
        )
        return len(errors)

    async def list_failures(
        self, unresolved_only: bool = True, limit: int = 100
    ) -> list[SyncFailureRecord]:
        query = select(SyncFailureModel)
        if unresolved_only:
            query = query.where(SyncFailureModel.resolved.is_(False))
        query = query.order_by(SyncFailureModel.id.desc()).limit(limit)
        async for session in self._session_factory():
            result = await session.execute(query)
            return [_to_record(model) for model in result.scalars().all()]
        return []

    async def resolve(self, failure_id: int) -> SyncFailureRecord | None:
        """Mark a failure resolved. Returns None if it does not exist."""
        async for session in self._session_factory():
            model = await session.get(SyncFailureModel, failure_id)
            if model is None:
                return None
            if not model.resolved:
                model.resolved = True
                model.resolved_at = datetime.now(timezone.utc)
                await session.commit()
                logger.info("sync_failures.resolved", failure_id=failure_id)
            return _to_record(model)
        return None
