"""Local directory persistence models.

Five SQLAlchemy models:
- AccountModel: Local identities with membership fields
- PaymentRecordModel: Order-id to remote gift mapping (unique order_id)
- FamilySlotLedgerModel: Slot counts keyed by family-owner account id
- NotificationMarkerModel: Sent renewal notifications (unique per offset)
- SettingModel: Key/value configuration blob (fund, campaign, level tables)

Column types are dialect-neutral so the same models run on PostgreSQL in
production and SQLite in tests.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.membership_sync.core.database import Base


class AccountModel(Base):
    """A local account. Dependents point at their family owner via parent_account_id."""

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str] = mapped_column(String(320), default="", nullable=False)
    role: Mapped[str] = mapped_column(String(30), default="none", nullable=False)
    remote_constituent_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )
    membership_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    membership_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    renewal_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    membership_state: Mapped[str] = mapped_column(
        String(30), default="unknown", nullable=False
    )
    payment_method: Mapped[str] = mapped_column(
        String(20), default="online", nullable=False
    )
    parent_account_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )
    profile: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class PaymentRecordModel(Base):
    """Idempotency anchor: at most one row per local order id. Never updated or deleted."""

    __tablename__ = "payment_records"
    __table_args__ = (
        UniqueConstraint("order_id", name="uq_payment_records_order_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gift_id: Mapped[str] = mapped_column(String(64), nullable=False)
    constituent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class FamilySlotLedgerModel(Base):
    """Per family-owner slot ledger."""

    __tablename__ = "family_slot_ledgers"
    __table_args__ = (
        CheckConstraint("used >= 0", name="ck_family_slots_used_non_negative"),
        CheckConstraint("total >= 0", name="ck_family_slots_total_non_negative"),
    )

    owner_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class NotificationMarkerModel(Base):
    """A renewal notification already handled for one (account, renewal date, offset)."""

    __tablename__ = "notification_markers"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "renewal_date",
            "day_offset",
            name="uq_notification_marker",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    renewal_date: Mapped[date] = mapped_column(Date, nullable=False)
    day_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    template_id: Mapped[str] = mapped_column(String(50), nullable=False)
    outcome: Mapped[str] = mapped_column(String(30), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class SettingModel(Base):
    """Persistent key/value setting (JSON value)."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
