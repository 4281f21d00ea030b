"""Pydantic schemas for outbound email."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class EmailMessage(BaseModel):
    """A rendered email ready for delivery."""

    to: str
    subject: str
    body_text: str
    body_html: str | None = None
    template_id: str | None = None
    merge_fields: dict[str, str] = Field(default_factory=dict)


class SentEmailResult(BaseModel):
    """Result from a mail transport."""

    message_id: str
    thread_id: str = ""


class BlockedEmail(BaseModel):
    """An email held back by environment suppression, kept for operator review."""

    to: str
    subject: str
    template_id: str | None = None
    reason: str
    blocked_at: datetime
