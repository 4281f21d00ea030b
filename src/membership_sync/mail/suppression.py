"""Environment-based email suppression.

Outside production (or whenever FORCE_EMAIL_BLOCKING is set) outbound email
is held back, except for addresses on the explicit allow-list. Blocked
messages are kept in a bounded in-memory log for operator review.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone

import structlog

from src.membership_sync.config import Environment, Settings
from src.membership_sync.mail.models import BlockedEmail, EmailMessage

logger = structlog.get_logger(__name__)

MAX_BLOCKED_LOG = 500


class EmailSuppression:
    """Decides whether an outbound email may leave the process.

    Args:
        environment: Deployment environment.
        force_blocking: Block even in production.
        allowlist: Addresses that always pass (case-insensitive).
    """

    def __init__(
        self,
        environment: Environment,
        force_blocking: bool = False,
        allowlist: set[str] | None = None,
    ) -> None:
        self.environment = environment
        self.force_blocking = force_blocking
        self.allowlist = {address.lower() for address in (allowlist or set())}
        self._blocked: deque[BlockedEmail] = deque(maxlen=MAX_BLOCKED_LOG)

    @classmethod
    def from_settings(cls, settings: Settings) -> EmailSuppression:
        return cls(
            environment=settings.ENVIRONMENT,
            force_blocking=settings.FORCE_EMAIL_BLOCKING,
            allowlist=settings.email_allowlist(),
        )

    @property
    def is_active(self) -> bool:
        return self.force_blocking or self.environment != Environment.production

    def block_reason(self, address: str) -> str | None:
        """Why ``address`` is blocked, or None when it may be sent."""
        if not self.is_active:
            return None
        if address.strip().lower() in self.allowlist:
            return None
        if self.force_blocking:
            return "force_blocking"
        return f"environment:{self.environment.value}"

    def record(self, email: EmailMessage, reason: str) -> BlockedEmail:
        blocked = BlockedEmail(
            to=email.to,
            subject=email.subject,
            template_id=email.template_id,
            reason=reason,
            blocked_at=datetime.now(timezone.utc),
        )
        self._blocked.append(blocked)
        logger.info(
            "mail.suppressed",
            to=email.to,
            template_id=email.template_id,
            reason=reason,
        )
        return blocked

    def blocked(self) -> list[BlockedEmail]:
        return list(self._blocked)

    def clear(self) -> int:
        count = len(self._blocked)
        self._blocked.clear()
        return count
