"""Mail transport interface.

The host's outbound email delivery is an external collaborator; the engine
only needs ``send``. GmailMailer is the production transport.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.membership_sync.mail.models import EmailMessage, SentEmailResult


class Mailer(ABC):
    """Abstract outbound email transport."""

    @abstractmethod
    async def send(self, email: EmailMessage) -> SentEmailResult:
        """Deliver one email, return the transport's message id."""
        ...
