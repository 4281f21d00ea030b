"""Outbound email -- transport interface, Gmail transport and suppression.

- Mailer: Abstract transport used by NotificationDispatcher
- GmailMailer: Service-account Gmail sender (domain-wide delegation)
- EmailSuppression: Non-production blocking with an explicit allow-list
"""

from src.membership_sync.mail.base import Mailer
from src.membership_sync.mail.gmail import GmailMailer
from src.membership_sync.mail.models import BlockedEmail, EmailMessage, SentEmailResult
from src.membership_sync.mail.suppression import EmailSuppression

__all__ = [
    "BlockedEmail",
    "EmailMessage",
    "EmailSuppression",
    "GmailMailer",
    "Mailer",
    "SentEmailResult",
]
