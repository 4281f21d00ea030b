"""Gmail transport using a service account with domain-wide delegation.

The Google API client is synchronous, so every call runs in
asyncio.to_thread() to keep the event loop free. The built service is
cached per sender mailbox.
"""

from __future__ import annotations

import asyncio
import base64
from email.message import EmailMessage as StdlibEmailMessage
from typing import Any

import structlog
from google.oauth2 import service_account
from googleapiclient.discovery import build

from src.membership_sync.mail.base import Mailer
from src.membership_sync.mail.models import EmailMessage, SentEmailResult

logger = structlog.get_logger(__name__)

GMAIL_SEND_SCOPES = ["https://www.googleapis.com/auth/gmail.send"]


class GmailMailer(Mailer):
    """Send renewal notices from a delegated Gmail mailbox.

    Args:
        service_account_file: Path to the service account JSON key.
        sender_email: Mailbox the service account impersonates.
        sender_name: Display name on the From header.
    """

    def __init__(
        self,
        service_account_file: str,
        sender_email: str,
        sender_name: str = "",
    ) -> None:
        self._service_account_file = service_account_file
        self._sender_email = sender_email
        self._sender_name = sender_name
        self._service: Any = None

    def _get_service(self) -> Any:
        if self._service is None:
            logger.info("mail.building_gmail_service", sender=self._sender_email)
            credentials = service_account.Credentials.from_service_account_file(
                self._service_account_file,
                scopes=GMAIL_SEND_SCOPES,
            ).with_subject(self._sender_email)
            self._service = build("gmail", "v1", credentials=credentials)
        return self._service

    def build_raw_message(self, email: EmailMessage) -> str:
        """Base64url-encoded RFC 2822 message for the Gmail API."""
        msg = StdlibEmailMessage()
        msg["To"] = email.to
        msg["Subject"] = email.subject
        if self._sender_name:
            msg["From"] = f"{self._sender_name} <{self._sender_email}>"
        else:
            msg["From"] = self._sender_email

        msg.set_content(email.body_text)
        if email.body_html:
            msg.add_alternative(email.body_html, subtype="html")

        return base64.urlsafe_b64encode(msg.as_bytes()).decode()

    async def send(self, email: EmailMessage) -> SentEmailResult:
        service = self._get_service()
        body = {"raw": self.build_raw_message(email)}

        def _send() -> dict:
            return service.users().messages().send(userId="me", body=body).execute()

        logger.info("mail.sending", to=email.to, template_id=email.template_id)
        result = await asyncio.to_thread(_send)
        return SentEmailResult(
            message_id=result.get("id", ""),
            thread_id=result.get("threadId", ""),
        )
