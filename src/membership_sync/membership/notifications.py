"""Renewal notifications -- day-offset to template mapping and dispatch.

The day-offset is ``(today - renewal_date)`` in whole days. The mapping from
offset to template is a table, not a chain of comparisons; offsets outside
the table produce no email.

Mind the sign: a positive offset means the renewal date has already passed.
With the default thresholds ``30,14,7,0,-7,-30`` the ``inactive-notice``
template therefore goes out 30 days *before* the renewal date, and
``reminder-30`` goes out 30 days after it, on the same sweep that closes the
grace window and deactivates the account. Operators who want the opposite
reading should change the thresholds, not the table.
"""

from __future__ import annotations

from datetime import date
from enum import Enum

import structlog

from src.membership_sync.directory.schemas import Account, PaymentMethod
from src.membership_sync.mail.base import Mailer
from src.membership_sync.mail.models import EmailMessage
from src.membership_sync.mail.suppression import EmailSuppression

logger = structlog.get_logger(__name__)


class NotificationTemplate(str, Enum):
    INACTIVE_NOTICE = "inactive-notice"
    PAST_DUE = "past-due"
    DUE_TODAY = "due-today"
    REMINDER_7 = "reminder-7"
    REMINDER_14 = "reminder-14"
    REMINDER_30 = "reminder-30"


class DispatchOutcome(str, Enum):
    SENT = "sent"
    SUPPRESSED = "suppressed"
    SKIPPED_AUTOPAY = "skipped_autopay"
    NO_TEMPLATE = "no_template"
    NO_ADDRESS = "no_address"


# (lowest offset, highest offset, template), inclusive bounds
NOTIFICATION_SCHEDULE: tuple[tuple[int, int, NotificationTemplate], ...] = (
    (-30, -30, NotificationTemplate.INACTIVE_NOTICE),
    (-29, -1, NotificationTemplate.PAST_DUE),
    (0, 0, NotificationTemplate.DUE_TODAY),
    (7, 7, NotificationTemplate.REMINDER_7),
    (14, 14, NotificationTemplate.REMINDER_14),
    (30, 30, NotificationTemplate.REMINDER_30),
)

# Template -> (subject, plain-text body); str.format merge fields
TEMPLATE_COPY: dict[NotificationTemplate, tuple[str, str]] = {
    NotificationTemplate.INACTIVE_NOTICE: (
        "Your {organization} membership is now inactive",
        "Dear {first_name},\n\nYour {membership_type} membership (renewal date "
        "{renewal_date}) is now inactive. Renew any time to restore your benefits.\n\n"
        "{organization}",
    ),
    NotificationTemplate.PAST_DUE: (
        "Your {organization} membership renewal is past due",
        "Dear {first_name},\n\nYour {membership_type} membership was due for renewal "
        "on {renewal_date}. Please renew to keep your membership active.\n\n{organization}",
    ),
    NotificationTemplate.DUE_TODAY: (
        "Your {organization} membership renews today",
        "Dear {first_name},\n\nYour {membership_type} membership is due for renewal "
        "today ({renewal_date}).\n\n{organization}",
    ),
    NotificationTemplate.REMINDER_7: (
        "Membership renewal reminder (7 days)",
        "Dear {first_name},\n\nThis is a reminder about your {membership_type} "
        "membership renewal ({renewal_date}).\n\n{organization}",
    ),
    NotificationTemplate.REMINDER_14: (
        "Membership renewal reminder (14 days)",
        "Dear {first_name},\n\nThis is a reminder about your {membership_type} "
        "membership renewal ({renewal_date}).\n\n{organization}",
    ),
    NotificationTemplate.REMINDER_30: (
        "Membership renewal reminder (30 days)",
        "Dear {first_name},\n\nThis is a reminder about your {membership_type} "
        "membership renewal ({renewal_date}).\n\n{organization}",
    ),
}


def day_offset(renewal_date: date, today: date) -> int:
    """Signed whole days from the renewal date to today."""
    return (today - renewal_date).days


def template_for_offset(offset: int) -> NotificationTemplate | None:
    for low, high, template in NOTIFICATION_SCHEDULE:
        if low <= offset <= high:
            return template
    return None


def render(template: NotificationTemplate, merge_fields: dict[str, str]) -> tuple[str, str]:
    subject, body = TEMPLATE_COPY[template]
    return subject.format(**merge_fields), body.format(**merge_fields)


class NotificationDispatcher:
    """Send the renewal email selected by a day-offset.

    Only accounts that pay offline get reminders; online auto-pay accounts
    renew without manual action and are skipped on purpose.

    Args:
        mailer: Outbound email transport.
        suppression: Environment-based suppression filter.
        organization_name: Merge field for the sender organisation.
    """

    def __init__(
        self,
        mailer: Mailer,
        suppression: EmailSuppression,
        organization_name: str = "",
    ) -> None:
        self._mailer = mailer
        self._suppression = suppression
        self._organization_name = organization_name

    def merge_fields(self, account: Account) -> dict[str, str]:
        first_name = account.profile.first_name or account.display_name.split(" ")[0]
        return {
            "first_name": first_name,
            "display_name": account.display_name,
            "membership_type": account.membership_type or "",
            "renewal_date": account.renewal_date.isoformat() if account.renewal_date else "",
            "organization": self._organization_name,
        }

    async def dispatch(self, account: Account, offset: int) -> DispatchOutcome:
        """Send (or suppress) the notification for ``offset``.

        Raises:
            Exception: Whatever the mail transport raises on a failed send.
        """
        template = template_for_offset(offset)
        log = logger.bind(account_id=account.id, offset=offset)
        if template is None:
            return DispatchOutcome.NO_TEMPLATE
        if account.payment_method != PaymentMethod.OFFLINE:
            log.debug("notifications.skipped_autopay")
            return DispatchOutcome.SKIPPED_AUTOPAY

        address = account.email or account.profile.email
        if not address:
            log.warning("notifications.no_address", template_id=template.value)
            return DispatchOutcome.NO_ADDRESS

        merge_fields = self.merge_fields(account)
        subject, body = render(template, merge_fields)
        email = EmailMessage(
            to=address,
            subject=subject,
            body_text=body,
            template_id=template.value,
            merge_fields=merge_fields,
        )

        reason = self._suppression.block_reason(address)
        if reason is not None:
            self._suppression.record(email, reason)
            return DispatchOutcome.SUPPRESSED

        result = await self._mailer.send(email)
        log.info(
            "notifications.sent",
            template_id=template.value,
            message_id=result.message_id,
        )
        return DispatchOutcome.SENT
