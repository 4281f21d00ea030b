"""Daily renewal sweep.

Walks every member and family owner with a renewal date, in id-ordered
batches. For each account it:

1. computes the day-offset and, when it equals a configured threshold,
   dispatches the matching notification (at most once per account, renewal
   date and offset; the marker is claimed before the send, so overlapping
   sweeps cannot both send)
2. re-evaluates the lifecycle state; an account whose grace window has
   elapsed is deactivated once, cascading to dependents for family owners

The two steps fail independently: a mail error never blocks the state
transition. Running the sweep twice for the same day sends nothing new the
second time. Individual account failures never stop the sweep.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date

import structlog

from src.membership_sync.directory.repository import (
    AccountRepository,
    NotificationMarkerRepository,
)
from src.membership_sync.directory.schemas import Account, AccountRole, AccountUpdate, MembershipState
from src.membership_sync.membership.family import FamilyPropagator
from src.membership_sync.membership.notifications import (
    DispatchOutcome,
    NotificationDispatcher,
    NotificationTemplate,
    day_offset,
    template_for_offset,
)
from src.membership_sync.membership.state_machine import MembershipStateMachine

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    today: date
    processed: int = 0
    notified: int = 0
    suppressed: int = 0
    already_notified: int = 0
    deactivated: int = 0
    state_updates: int = 0
    errors: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["today"] = self.today.isoformat()
        return data


@dataclass(frozen=True)
class RenewalCheck:
    """Renewal status of one account on one day."""

    account_id: str
    renewal_date: date | None
    offset: int | None
    state: MembershipState
    template: NotificationTemplate | None
    notification_due: bool
    grace_expired: bool


class RenewalSweeper:
    """Scheduled driver for notifications and grace-window deactivation.

    Args:
        accounts: Local account repository.
        markers: Notification marker repository.
        state_machine: Membership state machine.
        propagator: Family propagator for owner cascades.
        dispatcher: Notification dispatcher.
        thresholds: Day-offsets that trigger a notification.
        batch_size: Accounts loaded per batch.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        markers: NotificationMarkerRepository,
        state_machine: MembershipStateMachine,
        propagator: FamilyPropagator,
        dispatcher: NotificationDispatcher,
        thresholds: list[int],
        batch_size: int = 100,
    ) -> None:
        self._accounts = accounts
        self._markers = markers
        self._state_machine = state_machine
        self._propagator = propagator
        self._dispatcher = dispatcher
        self.thresholds = frozenset(thresholds)
        self.batch_size = batch_size

        unmapped = sorted(t for t in self.thresholds if template_for_offset(t) is None)
        if unmapped:
            logger.warning("sweeper.thresholds_without_template", thresholds=unmapped)

    async def _iter_accounts(self):
        after_id: str | None = None
        while True:
            batch = await self._accounts.list_sweepable(self.batch_size, after_id)
            if not batch:
                return
            for account in batch:
                yield account
            after_id = batch[-1].id

    def check_account(self, account: Account, today: date) -> RenewalCheck:
        """Offset, state and due actions for one account, without side effects."""
        if account.renewal_date is None:
            return RenewalCheck(
                account_id=account.id,
                renewal_date=None,
                offset=None,
                state=MembershipState.UNKNOWN,
                template=None,
                notification_due=False,
                grace_expired=False,
            )
        offset = day_offset(account.renewal_date, today)
        template = template_for_offset(offset)
        state = self._state_machine.evaluate(account.renewal_date, today)
        return RenewalCheck(
            account_id=account.id,
            renewal_date=account.renewal_date,
            offset=offset,
            state=state,
            template=template,
            notification_due=template is not None and offset in self.thresholds,
            grace_expired=state == MembershipState.INACTIVE,
        )

    async def _notify(self, account: Account, check: RenewalCheck, report: SweepReport) -> None:
        if check.renewal_date is None or check.offset is None or check.template is None:
            return
        marker = (account.id, check.renewal_date, check.offset)
        if not await self._markers.claim(*marker, check.template.value):
            report.already_notified += 1
            return

        try:
            outcome = await self._dispatcher.dispatch(account, check.offset)
        except Exception:
            await self._markers.release(*marker)
            raise
        if outcome not in (DispatchOutcome.SENT, DispatchOutcome.SUPPRESSED):
            await self._markers.release(*marker)
            return
        await self._markers.complete(*marker, outcome.value)
        if outcome == DispatchOutcome.SENT:
            report.notified += 1
        else:
            report.suppressed += 1

    async def _process(self, account: Account, today: date, report: SweepReport) -> None:
        check = self.check_account(account, today)
        if check.notification_due:
            # Mail problems must not hold back the state transition below
            try:
                await self._notify(account, check, report)
            except Exception as exc:
                logger.warning(
                    "sweeper.notification_failed",
                    account_id=account.id,
                    offset=check.offset,
                    error=str(exc),
                )
                report.errors.append(
                    {
                        "account_id": account.id,
                        "step": "notify",
                        "error_type": type(exc).__name__,
                        "message": str(exc),
                    }
                )

        if check.grace_expired:
            if account.membership_state == MembershipState.INACTIVE:
                return
            _, errors = await self._state_machine.deactivate(
                account, reason="grace_period_expired", today=today
            )
            if account.role == AccountRole.FAMILY_OWNER:
                errors.extend(await self._propagator.cascade_deactivation(account, today))
            report.deactivated += 1
            for error in errors:
                report.errors.append({"account_id": account.id, **asdict(error)})
        elif check.state != account.membership_state:
            await self._accounts.update(account.id, AccountUpdate(membership_state=check.state))
            report.state_updates += 1

    async def run(self, today: date | None = None) -> SweepReport:
        """Sweep every eligible account for ``today``."""
        today = today or date.today()
        report = SweepReport(today=today)
        logger.info("sweeper.started", today=today.isoformat())

        async for account in self._iter_accounts():
            report.processed += 1
            try:
                await self._process(account, today, report)
            except Exception as exc:
                logger.warning(
                    "sweeper.account_failed",
                    account_id=account.id,
                    error=str(exc),
                )
                report.errors.append(
                    {
                        "account_id": account.id,
                        "step": "sweep",
                        "error_type": type(exc).__name__,
                        "message": str(exc),
                    }
                )

        logger.info(
            "sweeper.complete",
            processed=report.processed,
            notified=report.notified,
            suppressed=report.suppressed,
            already_notified=report.already_notified,
            deactivated=report.deactivated,
            errors=len(report.errors),
        )
        return report

    async def statistics(self, today: date | None = None) -> dict[str, int]:
        """Counts of current, due-soon, overdue and expired accounts."""
        today = today or date.today()
        counts = {"total": 0, "current": 0, "due_soon": 0, "overdue": 0, "expired": 0}
        bucket = {
            MembershipState.ACTIVE: "current",
            MembershipState.DUE_SOON: "due_soon",
            MembershipState.OVERDUE: "overdue",
            MembershipState.INACTIVE: "expired",
        }
        async for account in self._iter_accounts():
            counts["total"] += 1
            state = self._state_machine.evaluate(account.renewal_date, today)
            if state in bucket:
                counts[bucket[state]] += 1
        return counts
