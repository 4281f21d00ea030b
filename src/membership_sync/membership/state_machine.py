"""Membership lifecycle state machine.

State is never stored remotely; it is derived on every evaluation from the
account's renewal date and the remote current period's finish date:

- Active:   renewal more than RENEWAL_LOOKAHEAD_DAYS away
- DueSoon:  renewal within the look-ahead window (or today)
- Overdue:  renewal passed, still inside GRACE_PERIOD_DAYS
- Inactive: grace window elapsed
- Unknown:  no renewal date on file

Every renewal first back-dates any current remote period to yesterday (by
its existing id) and only then creates the new one, so overlapping triggers
can never leave two current periods behind. A replayed renewal whose period
(same level, start and finish) is already current reuses that period, so a
retry after a later step failed resumes instead of churning periods.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

import structlog

from src.membership_sync.core.errors import MembershipSyncError, StepError
from src.membership_sync.crm.client import SyncClient
from src.membership_sync.crm.schemas import MembershipCreate, MembershipPeriod
from src.membership_sync.directory.repository import AccountRepository
from src.membership_sync.directory.schemas import (
    Account,
    AccountRole,
    AccountUpdate,
    AlreadyRecorded,
    MembershipState,
    PaymentKind,
)
from src.membership_sync.membership.identity import IdentityResolver
from src.membership_sync.membership.levels import LevelCatalog, role_for_level
from src.membership_sync.membership.payments import PaymentRecorder

logger = structlog.get_logger(__name__)

DEFAULT_ACTOR = "membership-sync"


@dataclass(frozen=True)
class PriceInfo:
    """The order that paid for a renewal."""

    order_id: str
    amount: float
    paid_on: date
    kind: PaymentKind = PaymentKind.MEMBERSHIP
    payment_method: str | None = None


@dataclass
class RenewalResult:
    """What ``apply_renewal`` did. Steps that failed are listed in ``errors``."""

    account: Account
    constituent_id: str | None = None
    new_constituent: bool = False
    deactivated_period_ids: list[str] = field(default_factory=list)
    membership_id: str | None = None
    period_reused: bool = False
    payment: str | AlreadyRecorded | None = None
    errors: list[StepError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def add_one_year(start: date) -> date:
    """Same calendar day next year; 29 February becomes 28 February."""
    try:
        return start.replace(year=start.year + 1)
    except ValueError:
        return start.replace(year=start.year + 1, day=28)


def current_period(periods: list[MembershipPeriod], today: date) -> MembershipPeriod | None:
    """The period with the greatest finish date among those still current.

    More than one current period is a data-integrity problem on the remote
    side; it is logged and the latest-finishing one wins.
    """
    current = [period for period in periods if period.is_current(today)]
    if not current:
        return None
    if len(current) > 1:
        logger.warning(
            "membership.multiple_current_periods",
            period_ids=[period.id for period in current],
        )
    return max(current, key=lambda period: period.finish_date or date.max)


def matching_period(
    periods: list[MembershipPeriod],
    level_id: str,
    start: date,
    finish: date,
    today: date,
) -> MembershipPeriod | None:
    """A current period that is exactly the renewal about to be written."""
    for period in periods:
        if (
            period.is_current(today)
            and period.level_id == level_id
            and period.date_start == start
            and period.finish_date == finish
        ):
            return period
    return None


def evaluate(
    renewal_date: date | None,
    today: date,
    period: MembershipPeriod | None = None,
    lookahead_days: int = 30,
    grace_days: int = 30,
) -> MembershipState:
    """Derive the lifecycle state for one account."""
    if renewal_date is None:
        return MembershipState.UNKNOWN

    effective = renewal_date
    if period is not None and period.finish_date is not None:
        effective = max(effective, period.finish_date)

    days_left = (effective - today).days
    if days_left > lookahead_days:
        return MembershipState.ACTIVE
    if days_left >= 0:
        return MembershipState.DUE_SOON
    if days_left > -grace_days:
        return MembershipState.OVERDUE
    return MembershipState.INACTIVE


class MembershipStateMachine:
    """Renewal and deactivation transitions for one account at a time.

    Args:
        client: CRM client.
        accounts: Local account repository.
        identity: Identity resolver for unlinked accounts.
        catalog: Level catalog (role table, remote level ids).
        payments: Payment recorder.
        lookahead_days: DueSoon window.
        grace_days: Overdue window before Inactive.
    """

    def __init__(
        self,
        client: SyncClient,
        accounts: AccountRepository,
        identity: IdentityResolver,
        catalog: LevelCatalog,
        payments: PaymentRecorder,
        lookahead_days: int = 30,
        grace_days: int = 30,
    ) -> None:
        self._client = client
        self._accounts = accounts
        self._identity = identity
        self._catalog = catalog
        self._payments = payments
        self.lookahead_days = lookahead_days
        self.grace_days = grace_days

    def evaluate(
        self,
        renewal_date: date | None,
        today: date,
        period: MembershipPeriod | None = None,
    ) -> MembershipState:
        return evaluate(renewal_date, today, period, self.lookahead_days, self.grace_days)

    async def deactivate_current_periods(
        self,
        constituent_id: str,
        today: date,
        actor: str = DEFAULT_ACTOR,
        periods: list[MembershipPeriod] | None = None,
        keep_id: str | None = None,
    ) -> list[str]:
        """Back-date every current period to yesterday, by its existing id.

        Periods already finished are left alone; no no-op writes are made.
        ``keep_id`` names a current period that must stay open.

        Returns:
            Ids of the periods that were updated.
        """
        if periods is None:
            periods = await self._client.list_memberships(constituent_id)
        current = [
            period for period in periods if period.is_current(today) and period.id != keep_id
        ]
        if len(current) > 1:
            logger.warning(
                "membership.multiple_current_periods",
                constituent_id=constituent_id,
                period_ids=[period.id for period in current],
            )

        yesterday = today - timedelta(days=1)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        deactivated: list[str] = []
        for period in current:
            audit = f"Deactivated by {actor} at {stamp}"
            note = f"{period.note}\n{audit}" if period.note else audit
            updated = period.model_copy(update={"finish_date": yesterday, "note": note})
            await self._client.update_membership(constituent_id, updated)
            deactivated.append(period.id)
            logger.info(
                "membership.period_deactivated",
                constituent_id=constituent_id,
                membership_id=period.id,
                finish_date=yesterday.isoformat(),
                actor=actor,
            )
        return deactivated

    async def apply_renewal(
        self,
        account: Account,
        level_name: str,
        start: date,
        price_info: PriceInfo | None = None,
        today: date | None = None,
        actor: str = DEFAULT_ACTOR,
    ) -> RenewalResult:
        """Start a new one-year period for ``level_name`` at ``start``.

        Steps run in order; a failure is recorded in ``RenewalResult.errors``.
        Identity, level configuration and deactivation failures stop the
        renewal before any new period is written. A failed period creation
        does not stop the payment from being recorded.
        """
        today = today or date.today()
        result = RenewalResult(account=account)
        log = logger.bind(account_id=account.id, level=level_name)

        # 1. Identity
        try:
            account, resolution = await self._identity.link(account)
        except (MembershipSyncError, ValueError) as exc:
            log.warning("membership.renewal_identity_failed", error=str(exc))
            result.errors.append(StepError.from_exception("identity", exc))
            return result
        result.account = account
        result.constituent_id = resolution.constituent_id
        result.new_constituent = resolution.new_constituent
        constituent_id = resolution.constituent_id

        # Level configuration is checked before any remote write
        try:
            level = await self._catalog.get_level(level_name)
            remote_level_id = await self._catalog.resolve_remote_level_id(level)
        except MembershipSyncError as exc:
            log.warning("membership.renewal_level_failed", error=str(exc))
            result.errors.append(StepError.from_exception("level", exc))
            return result

        # 2. Deactivate the existing current period(s). A current period that
        # already is this renewal (replayed event) stays open and is reused.
        finish = add_one_year(start)
        try:
            periods = await self._client.list_memberships(constituent_id)
            reusable = matching_period(periods, remote_level_id, start, finish, today)
            result.deactivated_period_ids = await self.deactivate_current_periods(
                constituent_id,
                today,
                actor,
                periods=periods,
                keep_id=reusable.id if reusable else None,
            )
        except MembershipSyncError as exc:
            log.warning("membership.renewal_deactivation_failed", error=str(exc))
            result.errors.append(StepError.from_exception("deactivate_period", exc))
            return result

        # 3. New period
        if reusable is not None:
            result.membership_id = reusable.id
            result.period_reused = True
            log.info("membership.period_reused", membership_id=reusable.id)
        else:
            try:
                result.membership_id = await self._client.create_membership(
                    constituent_id,
                    MembershipCreate(
                        level_id=remote_level_id,
                        level_name=level.name,
                        date_start=start,
                        finish_date=finish,
                        note=f"Started by {actor}",
                    ),
                )
            except MembershipSyncError as exc:
                log.warning("membership.renewal_create_failed", error=str(exc))
                result.errors.append(StepError.from_exception("create_period", exc))

        # 4. Payment
        if price_info is not None:
            try:
                result.payment = await self._payments.record_payment(
                    constituent_id,
                    price_info.order_id,
                    price_info.amount,
                    price_info.paid_on,
                    price_info.kind,
                    price_info.payment_method,
                )
            except MembershipSyncError as exc:
                log.warning(
                    "membership.renewal_payment_failed",
                    order_id=price_info.order_id,
                    error=str(exc),
                )
                result.errors.append(StepError.from_exception("payment", exc))

        # 5. Local account fields
        if result.membership_id is not None:
            try:
                result.account = await self._accounts.update(
                    account.id,
                    AccountUpdate(
                        role=role_for_level(level, account.role),
                        membership_type=level.name,
                        membership_start=start,
                        renewal_date=finish,
                        membership_state=self.evaluate(finish, today),
                    ),
                )
            except MembershipSyncError as exc:
                log.error("membership.renewal_local_update_failed", error=str(exc))
                result.errors.append(StepError.from_exception("local_update", exc))

        log.info(
            "membership.renewal_applied",
            constituent_id=constituent_id,
            membership_id=result.membership_id,
            deactivated=result.deactivated_period_ids,
            errors=len(result.errors),
        )
        return result

    async def deactivate(
        self,
        account: Account,
        reason: str,
        today: date | None = None,
        actor: str = DEFAULT_ACTOR,
    ) -> tuple[Account, list[StepError]]:
        """Move an account to Inactive: close its remote period and downgrade its role.

        Dependents keep their role (they stay linked to the family owner);
        members and family owners drop to ``none``. Cascading to dependents
        is the caller's job.
        """
        today = today or date.today()
        errors: list[StepError] = []

        if account.remote_constituent_id:
            try:
                await self.deactivate_current_periods(account.remote_constituent_id, today, actor)
            except MembershipSyncError as exc:
                logger.warning(
                    "membership.deactivate_remote_failed",
                    account_id=account.id,
                    error=str(exc),
                )
                errors.append(StepError.from_exception("deactivate_period", exc))

        role = account.role
        if role in (AccountRole.MEMBER, AccountRole.FAMILY_OWNER):
            role = AccountRole.NONE
        account = await self._accounts.update(
            account.id,
            AccountUpdate(role=role, membership_state=MembershipState.INACTIVE),
        )
        logger.info(
            "membership.deactivated",
            account_id=account.id,
            reason=reason,
            role=role.value,
            errors=len(errors),
        )
        return account, errors
