"""Event pipeline orchestration.

Entry points for every trigger except the daily sweep:

- handle_order_completed: storefront order paid
- handle_registration: registration form submitted
- handle_status_changed: subscription cancelled or status changed
- handle_renewal: explicit renewal action

Each pipeline step is its own failure domain. Step errors are collected into
the PipelineResult and written to the sync failure log; nothing is raised to
the caller, so a sync problem never blocks or rolls back a purchase.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import structlog

from src.membership_sync.core.errors import MembershipSyncError, StepError
from src.membership_sync.directory.repository import AccountRepository
from src.membership_sync.directory.schemas import (
    Account,
    AccountRole,
    AccountUpdate,
    AlreadyRecorded,
    PaymentMethod,
)
from src.membership_sync.events.failures import SyncFailureRepository
from src.membership_sync.events.schemas import (
    ClassRegistration,
    EventRegistration,
    MembershipPurchase,
    OrderCompletedEvent,
    RegistrationSubmission,
    StatusChangedEvent,
    classify_line_item,
)
from src.membership_sync.membership.family import FamilyPropagator
from src.membership_sync.membership.identity import IdentityResolver
from src.membership_sync.membership.levels import LevelCatalog, LevelKind
from src.membership_sync.membership.payments import PaymentRecorder
from src.membership_sync.membership.state_machine import (
    MembershipStateMachine,
    PriceInfo,
    RenewalResult,
)

logger = structlog.get_logger(__name__)

# Registration payment types that mean "pays by hand" (gets manual reminders)
OFFLINE_PAYMENT_TYPES = frozenset({"offline", "cash", "check", "cheque", "bacs", "invoice"})


@dataclass
class PipelineResult:
    """Outcome of one inbound event."""

    event_type: str
    account_id: str
    order_id: str | None = None
    steps: list[str] = field(default_factory=list)
    payments: dict[str, str] = field(default_factory=dict)
    errors: list[StepError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "account_id": self.account_id,
            "order_id": self.order_id,
            "ok": self.ok,
            "steps": self.steps,
            "payments": self.payments,
            "errors": [error.__dict__ for error in self.errors],
        }


class SyncOrchestrator:
    """Route inbound events through the membership pipeline.

    Args:
        accounts: Local account repository.
        identity: Identity resolver.
        catalog: Level catalog.
        state_machine: Membership state machine.
        payments: Payment recorder.
        propagator: Family propagator.
        failures: Sync failure log.
        cancellation_statuses: Statuses that deactivate an account.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        identity: IdentityResolver,
        catalog: LevelCatalog,
        state_machine: MembershipStateMachine,
        payments: PaymentRecorder,
        propagator: FamilyPropagator,
        failures: SyncFailureRepository,
        cancellation_statuses: set[str],
    ) -> None:
        self._accounts = accounts
        self._identity = identity
        self._catalog = catalog
        self._state_machine = state_machine
        self._payments = payments
        self._propagator = propagator
        self._failures = failures
        self.cancellation_statuses = {status.lower() for status in cancellation_statuses}

        self._routes: dict[type, Callable[..., Awaitable[None]]] = {
            MembershipPurchase: self._handle_membership_line,
            ClassRegistration: self._handle_fee_line,
            EventRegistration: self._handle_fee_line,
        }

    # ── Shared helpers ──────────────────────────────────────────────────────

    async def _run_step(
        self,
        result: PipelineResult,
        step: str,
        action: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run one step in its own error boundary. Returns None on failure."""
        try:
            value = await action()
        except MembershipSyncError as exc:
            logger.warning(
                "orchestrator.step_failed",
                event_type=result.event_type,
                account_id=result.account_id,
                step=step,
                error=str(exc),
            )
            result.errors.append(StepError.from_exception(step, exc))
            return None
        except Exception as exc:
            logger.exception(
                "orchestrator.step_crashed",
                event_type=result.event_type,
                account_id=result.account_id,
                step=step,
            )
            result.errors.append(StepError.from_exception(step, exc))
            return None
        result.steps.append(step)
        return value

    async def _load_account(self, result: PipelineResult) -> Account | None:
        account = await self._run_step(
            result, "load_account", lambda: self._accounts.require(result.account_id)
        )
        return account

    async def _finish(self, result: PipelineResult) -> PipelineResult:
        if result.errors:
            try:
                await self._failures.record(
                    result.event_type,
                    result.errors,
                    account_id=result.account_id,
                    order_id=result.order_id,
                )
            except Exception:
                logger.exception(
                    "orchestrator.failure_log_unavailable",
                    event_type=result.event_type,
                    account_id=result.account_id,
                )
        logger.info(
            "orchestrator.event_complete",
            event_type=result.event_type,
            account_id=result.account_id,
            order_id=result.order_id,
            steps=result.steps,
            errors=len(result.errors),
        )
        return result

    def _absorb_renewal(self, result: PipelineResult, renewal: RenewalResult, key: str) -> None:
        result.errors.extend(renewal.errors)
        if renewal.membership_id:
            result.steps.append("renewal")
        if isinstance(renewal.payment, AlreadyRecorded):
            result.payments[key] = renewal.payment.gift_id
        elif isinstance(renewal.payment, str):
            result.payments[key] = renewal.payment

    async def _refresh_dependents(
        self, result: PipelineResult, owner: Account, today: date
    ) -> None:
        """Carry a family owner's new period over to the dependents already linked."""
        if owner.role != AccountRole.FAMILY_OWNER:
            return
        for dependent in await self._accounts.list_dependents(owner.id):
            cascade = await self._run_step(
                result,
                f"cascade_activation:{dependent.id}",
                lambda dep=dependent: self._propagator.cascade_activation(owner, dep.id, today),
            )
            if cascade is not None:
                result.errors.extend(cascade.errors)

    # ── Order completed ─────────────────────────────────────────────────────

    async def handle_order_completed(
        self, event: OrderCompletedEvent, today: date | None = None
    ) -> PipelineResult:
        """Process every tracked line item of a paid order."""
        today = today or date.today()
        result = PipelineResult(
            event_type="order_completed",
            account_id=event.account_id,
            order_id=event.local_order_id,
        )
        account = await self._load_account(result)
        if account is None:
            return await self._finish(result)

        lines = [line for line in map(classify_line_item, event.line_items) if line is not None]
        if not lines:
            logger.info("orchestrator.no_tracked_items", order_id=event.local_order_id)
            return await self._finish(result)

        # An unlinked purchaser may never have filled in a registration form
        if not account.remote_constituent_id and event.billing_fields:
            profile = account.profile.filled_from(event.billing_profile())
            if profile != account.profile:
                updated = await self._run_step(
                    result,
                    "billing_profile",
                    lambda: self._accounts.update_profile(
                        account.id, "", "" if account.email else profile.email, profile
                    ),
                )
                account = updated or account

        for line in lines:
            key = event.local_order_id
            if len(lines) > 1:
                key = f"{event.local_order_id}-{line.item.product_id}"
            handler = self._routes[type(line)]
            await self._run_step(
                result,
                f"route:{line.kind}",
                lambda: handler(result, account, event, line, key, today),
            )
            account = await self._accounts.get(account.id) or account

        return await self._finish(result)

    async def _handle_membership_line(
        self,
        result: PipelineResult,
        account: Account,
        event: OrderCompletedEvent,
        line: MembershipPurchase,
        key: str,
        today: date,
    ) -> None:
        existing = await self._run_step(result, f"lookup:{key}", lambda: self._payments.lookup(key))
        if existing is not None:
            logger.info("orchestrator.order_already_processed", order_id=key, gift_id=existing.gift_id)
            result.payments[key] = existing.gift_id
            return
        if f"lookup:{key}" not in result.steps:
            return

        paid_on = event.completed_on or today
        renewal = await self._state_machine.apply_renewal(
            account,
            line.level_name,
            paid_on,
            PriceInfo(
                order_id=key,
                amount=line.item.total,
                paid_on=paid_on,
                kind=line.payment_kind,
                payment_method=event.payment_method,
            ),
            today=today,
        )
        self._absorb_renewal(result, renewal, key)
        if renewal.membership_id is None:
            return

        level = await self._run_step(
            result, "level", lambda: self._catalog.get_level(line.level_name)
        )
        if level is not None and level.kind == LevelKind.FAMILY:
            slots = (line.item.family_slots or level.family_slots) * max(line.item.quantity, 1)
            if slots:
                await self._run_step(
                    result,
                    "grant_slots",
                    lambda: self._propagator.grant_slots(account.id, slots),
                )
        await self._refresh_dependents(result, renewal.account, today)

    async def _handle_fee_line(
        self,
        result: PipelineResult,
        account: Account,
        event: OrderCompletedEvent,
        line: ClassRegistration | EventRegistration,
        key: str,
        today: date,
    ) -> None:
        linked = await self._run_step(result, "identity", lambda: self._identity.link(account))
        if linked is None:
            return
        _, resolution = linked
        payment = await self._run_step(
            result,
            f"payment:{line.kind}",
            lambda: self._payments.record_payment(
                resolution.constituent_id,
                key,
                line.item.total,
                event.completed_on or today,
                line.payment_kind,
                event.payment_method,
            ),
        )
        if isinstance(payment, AlreadyRecorded):
            result.payments[key] = payment.gift_id
        elif isinstance(payment, str):
            result.payments[key] = payment

    # ── Registration form ───────────────────────────────────────────────────

    async def handle_registration(
        self, submission: RegistrationSubmission, today: date | None = None
    ) -> PipelineResult:
        """Link the registrant remotely; join a family or start a membership."""
        today = today or date.today()
        result = PipelineResult(event_type="registration", account_id=submission.account_id)
        account = await self._load_account(result)
        if account is None:
            return await self._finish(result)

        updated = await self._run_step(
            result,
            "update_profile",
            lambda: self._accounts.update_profile(
                account.id,
                submission.display_name,
                submission.email,
                submission.profile(),
            ),
        )
        account = updated or account

        if submission.payment_type and submission.payment_type.lower() in OFFLINE_PAYMENT_TYPES:
            offline = await self._run_step(
                result,
                "payment_method",
                lambda: self._accounts.update(
                    account.id, AccountUpdate(payment_method=PaymentMethod.OFFLINE)
                ),
            )
            account = offline or account

        if submission.parent_account_id:
            primary = await self._run_step(
                result,
                "load_primary",
                lambda: self._accounts.require(submission.parent_account_id),
            )
            if primary is None:
                return await self._finish(result)
            cascade = await self._run_step(
                result,
                "cascade_activation",
                lambda: self._propagator.cascade_activation(primary, account.id, today),
            )
            if cascade is not None:
                result.errors.extend(cascade.errors)
            return await self._finish(result)

        if submission.membership_level:
            renewal = await self._run_step(
                result,
                "apply_renewal",
                lambda: self._state_machine.apply_renewal(
                    account, submission.membership_level, today, today=today
                ),
            )
            if renewal is not None:
                self._absorb_renewal(result, renewal, account.id)
            return await self._finish(result)

        await self._run_step(result, "identity", lambda: self._identity.link(account))
        return await self._finish(result)

    # ── Status changed ──────────────────────────────────────────────────────

    async def handle_status_changed(
        self, event: StatusChangedEvent, today: date | None = None
    ) -> PipelineResult:
        """Deactivate on cancellation statuses; other statuses are ignored."""
        today = today or date.today()
        result = PipelineResult(event_type="status_changed", account_id=event.account_id)
        status = event.new_status.strip().lower()
        if status not in self.cancellation_statuses:
            logger.info(
                "orchestrator.status_ignored",
                account_id=event.account_id,
                status=status,
            )
            return await self._finish(result)

        account = await self._load_account(result)
        if account is None:
            return await self._finish(result)

        deactivated = await self._run_step(
            result,
            "deactivate",
            lambda: self._state_machine.deactivate(account, reason=f"status:{status}", today=today),
        )
        if deactivated is not None:
            result.errors.extend(deactivated[1])
        if account.role == AccountRole.FAMILY_OWNER:
            cascade_errors = await self._run_step(
                result,
                "cascade_deactivation",
                lambda: self._propagator.cascade_deactivation(account, today),
            )
            result.errors.extend(cascade_errors or [])
        return await self._finish(result)

    # ── Explicit renewal ────────────────────────────────────────────────────

    async def handle_renewal(
        self,
        account_id: str,
        level_name: str,
        start: date,
        price_info: PriceInfo | None = None,
        today: date | None = None,
    ) -> PipelineResult:
        """Operator- or form-initiated renewal of one account."""
        today = today or date.today()
        result = PipelineResult(
            event_type="renewal",
            account_id=account_id,
            order_id=price_info.order_id if price_info else None,
        )
        account = await self._load_account(result)
        if account is None:
            return await self._finish(result)

        renewal = await self._run_step(
            result,
            "apply_renewal",
            lambda: self._state_machine.apply_renewal(
                account, level_name, start, price_info, today=today
            ),
        )
        if renewal is None:
            return await self._finish(result)
        self._absorb_renewal(result, renewal, price_info.order_id if price_info else account.id)
        if renewal.membership_id is not None:
            await self._run_step(
                result,
                "refresh_dependents",
                lambda: self._refresh_dependents(result, renewal.account, today),
            )
        return await self._finish(result)


__all__ = ["PipelineResult", "SyncOrchestrator"]
