"""Service wiring for the membership sync engine.

``build_engine`` assembles every component from Settings and a session
factory. The FastAPI lifespan stores the result on ``app.state.engine``;
tests call it directly with an in-memory database, a mock CRM transport and
a recording mailer.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from src.membership_sync.config import Settings
from src.membership_sync.core.database import SessionFactory
from src.membership_sync.crm.cache import ReferenceCache
from src.membership_sync.crm.client import SyncClient
from src.membership_sync.crm.rate_limiter import SlidingWindowRateLimiter
from src.membership_sync.directory.repository import (
    AccountRepository,
    FamilySlotRepository,
    NotificationMarkerRepository,
    PaymentRecordRepository,
)
from src.membership_sync.directory.settings_store import (
    MEMBERSHIP_LEVELS_KEY,
    SettingsStore,
)
from src.membership_sync.events.failures import SyncFailureRepository
from src.membership_sync.events.orchestrator import SyncOrchestrator
from src.membership_sync.mail.base import Mailer
from src.membership_sync.mail.gmail import GmailMailer
from src.membership_sync.mail.suppression import EmailSuppression
from src.membership_sync.membership.family import FamilyPropagator
from src.membership_sync.membership.identity import IdentityResolver
from src.membership_sync.membership.levels import LevelCatalog
from src.membership_sync.membership.notifications import NotificationDispatcher
from src.membership_sync.membership.payments import PaymentRecorder
from src.membership_sync.membership.scheduler import SweepScheduler
from src.membership_sync.membership.state_machine import MembershipStateMachine
from src.membership_sync.membership.sweeper import RenewalSweeper

logger = structlog.get_logger(__name__)


@dataclass
class SyncEngine:
    """Every long-lived component, built once per process."""

    settings: Settings
    rate_limiter: SlidingWindowRateLimiter
    cache: ReferenceCache
    client: SyncClient
    accounts: AccountRepository
    payment_records: PaymentRecordRepository
    slots: FamilySlotRepository
    markers: NotificationMarkerRepository
    settings_store: SettingsStore
    catalog: LevelCatalog
    identity: IdentityResolver
    payments: PaymentRecorder
    state_machine: MembershipStateMachine
    propagator: FamilyPropagator
    suppression: EmailSuppression
    dispatcher: NotificationDispatcher
    sweeper: RenewalSweeper
    failures: SyncFailureRepository
    orchestrator: SyncOrchestrator
    scheduler: SweepScheduler

    async def aclose(self) -> None:
        self.scheduler.stop()
        await self.client.aclose()


def build_engine(
    settings: Settings,
    session_factory: SessionFactory,
    transport: httpx.AsyncBaseTransport | None = None,
    mailer: Mailer | None = None,
) -> SyncEngine:
    """Wire the engine.

    Args:
        settings: Application settings.
        session_factory: Session factory for the local directory database.
        transport: Optional httpx transport for the CRM client.
        mailer: Outbound mailer; defaults to the delegated Gmail mailbox.
    """
    rate_limiter = SlidingWindowRateLimiter(
        max_calls=settings.CRM_RATE_LIMIT_CALLS,
        window_seconds=settings.CRM_RATE_LIMIT_WINDOW_SECONDS,
        max_wait=settings.CRM_RATE_LIMIT_MAX_WAIT,
        min_interval=settings.CRM_MIN_REQUEST_INTERVAL,
    )
    cache = ReferenceCache(default_ttl=settings.REFERENCE_CACHE_TTL_SECONDS)
    client = SyncClient.from_settings(settings, rate_limiter, cache, transport=transport)

    accounts = AccountRepository(session_factory)
    payment_records = PaymentRecordRepository(session_factory)
    slots = FamilySlotRepository(session_factory)
    markers = NotificationMarkerRepository(session_factory)
    failures = SyncFailureRepository(session_factory)

    settings_store = SettingsStore(session_factory, cache)

    def _on_setting_written(key: str) -> None:
        # Level edits may point at different remote levels
        if key == MEMBERSHIP_LEVELS_KEY:
            client.invalidate_reference_cache("membership_levels")

    settings_store.on_write(_on_setting_written)

    catalog = LevelCatalog(settings_store, client)
    identity = IdentityResolver(client, accounts)
    payments = PaymentRecorder(client, payment_records, catalog)
    state_machine = MembershipStateMachine(
        client,
        accounts,
        identity,
        catalog,
        payments,
        lookahead_days=settings.RENEWAL_LOOKAHEAD_DAYS,
        grace_days=settings.GRACE_PERIOD_DAYS,
    )
    propagator = FamilyPropagator(accounts, slots, state_machine)

    if mailer is None:
        if not settings.GOOGLE_SERVICE_ACCOUNT_FILE:
            logger.warning("engine.gmail_not_configured")
        mailer = GmailMailer(
            service_account_file=settings.GOOGLE_SERVICE_ACCOUNT_FILE,
            sender_email=settings.GOOGLE_DELEGATED_USER_EMAIL,
            sender_name=settings.ORGANIZATION_NAME,
        )
    suppression = EmailSuppression.from_settings(settings)
    dispatcher = NotificationDispatcher(mailer, suppression, settings.ORGANIZATION_NAME)

    sweeper = RenewalSweeper(
        accounts,
        markers,
        state_machine,
        propagator,
        dispatcher,
        thresholds=settings.notification_thresholds(),
        batch_size=settings.SWEEP_BATCH_SIZE,
    )
    orchestrator = SyncOrchestrator(
        accounts,
        identity,
        catalog,
        state_machine,
        payments,
        propagator,
        failures,
        cancellation_statuses=settings.cancellation_statuses(),
    )
    scheduler = SweepScheduler(sweeper, hour=settings.SWEEP_HOUR, minute=settings.SWEEP_MINUTE)

    logger.info(
        "engine.built",
        crm_url=settings.CRM_API_URL,
        environment=settings.ENVIRONMENT.value,
        email_suppression=suppression.is_active,
    )
    return SyncEngine(
        settings=settings,
        rate_limiter=rate_limiter,
        cache=cache,
        client=client,
        accounts=accounts,
        payment_records=payment_records,
        slots=slots,
        markers=markers,
        settings_store=settings_store,
        catalog=catalog,
        identity=identity,
        payments=payments,
        state_machine=state_machine,
        propagator=propagator,
        suppression=suppression,
        dispatcher=dispatcher,
        sweeper=sweeper,
        failures=failures,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )
