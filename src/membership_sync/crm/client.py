"""Rate-limited, retrying async client for the remote CRM.

Every outbound call takes one slot from the shared SlidingWindowRateLimiter
and runs under a tenacity AsyncRetrying loop:

- timeout, transport error, 5xx, 429 -> TransientSyncFailure, retried with
  exponential backoff (or the remote Retry-After when supplied) up to
  CRM_MAX_ATTEMPTS, then re-raised
- any other 4xx, malformed JSON -> PermanentSyncFailure, never retried

Reference lists (funds, membership levels, campaigns, gift types, gift
categories, payment types) are read through the process-wide ReferenceCache.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.membership_sync.config import Settings
from src.membership_sync.core.errors import PermanentSyncFailure, TransientSyncFailure
from src.membership_sync.crm.cache import ReferenceCache
from src.membership_sync.crm.rate_limiter import SlidingWindowRateLimiter
from src.membership_sync.crm.schemas import (
    ConstituentCreate,
    GiftCreate,
    MembershipCreate,
    MembershipPeriod,
    ReferenceItem,
    RemoteConstituent,
    extract_id,
    extract_items,
    parse_list,
)

logger = structlog.get_logger(__name__)

REFERENCE_CACHE_PREFIX = "crm:reference:"

# Cache name -> list endpoint
REFERENCE_ENDPOINTS: dict[str, str] = {
    "funds": "funds",
    "membership_levels": "membership_levels",
    "campaigns": "campaigns",
    "gift_types": "gift_types",
    "gift_categories": "gift_categories",
    "payment_types": "payment_types",
}


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After as seconds. Accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class SyncClient:
    """Async client for the remote CRM REST API.

    Args:
        base_url: CRM API root (e.g. ``https://api.example.org/api/v1``).
        api_key: Bearer token.
        rate_limiter: Shared call budget.
        cache: Shared reference-data cache.
        timeout: Fixed per-request timeout in seconds.
        max_attempts: Bounded attempts for transient failures.
        backoff_min: Lower bound of exponential backoff.
        backoff_max: Upper bound of exponential backoff.
        transport: Optional httpx transport (tests use httpx.MockTransport).
        sleep: Async sleep used between retries (injectable for tests).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        rate_limiter: SlidingWindowRateLimiter,
        cache: ReferenceCache,
        timeout: float = 30.0,
        max_attempts: int = 5,
        backoff_min: float = 1.0,
        backoff_max: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.cache = cache
        self._max_attempts = max_attempts
        self._backoff = wait_exponential(multiplier=1, min=backoff_min, max=backoff_max)
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        rate_limiter: SlidingWindowRateLimiter,
        cache: ReferenceCache,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> SyncClient:
        return cls(
            base_url=settings.CRM_API_URL,
            api_key=settings.CRM_API_KEY,
            rate_limiter=rate_limiter,
            cache=cache,
            timeout=settings.CRM_REQUEST_TIMEOUT,
            max_attempts=settings.CRM_MAX_ATTEMPTS,
            backoff_min=settings.CRM_BACKOFF_MIN,
            backoff_max=settings.CRM_BACKOFF_MAX,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> SyncClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ── Transport ───────────────────────────────────────────────────────────

    def _wait(self, retry_state: RetryCallState) -> float:
        """Honor the remote Retry-After when given, otherwise back off exponentially."""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, TransientSyncFailure) and exc.retry_after is not None:
            return exc.retry_after
        return self._backoff(retry_state)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "sync_client.request_retry",
            attempt=retry_state.attempt_number,
            status_code=getattr(exc, "status_code", None),
            error=str(exc),
            wait=round(retry_state.upcoming_sleep, 2),
        )

    async def _send(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> Any:
        """One attempt: take a budget slot, send, and classify the outcome."""
        await self.rate_limiter.acquire()
        try:
            response = await self._http.request(method, path, params=params, json=json)
        except httpx.TimeoutException as exc:
            raise TransientSyncFailure(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientSyncFailure(f"{method} {path} transport error: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientSyncFailure(
                f"{method} {path} returned {status}",
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 400:
            raise PermanentSyncFailure(
                f"{method} {path} returned {status}: {response.text[:200]}",
                status_code=status,
            )
        if status == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentSyncFailure(
                f"{method} {path} returned malformed JSON", status_code=status
            ) from exc

    async def request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> Any:
        """Send a request with bounded retries on transient failures.

        Raises:
            TransientSyncFailure: After the last attempt failed transiently.
            PermanentSyncFailure: Immediately on a non-retryable failure.
        """
        retry_kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep

        result: Any = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(TransientSyncFailure),
            before_sleep=self._log_retry,
            reraise=True,
            **retry_kwargs,
        ):
            with attempt:
                result = await self._send(method, path, params=params, json=json)
        return result

    # ── Constituents ────────────────────────────────────────────────────────

    async def search_constituents(
        self, email: str | None = None, name: str | None = None
    ) -> list[RemoteConstituent]:
        """Search by email or by full name. An empty list is a valid outcome."""
        params: dict[str, str] = {}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        if not params:
            return []
        data = await self.request("GET", "constituents/search", params=params)
        try:
            matches = [RemoteConstituent.from_api(row) for row in extract_items(data)]
        except ValueError as exc:
            raise PermanentSyncFailure(f"Malformed constituent search result: {exc}") from exc
        logger.debug("sync_client.search", params=sorted(params), matches=len(matches))
        return matches

    async def get_constituent(self, constituent_id: str) -> RemoteConstituent | None:
        try:
            data = await self.request("GET", f"constituents/{constituent_id}")
        except PermanentSyncFailure as exc:
            if exc.status_code == 404:
                return None
            raise
        return RemoteConstituent.from_api(data or {})

    async def create_constituent(self, payload: ConstituentCreate) -> str:
        data = await self.request("POST", "constituents", json=payload.to_api())
        constituent_id = extract_id(data)
        logger.info("sync_client.constituent_created", constituent_id=constituent_id)
        return constituent_id

    async def update_constituent(self, constituent_id: str, fields: dict) -> None:
        await self.request("PATCH", f"constituents/{constituent_id}", json=fields)

    # ── Memberships ─────────────────────────────────────────────────────────

    async def list_memberships(self, constituent_id: str) -> list[MembershipPeriod]:
        data = await self.request("GET", f"constituents/{constituent_id}/memberships")
        return parse_list(MembershipPeriod, data)

    async def create_membership(self, constituent_id: str, period: MembershipCreate) -> str:
        data = await self.request(
            "POST", f"constituents/{constituent_id}/memberships", json=period.to_api()
        )
        membership_id = extract_id(data)
        logger.info(
            "sync_client.membership_created",
            constituent_id=constituent_id,
            membership_id=membership_id,
            level=period.level_name,
        )
        return membership_id

    async def update_membership(self, constituent_id: str, period: MembershipPeriod) -> None:
        """Replace an existing period by id."""
        await self.request(
            "PUT",
            f"constituents/{constituent_id}/memberships/{period.id}",
            json=period.to_api(),
        )

    # ── Gifts ───────────────────────────────────────────────────────────────

    async def create_gift(self, constituent_id: str, gift: GiftCreate) -> str:
        data = await self.request(
            "POST", f"constituents/{constituent_id}/gifts", json=gift.to_api()
        )
        gift_id = extract_id(data)
        logger.info(
            "sync_client.gift_created",
            constituent_id=constituent_id,
            gift_id=gift_id,
            external_id=gift.external_id,
        )
        return gift_id

    # ── Reference data (cached) ─────────────────────────────────────────────

    async def list_reference(self, name: str) -> list[ReferenceItem]:
        """A cached reference list by name (see REFERENCE_ENDPOINTS)."""
        if name not in REFERENCE_ENDPOINTS:
            raise ValueError(f"Unknown reference list: {name}")

        async def _load() -> list[ReferenceItem]:
            data = await self.request("GET", REFERENCE_ENDPOINTS[name])
            return parse_list(ReferenceItem, data)

        return await self.cache.remember(f"{REFERENCE_CACHE_PREFIX}{name}", _load)

    async def list_funds(self) -> list[ReferenceItem]:
        return await self.list_reference("funds")

    async def list_membership_levels(self) -> list[ReferenceItem]:
        return await self.list_reference("membership_levels")

    async def list_campaigns(self) -> list[ReferenceItem]:
        return await self.list_reference("campaigns")

    async def list_payment_types(self) -> list[ReferenceItem]:
        return await self.list_reference("payment_types")

    def invalidate_reference_cache(self, name: str | None = None) -> int:
        """Drop one cached reference list, or all of them."""
        if name is None:
            return self.cache.invalidate_prefix(REFERENCE_CACHE_PREFIX)
        return int(self.cache.invalidate(f"{REFERENCE_CACHE_PREFIX}{name}"))
