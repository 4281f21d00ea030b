"""Tests for SyncClient: error mapping, bounded retries and cached reference data."""

from __future__ import annotations

import httpx
import pytest

from src.membership_sync.core.errors import PermanentSyncFailure, TransientSyncFailure
from src.membership_sync.crm.cache import ReferenceCache
from src.membership_sync.crm.client import SyncClient, parse_retry_after
from src.membership_sync.crm.rate_limiter import SlidingWindowRateLimiter
from tests.fakes import CRM_URL, FakeCRM


class SleepRecorder:
    def __init__(self) -> None:
        self.sleeps: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.sleeps.append(seconds)


def _client(
    transport: httpx.AsyncBaseTransport,
    sleep: SleepRecorder,
    max_attempts: int = 3,
) -> SyncClient:
    return SyncClient(
        base_url=CRM_URL,
        api_key="test-key",
        rate_limiter=SlidingWindowRateLimiter(max_calls=1000),
        cache=ReferenceCache(),
        max_attempts=max_attempts,
        backoff_min=1.0,
        backoff_max=4.0,
        transport=transport,
        sleep=sleep,
    )


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


# ── Error mapping and retries ─────────────────────────────────────────────


class TestRetries:
    @pytest.mark.asyncio
    async def test_server_error_is_retried_then_succeeds(self, fake_crm: FakeCRM, sleep):
        fake_crm.failures = [httpx.Response(503)]
        async with _client(fake_crm.transport(), sleep) as client:
            funds = await client.list_funds()
        assert [fund.name for fund in funds] == ["Membership", "Education", "Events"]
        assert fake_crm.count("GET", "funds") == 2
        assert sleep.sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_retry_after_header_is_honored(self, fake_crm: FakeCRM, sleep):
        fake_crm.failures = [httpx.Response(429, headers={"Retry-After": "7"})]
        async with _client(fake_crm.transport(), sleep) as client:
            await client.list_campaigns()
        assert sleep.sleeps == [7.0]

    @pytest.mark.asyncio
    async def test_transient_failure_reraised_after_last_attempt(self, fake_crm: FakeCRM, sleep):
        fake_crm.failures = [httpx.Response(502), httpx.Response(502), httpx.Response(502)]
        async with _client(fake_crm.transport(), sleep) as client:
            with pytest.raises(TransientSyncFailure) as exc_info:
                await client.list_funds()
        assert exc_info.value.status_code == 502
        assert fake_crm.count("GET", "funds") == 3
        assert len(sleep.sleeps) == 2

    @pytest.mark.asyncio
    async def test_client_error_is_permanent_and_not_retried(self, fake_crm: FakeCRM, sleep):
        fake_crm.failures = [httpx.Response(400, json={"error": "bad field"})]
        async with _client(fake_crm.transport(), sleep) as client:
            with pytest.raises(PermanentSyncFailure) as exc_info:
                await client.list_funds()
        assert exc_info.value.status_code == 400
        assert fake_crm.count("GET", "funds") == 1
        assert sleep.sleeps == []

    @pytest.mark.asyncio
    async def test_malformed_json_is_permanent(self, fake_crm: FakeCRM, sleep):
        fake_crm.failures = [httpx.Response(200, content=b"<html>oops</html>")]
        async with _client(fake_crm.transport(), sleep) as client:
            with pytest.raises(PermanentSyncFailure):
                await client.list_funds()

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, sleep):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(httpx.MockTransport(refuse), sleep, max_attempts=2) as client:
            with pytest.raises(TransientSyncFailure) as exc_info:
                await client.list_funds()
        assert exc_info.value.status_code == 0
        assert len(sleep.sleeps) == 1

    @pytest.mark.asyncio
    async def test_missing_constituent_is_none(self, fake_crm: FakeCRM, sleep):
        async with _client(fake_crm.transport(), sleep) as client:
            assert await client.get_constituent("999") is None

    @pytest.mark.asyncio
    async def test_bearer_token_is_sent(self, sleep):
        seen: list[str] = []

        def capture(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, json={"items": []})

        async with _client(httpx.MockTransport(capture), sleep) as client:
            await client.list_funds()
        assert seen == ["Bearer test-key"]


# ── Endpoints ─────────────────────────────────────────────────────────────


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_search_flattens_email(self, fake_crm: FakeCRM, sleep):
        constituent_id = fake_crm.add_constituent("Ada", "Lovelace", "ada@example.org")
        async with _client(fake_crm.transport(), sleep) as client:
            matches = await client.search_constituents(email="ada@example.org")
        assert len(matches) == 1
        assert matches[0].id == constituent_id
        assert matches[0].email == "ada@example.org"
        assert matches[0].full_name == "Ada Lovelace"

    @pytest.mark.asyncio
    async def test_search_without_criteria_makes_no_call(self, fake_crm: FakeCRM, sleep):
        async with _client(fake_crm.transport(), sleep) as client:
            assert await client.search_constituents() == []
        assert fake_crm.calls == []

    @pytest.mark.asyncio
    async def test_reference_lists_are_cached_until_invalidated(self, fake_crm: FakeCRM, sleep):
        async with _client(fake_crm.transport(), sleep) as client:
            await client.list_funds()
            await client.list_funds()
            assert fake_crm.count("GET", "funds") == 1
            assert client.invalidate_reference_cache("funds") == 1
            await client.list_funds()
            assert fake_crm.count("GET", "funds") == 2

    @pytest.mark.asyncio
    async def test_unknown_reference_list_rejected(self, fake_crm: FakeCRM, sleep):
        async with _client(fake_crm.transport(), sleep) as client:
            with pytest.raises(ValueError):
                await client.list_reference("donors")


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("5") == 5.0

    def test_missing_or_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None

    def test_past_http_date_is_zero(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
