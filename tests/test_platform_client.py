import asyncio
from datetime import timedelta

import pytest

from settlement.exceptions import (
    AuthorizationError,
    PlatformAPIError,
    RateLimitExceeded,
    RetryExhaustedError,
    UnsupportedPlatformError,
)
from settlement.integrations.base import raise_for_platform_status
from settlement.integrations.platforms import RateLimitedPlatformClient, resolve_platform
from settlement.integrations.tiktok import TikTokIntegration
from settlement.models.db.enums import Platform
from settlement.utils.ratelimiter import PlatformRateLimiter

from conftest import BASE_TIME

METRICS = {"view_count": 1200, "like_count": 80, "comment_count": 4, "share_count": 1, "raw": {"id": "vid_1"}}


class ScriptedIntegration:
    """Raises the scripted errors in order, then returns METRICS."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def fetch_content_metrics(self, access_token, content_id):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return dict(METRICS)


def server_error():
    return PlatformAPIError("tiktok", "server error 500", status_code=500, retryable=True)


@pytest.fixture()
def limiter(store, clock):
    return PlatformRateLimiter(
        store,
        limits={"tiktok": {"limit": 3, "window_seconds": 3600}, "instagram": {"limit": 200, "window_seconds": 3600}},
        clock=clock.epoch,
    )


def make_client(limiter, sleeps, integration, **kwargs):
    return RateLimitedPlatformClient(
        limiter,
        integrations={Platform.TIKTOK: integration},
        sleep=sleeps,
        **kwargs,
    )


def test_successful_fetch_counts_one_request(limiter, sleeps):
    client = make_client(limiter, sleeps, ScriptedIntegration())

    async def scenario():
        raw = await client.fetch_metrics("TikTok", "token", "vid_1", "user_1")
        status = await client.rate_limit_status(Platform.TIKTOK, "user_1")
        return raw, status

    raw, status = asyncio.run(scenario())
    assert raw.platform == Platform.TIKTOK
    assert raw.view_count == 1200
    assert raw.raw_response == {"id": "vid_1"}
    assert status.count == 1
    assert status.remaining == 2
    assert sleeps.calls == []


def test_retryable_errors_back_off_exponentially(limiter, sleeps):
    integration = ScriptedIntegration(server_error(), server_error())
    client = make_client(limiter, sleeps, integration)

    raw = asyncio.run(client.fetch_metrics(Platform.TIKTOK, "token", "vid_1", "user_1"))
    assert raw.like_count == 80
    assert integration.calls == 3
    assert sleeps.calls == [1.0, 2.0]
    status = asyncio.run(client.rate_limit_status(Platform.TIKTOK, "user_1"))
    assert status.count == 3


def test_retry_after_header_extends_the_wait(limiter, sleeps):
    throttled = PlatformAPIError("tiktok", "rate limited upstream", status_code=429, retryable=True, retry_after=7)
    client = make_client(limiter, sleeps, ScriptedIntegration(throttled))
    asyncio.run(client.fetch_metrics(Platform.TIKTOK, "token", "vid_1", "user_1"))
    assert sleeps.calls == [7.0]


def test_retries_exhausted_after_max_retries(limiter, sleeps):
    integration = ScriptedIntegration(*[server_error() for _ in range(3)])
    client = make_client(limiter, sleeps, integration, max_retries=2)

    with pytest.raises(RetryExhaustedError) as exc_info:
        asyncio.run(client.fetch_metrics(Platform.TIKTOK, "token", "vid_1", "user_1"))
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_error, PlatformAPIError)
    assert sleeps.calls == [1.0, 2.0]


def test_non_retryable_and_auth_errors_propagate_immediately(limiter, sleeps):
    rejected = PlatformAPIError("tiktok", "request rejected 404", status_code=404, retryable=False)
    client = make_client(limiter, sleeps, ScriptedIntegration(rejected))
    with pytest.raises(PlatformAPIError):
        asyncio.run(client.fetch_metrics(Platform.TIKTOK, "token", "vid_1", "user_1"))

    client = make_client(limiter, sleeps, ScriptedIntegration(AuthorizationError("revoked")))
    with pytest.raises(AuthorizationError):
        asyncio.run(client.fetch_metrics(Platform.TIKTOK, "token", "vid_1", "user_1"))
    assert sleeps.calls == []


def test_rate_limit_rejects_without_consuming_quota(limiter, sleeps, clock):
    integration = ScriptedIntegration()
    client = make_client(limiter, sleeps, integration)

    async def scenario():
        for _ in range(3):
            await client.fetch_metrics(Platform.TIKTOK, "token", "vid_1", "user_1")
        with pytest.raises(RateLimitExceeded) as exc_info:
            await client.fetch_metrics(Platform.TIKTOK, "token", "vid_1", "user_1")
        status = await client.rate_limit_status(Platform.TIKTOK, "user_1")
        other_user = await client.rate_limit_status(Platform.TIKTOK, "user_2")
        return exc_info.value, status, other_user

    error, status, other_user = asyncio.run(scenario())
    assert integration.calls == 3
    assert error.reset_at == BASE_TIME + timedelta(hours=1)
    assert error.limit == 3
    assert status.count == 3
    assert status.remaining == 0
    assert other_user.remaining == 3


def test_window_rollover_restores_quota(limiter, sleeps, clock):
    client = make_client(limiter, sleeps, ScriptedIntegration())

    async def scenario():
        for _ in range(3):
            await client.fetch_metrics(Platform.TIKTOK, "token", "vid_1", "user_1")
        clock.advance(3600)
        await client.fetch_metrics(Platform.TIKTOK, "token", "vid_1", "user_1")
        return await client.rate_limit_status(Platform.TIKTOK, "user_1")

    status = asyncio.run(scenario())
    assert status.count == 1


def test_counter_key_is_scoped_to_the_hourly_window(limiter, sleeps, store, clock):
    client = make_client(limiter, sleeps, ScriptedIntegration())
    window_start = int(BASE_TIME.timestamp())

    async def scenario():
        await client.fetch_metrics(Platform.TIKTOK, "token", "vid_1", "user_1")
        clock.advance(3600)
        await client.fetch_metrics(Platform.TIKTOK, "token", "vid_1", "user_1")
        return (
            await store.get(f"tiktok_rate_limit:user_1:{window_start}"),
            await store.get(f"tiktok_rate_limit:user_1:{window_start + 3600}"),
            await store.get("tiktok_rate_limit:user_1"),
        )

    # the first window's counter expired with its window
    assert asyncio.run(scenario()) == (None, "1", None)


def test_unknown_platform_is_rejected(limiter, sleeps):
    client = make_client(limiter, sleeps, ScriptedIntegration())
    with pytest.raises(UnsupportedPlatformError):
        resolve_platform("myspace")
    with pytest.raises(UnsupportedPlatformError):
        asyncio.run(client.fetch_metrics(Platform.INSTAGRAM, "token", "post_1", "user_1"))


@pytest.mark.parametrize("status, error, retryable", [
    (401, AuthorizationError, None),
    (403, AuthorizationError, None),
    (429, PlatformAPIError, True),
    (503, PlatformAPIError, True),
    (400, PlatformAPIError, False),
])
def test_status_classification(status, error, retryable):
    with pytest.raises(error) as exc_info:
        raise_for_platform_status("tiktok", status, {"Retry-After": "12"}, {"error": "nope"})
    if retryable is not None:
        assert exc_info.value.retryable is retryable
    if status == 429:
        assert exc_info.value.retry_after == 12.0


def test_tiktok_error_codes_in_ok_payload():
    integration = TikTokIntegration(base_url="https://example.invalid")
    with pytest.raises(AuthorizationError):
        integration._check_body(200, {"error": {"code": "access_token_invalid", "message": "expired"}})
    with pytest.raises(PlatformAPIError) as exc_info:
        integration._check_body(200, {"error": {"code": "internal_error"}})
    assert exc_info.value.retryable
    integration._check_body(200, {"error": {"code": "ok"}})
