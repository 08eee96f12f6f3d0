"""Rate-limited, retrying front door to the platform adapters.

Every metrics read goes through ``RateLimitedPlatformClient.fetch_metrics``:

1. ``PlatformRateLimiter.acquire`` counts the request against the user's
   hourly window, or raises ``RateLimitExceeded`` without counting it.
2. The adapter performs the HTTP call.
3. Retryable failures (5xx, 429, network) back off
   ``min(max_backoff, base * multiplier ** (retry - 1))`` and try again, up to
   ``max_retries`` retries; a 429's Retry-After wins when it is longer.
   Non-retryable failures and authorization errors propagate at once.

Each retry is a dispatched request and is counted again.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Mapping, Optional

from settlement.config import PLATFORM_RETRY_POLICY
from settlement.exceptions import PlatformAPIError, RetryExhaustedError, UnsupportedPlatformError
from settlement.models.db.enums import Platform
from settlement.models.schemas.metrics import RawMetricsSnapshot
from settlement.utils.backoff import compute_backoff_seconds
from settlement.utils.logger import get_logger
from settlement.utils.ratelimiter import PlatformRateLimiter, RateLimitState
from settlement.utils.time import utc_now
from .base import PlatformIntegration
from .instagram import InstagramIntegration
from .tiktok import TikTokIntegration

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def default_integrations() -> Dict[Platform, PlatformIntegration]:
    return {
        Platform.TIKTOK: TikTokIntegration(),
        Platform.INSTAGRAM: InstagramIntegration(),
    }


def resolve_platform(platform: Platform | str) -> Platform:
    if isinstance(platform, Platform):
        return platform
    try:
        return Platform(str(platform).strip().lower())
    except ValueError as e:
        raise UnsupportedPlatformError(str(platform)) from e


class RateLimitedPlatformClient:
    def __init__(
        self,
        rate_limiter: PlatformRateLimiter,
        *,
        integrations: Optional[Mapping[Platform, PlatformIntegration]] = None,
        max_retries: Optional[int] = None,
        base_seconds: Optional[float] = None,
        multiplier: Optional[float] = None,
        max_backoff_seconds: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.integrations = dict(integrations) if integrations is not None else default_integrations()
        self.max_retries = int(max_retries if max_retries is not None else PLATFORM_RETRY_POLICY["max_retries"])
        self._base = float(base_seconds if base_seconds is not None else PLATFORM_RETRY_POLICY["base_seconds"])
        self._multiplier = float(multiplier if multiplier is not None else PLATFORM_RETRY_POLICY["factor"])
        self._max_backoff = float(max_backoff_seconds if max_backoff_seconds is not None else PLATFORM_RETRY_POLICY["max_seconds"])
        self._sleep = sleep

    def _integration(self, platform: Platform) -> PlatformIntegration:
        integration = self.integrations.get(platform)
        if integration is None:
            raise UnsupportedPlatformError(platform.value)
        return integration

    def backoff_delay(self, retry_number: int, error: PlatformAPIError | None = None) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        delay = compute_backoff_seconds(
            retry_number,
            base=self._base,
            factor=self._multiplier,
            max_seconds=self._max_backoff,
            jitter_pct=0.0,
        )
        if error is not None and error.retry_after is not None:
            delay = min(max(delay, error.retry_after), self._max_backoff)
        return delay

    async def rate_limit_status(self, platform: Platform | str, user_id: str) -> RateLimitState:
        return await self.rate_limiter.status(resolve_platform(platform).value, user_id)

    async def fetch_metrics(
        self,
        platform: Platform | str,
        access_token: str,
        content_id: str,
        user_id: str,
    ) -> RawMetricsSnapshot:
        platform = resolve_platform(platform)
        integration = self._integration(platform)
        attempt = 0
        while True:
            attempt += 1
            await self.rate_limiter.acquire(platform.value, user_id)
            try:
                data = await integration.fetch_content_metrics(access_token, content_id)
            except PlatformAPIError as e:
                if not e.retryable:
                    logger.warning(
                        "Platform fetch failed (non-retryable)",
                        platform=platform.value,
                        content_id=content_id,
                        status_code=e.upstream_status,
                        error=str(e),
                    )
                    raise
                if attempt > self.max_retries:
                    logger.error(
                        "Platform fetch retries exhausted",
                        platform=platform.value,
                        content_id=content_id,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise RetryExhaustedError(f"{platform.value} fetch", attempt, e) from e
                delay = self.backoff_delay(attempt, e)
                logger.warning(
                    "Platform fetch retry scheduled",
                    platform=platform.value,
                    content_id=content_id,
                    attempt=attempt,
                    backoff_seconds=round(delay, 2),
                    status_code=e.upstream_status,
                )
                await self._sleep(delay)
                continue

            logger.debug("Platform fetch succeeded", platform=platform.value, content_id=content_id, attempts=attempt)
            return RawMetricsSnapshot(
                platform=platform,
                content_id=content_id,
                user_id=user_id,
                view_count=data.get("view_count"),
                like_count=data.get("like_count"),
                comment_count=data.get("comment_count"),
                share_count=data.get("share_count"),
                fetched_at=utc_now(),
                raw_response=data.get("raw") or {},
            )


__all__ = ["RateLimitedPlatformClient", "default_integrations", "resolve_platform"]
