"""Per-platform, per-user fixed-window rate limiter on the shared store.

Each (platform, user) pair gets one counter per window, keyed
``{platform}_rate_limit:{user_id}:{window_start}`` and expiring with the
window, so counters are shared by every worker process using the same store.

Return semantics mirror common rate-limit headers:
    RateLimitState(limit, remaining, reset_epoch, window_start, count)

``acquire`` is the only mutating call. It increments atomically and, when the
increment lands past the limit, decrements again and raises
``RateLimitExceeded``. A rejected request therefore never consumes quota; only
dispatched requests are counted.

Design notes:
 - Fixed window chosen for simplicity & test determinism.
 - Limits come from PLATFORM_RATE_LIMITS (tiktok 100/h, instagram 200/h).
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping

from settlement.config import PLATFORM_RATE_LIMITS
from settlement.exceptions import RateLimitExceeded, UnsupportedPlatformError
from settlement.utils.kvstore import KeyValueStore
from settlement.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class RateLimitState:
    platform: str
    limit: int
    remaining: int
    reset_epoch: int
    window_start: int
    count: int

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_epoch, tz=timezone.utc)


class PlatformRateLimiter:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        limits: Mapping[str, Mapping[str, int]] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._limits = limits or PLATFORM_RATE_LIMITS
        self._clock = clock

    def _policy(self, platform: str) -> tuple[int, int]:
        policy = self._limits.get(platform)
        if policy is None:
            raise UnsupportedPlatformError(platform)
        return int(policy["limit"]), int(policy["window_seconds"])

    def _window(self, window_seconds: int) -> int:
        now = int(self._clock())
        return now - (now % window_seconds)  # fixed window boundary

    @staticmethod
    def _key(platform: str, user_id: str, window_start: int) -> str:
        return f"{platform}_rate_limit:{user_id}:{window_start}"

    async def status(self, platform: str, user_id: str) -> RateLimitState:
        limit, window_seconds = self._policy(platform)
        window_start = self._window(window_seconds)
        raw = await self._store.get(self._key(platform, user_id, window_start))
        count = int(raw) if raw else 0
        return RateLimitState(
            platform=platform,
            limit=limit,
            remaining=max(0, limit - count),
            reset_epoch=window_start + window_seconds,
            window_start=window_start,
            count=count,
        )

    async def acquire(self, platform: str, user_id: str) -> RateLimitState:
        """Count one dispatched request or raise ``RateLimitExceeded``."""
        limit, window_seconds = self._policy(platform)
        window_start = self._window(window_seconds)
        key = self._key(platform, user_id, window_start)
        count = await self._store.incr(key, ttl_seconds=window_seconds)
        reset_epoch = window_start + window_seconds
        if count > limit:
            await self._store.decr(key)
            reset_at = datetime.fromtimestamp(reset_epoch, tz=timezone.utc)
            logger.warning(
                "Platform rate limit exhausted",
                platform=platform,
                user_id=user_id,
                limit=limit,
                reset_at=reset_at.isoformat(),
            )
            raise RateLimitExceeded(platform, user_id, reset_at, limit)
        return RateLimitState(
            platform=platform,
            limit=limit,
            remaining=limit - count,
            reset_epoch=reset_epoch,
            window_start=window_start,
            count=count,
        )


__all__ = ["PlatformRateLimiter", "RateLimitState"]
