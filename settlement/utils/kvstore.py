"""Shared key-value store used for every piece of cross-task mutable state.

Tokens, rate-limit counters, locks and the job queue all live behind this one
async interface and are touched only through its atomic primitives
(``incr``, ``set_if_absent``, ``delete_if_equals``, ``pop_due``).

Two implementations:

* ``InMemoryKeyValueStore``: single-process, TTLs evaluated lazily against an
  injectable clock. Every method body runs without awaiting, so each call is
  atomic with respect to other tasks on the loop.
* ``RedisKeyValueStore``: ``redis.asyncio`` backed. Multi-step primitives
  (incr-with-expiry, compare-and-delete) run as Lua scripts.

``create_store`` tries Redis when enabled, pings it, and falls back to memory
with a warning.
"""
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import redis
import redis.asyncio as aioredis

from settlement.config import STORE_SETTINGS
from settlement.utils.logger import get_logger

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None: ...
    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool: ...
    async def delete(self, key: str) -> None: ...
    async def delete_if_equals(self, key: str, value: str) -> bool: ...
    async def incr(self, key: str, ttl_seconds: Optional[float] = None) -> int: ...
    async def decr(self, key: str) -> int: ...
    async def ttl(self, key: str) -> Optional[float]: ...
    async def push(self, key: str, value: str) -> int: ...
    async def pop(self, key: str) -> Optional[str]: ...
    async def peek(self, key: str) -> Optional[str]: ...
    async def length(self, key: str) -> int: ...
    async def schedule(self, key: str, member: str, score: float) -> None: ...
    async def pop_due(self, key: str, max_score: float, limit: int = 100) -> list[str]: ...
    async def scheduled_count(self, key: str) -> int: ...
    async def ping(self) -> bool: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class _Entry:
    value: str
    expires_at: Optional[float] = None


class InMemoryKeyValueStore:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: dict[str, _Entry] = {}
        self._lists: dict[str, deque[str]] = {}
        self._scheduled: dict[str, dict[str, float]] = {}

    # ----------------------------- internal helpers ----------------------------- #
    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._values.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._values[key]
            return None
        return entry

    def _expiry(self, ttl_seconds: Optional[float]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + float(ttl_seconds)

    # ----------------------------- scalar values ----------------------------- #
    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry.value if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        self._values[key] = _Entry(value, self._expiry(ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        if self._live(key) is not None:
            return False
        self._values[key] = _Entry(value, self._expiry(ttl_seconds))
        return True

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._lists.pop(key, None)
        self._scheduled.pop(key, None)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        entry = self._live(key)
        if entry is None or entry.value != value:
            return False
        del self._values[key]
        return True

    async def incr(self, key: str, ttl_seconds: Optional[float] = None) -> int:
        entry = self._live(key)
        if entry is None:
            self._values[key] = _Entry("1", self._expiry(ttl_seconds))
            return 1
        count = int(entry.value) + 1
        entry.value = str(count)
        return count

    async def decr(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            self._values[key] = _Entry("-1")
            return -1
        count = int(entry.value) - 1
        entry.value = str(count)
        return count

    async def ttl(self, key: str) -> Optional[float]:
        entry = self._live(key)
        if entry is None or entry.expires_at is None:
            return None
        return max(0.0, entry.expires_at - self._clock())

    # ----------------------------- lists ----------------------------- #
    async def push(self, key: str, value: str) -> int:
        items = self._lists.setdefault(key, deque())
        items.append(value)
        return len(items)

    async def pop(self, key: str) -> Optional[str]:
        items = self._lists.get(key)
        if not items:
            return None
        return items.popleft()

    async def peek(self, key: str) -> Optional[str]:
        items = self._lists.get(key)
        return items[0] if items else None

    async def length(self, key: str) -> int:
        return len(self._lists.get(key, ()))

    # ----------------------------- scheduled set ----------------------------- #
    async def schedule(self, key: str, member: str, score: float) -> None:
        self._scheduled.setdefault(key, {})[member] = score

    async def pop_due(self, key: str, max_score: float, limit: int = 100) -> list[str]:
        members = self._scheduled.get(key)
        if not members:
            return []
        due = sorted((score, member) for member, score in members.items() if score <= max_score)[:limit]
        for _, member in due:
            del members[member]
        return [member for _, member in due]

    async def scheduled_count(self, key: str) -> int:
        return len(self._scheduled.get(key, {}))

    # ----------------------------- lifecycle ----------------------------- #
    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# KEYS[1]=counter ARGV[1]=ttl ms
_INCR_WITH_EXPIRY = """
local value = redis.call('INCR', KEYS[1])
if value == 1 and tonumber(ARGV[1]) > 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return value
"""

# KEYS[1]=key ARGV[1]=expected value
_DELETE_IF_EQUALS = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisKeyValueStore:
    def __init__(self, client: Any, *, prefix: str | None = None) -> None:
        self._client = client
        self._prefix = str(prefix if prefix is not None else STORE_SETTINGS["key_prefix"])

    @classmethod
    def from_url(cls, url: str, *, prefix: str | None = None, timeout: float | None = None) -> "RedisKeyValueStore":
        timeout = float(timeout if timeout is not None else STORE_SETTINGS["redis_health_check_timeout"])  # type: ignore[arg-type]
        client = aioredis.from_url(url, decode_responses=True, socket_connect_timeout=timeout)
        return cls(client, prefix=prefix)

    def _k(self, key: str) -> str:
        return f"{self._prefix}:{key}" if self._prefix else key

    @staticmethod
    def _ms(ttl_seconds: Optional[float]) -> Optional[int]:
        if ttl_seconds is None:
            return None
        return max(1, int(float(ttl_seconds) * 1000))

    @staticmethod
    def _text(value: Any) -> Optional[str]:
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    async def get(self, key: str) -> Optional[str]:
        return self._text(await self._client.get(self._k(key)))

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        await self._client.set(self._k(key), value, px=self._ms(ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        result = await self._client.set(self._k(key), value, nx=True, px=self._ms(ttl_seconds))
        return bool(result)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._k(key))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        result = await self._client.eval(_DELETE_IF_EQUALS, 1, self._k(key), value)
        return int(result or 0) == 1

    async def incr(self, key: str, ttl_seconds: Optional[float] = None) -> int:
        result = await self._client.eval(_INCR_WITH_EXPIRY, 1, self._k(key), self._ms(ttl_seconds) or 0)
        return int(result)

    async def decr(self, key: str) -> int:
        return int(await self._client.decr(self._k(key)))

    async def ttl(self, key: str) -> Optional[float]:
        remaining_ms = int(await self._client.pttl(self._k(key)))
        if remaining_ms < 0:  # -2 missing, -1 no expiry
            return None
        return remaining_ms / 1000.0

    async def push(self, key: str, value: str) -> int:
        return int(await self._client.rpush(self._k(key), value))

    async def pop(self, key: str) -> Optional[str]:
        return self._text(await self._client.lpop(self._k(key)))

    async def peek(self, key: str) -> Optional[str]:
        return self._text(await self._client.lindex(self._k(key), 0))

    async def length(self, key: str) -> int:
        return int(await self._client.llen(self._k(key)) or 0)

    async def schedule(self, key: str, member: str, score: float) -> None:
        await self._client.zadd(self._k(key), {member: score})

    async def pop_due(self, key: str, max_score: float, limit: int = 100) -> list[str]:
        members = await self._client.zrangebyscore(self._k(key), "-inf", max_score, start=0, num=limit)
        claimed: list[str] = []
        for member in members or []:
            # ZREM returning 1 means this process won the member
            if int(await self._client.zrem(self._k(key), member)) == 1:
                claimed.append(self._text(member) or "")
        return claimed

    async def scheduled_count(self, key: str) -> int:
        return int(await self._client.zcard(self._k(key)) or 0)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


async def create_store(*, use_redis: bool | None = None, redis_url: str | None = None) -> KeyValueStore:
    """Return a Redis-backed store when enabled and reachable, else in-memory."""
    use_redis = bool(STORE_SETTINGS["use_redis"] if use_redis is None else use_redis)
    if use_redis:
        url = str(redis_url or STORE_SETTINGS["redis_url"])
        store = RedisKeyValueStore.from_url(url)
        try:
            await store.ping()
            logger.info("Using Redis-backed key-value store", url=url)
            return store
        except (redis.RedisError, OSError) as e:
            logger.warning("Redis unavailable, falling back to in-memory store", url=url, error=str(e))
            await store.close()
    logger.info("Using in-memory key-value store")
    return InMemoryKeyValueStore()


__all__ = ["KeyValueStore", "InMemoryKeyValueStore", "RedisKeyValueStore", "create_store"]
