"""Distributed lock over the key-value store's set-if-absent-with-TTL primitive.

Each acquisition writes a unique owner token and hands it back to the caller;
``release`` deletes the key only while it still holds that token, so a holder
whose TTL lapsed cannot release a lock someone else has since taken. The token
travels with the caller rather than the lock instance, which is shared by every
worker in the process. The TTL is the hard upper bound on how long a crashed
holder can block other callers.
"""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from settlement.exceptions import LockNotAcquired
from settlement.utils.kvstore import KeyValueStore
from settlement.utils.logger import get_logger

logger = get_logger(__name__)


class DistributedLock:
    def __init__(self, store: KeyValueStore, *, namespace: str = "lock") -> None:
        self._store = store
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def acquire(self, key: str, ttl: float) -> Optional[str]:
        """Return the owner token when the lock was taken, ``None`` when it is held."""
        token = uuid.uuid4().hex
        if not await self._store.set_if_absent(self._key(key), token, ttl):
            return None
        logger.debug("Lock acquired", key=key, ttl=ttl)
        return token

    async def release(self, key: str, token: str) -> bool:
        released = await self._store.delete_if_equals(self._key(key), token)
        if not released:
            logger.warning("Lock expired before release", key=key)
        return released

    async def is_locked(self, key: str) -> bool:
        return await self._store.get(self._key(key)) is not None

    @asynccontextmanager
    async def hold(self, key: str, ttl: float) -> AsyncIterator[str]:
        """``async with lock.hold(key, ttl) as token:``; raises ``LockNotAcquired`` if contended."""
        token = await self.acquire(key, ttl)
        if token is None:
            raise LockNotAcquired(key)
        try:
            yield token
        finally:
            await self.release(key, token)


__all__ = ["DistributedLock"]
