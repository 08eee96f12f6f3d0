"""Key-value-store-backed priority + delay queue.

Features:
- Priority ordering via one ready list per priority label.
- Delayed items (retries, recurring collections) sit in a scheduled set scored
  by their ready-at timestamp. The timestamp is durable: a restarted worker
  picks retries up on its next polling cycle instead of losing in-memory timers.
- Works against any ``KeyValueStore`` (Redis in production, memory in tests).

Data structures in the store:
 1. Lists:  {name}:ready:{priority} - serialized envelopes ready to run
 2. Scheduled set: {name}:scheduled - score=ready_at_ts, member=serialized envelope

On enqueue:
  - If ready_at <= now -> push to the ready list else add to the scheduled set.
On dequeue:
  - Promote scheduled items whose ready_at <= now (each member is claimed by
    exactly one process through the store's atomic pop).
  - Pop from the highest-priority non-empty ready list.
"""
from __future__ import annotations

import json
import time
import uuid
from typing import Callable, Generic, Optional, TypeVar

from settlement.config import QUEUE_SETTINGS
from settlement.jobs.queue import priority_map
from settlement.utils.kvstore import KeyValueStore
from settlement.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class KeyValueJobQueue(Generic[T]):
    def __init__(
        self,
        store: KeyValueStore,
        name: str,
        *,
        serialize: Callable[[T], str],
        deserialize: Callable[[str], T],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._name = name
        self._serialize = serialize
        self._deserialize = deserialize
        self._clock = clock
        self._priority_map = priority_map()
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        # highest priority (lowest number) first
        self._priority_order = sorted(self._priority_map, key=self._priority_map.__getitem__)

    def _ready_key(self, priority: str) -> str:
        return f"{self._name}:ready:{priority}"

    @property
    def _scheduled_key(self) -> str:
        return f"{self._name}:scheduled"

    def _envelope(self, item: T, priority: str, ready_at: float) -> str:
        return json.dumps({
            "id": uuid.uuid4().hex,  # keeps identical payloads distinct in the scheduled set
            "priority": priority,
            "ready_at": ready_at,
            "payload": self._serialize(item),
        })

    def _open(self, raw: str) -> tuple[str, T]:
        envelope = json.loads(raw)
        return envelope.get("priority", "normal"), self._deserialize(envelope["payload"])

    async def _promote_scheduled(self) -> None:
        due = await self._store.pop_due(self._scheduled_key, self._clock())
        for raw in due:
            priority = json.loads(raw).get("priority", "normal")
            if priority not in self._priority_map:
                priority = "normal"
            await self._store.push(self._ready_key(priority), raw)
        if due:
            logger.debug("Promoted scheduled jobs to ready queue", queue=self._name, count=len(due))

    async def enqueue(self, item: T, *, priority: str = "normal", delay_seconds: float = 0.0) -> None:
        if priority not in self._priority_map:
            raise ValueError(f"Unknown priority '{priority}'")
        now_ts = self._clock()
        ready_at = now_ts + max(0.0, delay_seconds)
        raw = self._envelope(item, priority, ready_at)
        if ready_at <= now_ts:
            await self._store.push(self._ready_key(priority), raw)
        else:
            await self._store.schedule(self._scheduled_key, raw, ready_at)
        depth = await self.depth()
        if depth >= self._warn_depth:
            logger.warning("Queue depth warning", queue=self._name, depth=depth)

    async def dequeue(self) -> Optional[T]:
        await self._promote_scheduled()
        for priority in self._priority_order:
            raw = await self._store.pop(self._ready_key(priority))
            if raw is not None:
                return self._open(raw)[1]
        return None

    async def peek(self) -> Optional[T]:
        await self._promote_scheduled()
        for priority in self._priority_order:
            raw = await self._store.peek(self._ready_key(priority))
            if raw is not None:
                return self._open(raw)[1]
        return None

    async def depth(self) -> int:
        ready = 0
        for priority in self._priority_order:
            ready += await self._store.length(self._ready_key(priority))
        return ready + await self._store.scheduled_count(self._scheduled_key)

    async def snapshot(self) -> dict:
        ready = {p: await self._store.length(self._ready_key(p)) for p in self._priority_order}
        scheduled = await self._store.scheduled_count(self._scheduled_key)
        return {
            "depth": sum(ready.values()) + scheduled,
            "ready": sum(ready.values()),
            "ready_by_priority": ready,
            "scheduled": scheduled,
            "backend": "store",
        }


__all__ = ["KeyValueJobQueue"]
