"""Job queue interface and the in-memory priority + delay implementation.

``JobQueue[T]`` is what workers depend on: ``enqueue`` / ``dequeue`` / ``peek``.
Where the items live (process memory, the shared key-value store, a broker) is
an implementation detail.

In-memory two-heaps strategy:
 1. ready_heap: (priority, seq, item)
 2. scheduled_heap: (ready_at_ts, priority, seq, item)

On enqueue:
  - If ready_at <= now -> push to ready_heap else scheduled_heap.
On dequeue / peek:
  - Promote any scheduled items whose ready_at <= now.
  - Take highest priority from ready_heap (ties resolved by seq FIFO).

Keeping scheduled items apart avoids starvation of ready lower-priority items
by a far-future higher-priority entry, which a single heap keyed by
(ready_at, priority) would cause.

Dequeue never blocks; the polling cycle decides when to look again.
"""
from __future__ import annotations

import heapq
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Protocol, TypeVar

from settlement.config import QUEUE_SETTINGS
from settlement.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class JobQueue(Protocol[T]):
    async def enqueue(self, item: T, *, priority: str = "normal", delay_seconds: float = 0.0) -> None: ...
    async def dequeue(self) -> Optional[T]: ...
    async def peek(self) -> Optional[T]: ...
    async def depth(self) -> int: ...


@dataclass(slots=True)
class QueueItem(Generic[T]):
    job: T
    priority_label: str
    priority_value: int
    enqueued_at: float
    ready_at: float
    seq: int


def priority_map() -> dict[str, int]:
    priorities_cfg = QUEUE_SETTINGS.get("priorities", {})
    return dict(priorities_cfg) if isinstance(priorities_cfg, dict) else {"normal": 5}


class InMemoryJobQueue(Generic[T]):
    def __init__(self, *, clock: Callable[[], float] = time.time, max_items: int | None = None) -> None:
        self._clock = clock
        self._priority_map = priority_map()
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        self._max_items = int(max_items if max_items is not None else QUEUE_SETTINGS.get("max_in_memory", 5000))  # type: ignore[arg-type]
        self._ready_heap: list[tuple[int, int, QueueItem[T]]] = []
        self._scheduled_heap: list[tuple[float, int, int, QueueItem[T]]] = []
        self._seq_counter = 0

    def _next_seq(self) -> int:
        self._seq_counter += 1
        return self._seq_counter

    def _promote_scheduled(self) -> None:
        now_ts = self._clock()
        while self._scheduled_heap and self._scheduled_heap[0][0] <= now_ts:
            _, priority_value, seq, item = heapq.heappop(self._scheduled_heap)
            heapq.heappush(self._ready_heap, (priority_value, seq, item))

    def _size(self) -> int:
        return len(self._ready_heap) + len(self._scheduled_heap)

    async def enqueue(self, item: T, *, priority: str = "normal", delay_seconds: float = 0.0) -> None:
        if priority not in self._priority_map:
            raise ValueError(f"Unknown priority '{priority}'")
        if self._size() >= self._max_items:
            raise OverflowError("Queue capacity exceeded")
        now_ts = self._clock()
        ready_at_ts = now_ts + max(0.0, delay_seconds)
        entry = QueueItem(
            job=item,
            priority_label=priority,
            priority_value=self._priority_map[priority],
            enqueued_at=now_ts,
            ready_at=ready_at_ts,
            seq=self._next_seq(),
        )
        if ready_at_ts <= now_ts:
            heapq.heappush(self._ready_heap, (entry.priority_value, entry.seq, entry))
        else:
            heapq.heappush(self._scheduled_heap, (ready_at_ts, entry.priority_value, entry.seq, entry))
        if self._size() >= self._warn_depth:
            logger.warning("Queue depth warning", depth=self._size())

    async def dequeue(self) -> Optional[T]:
        self._promote_scheduled()
        if not self._ready_heap:
            return None
        _, _, entry = heapq.heappop(self._ready_heap)
        return entry.job

    async def peek(self) -> Optional[T]:
        self._promote_scheduled()
        if not self._ready_heap:
            return None
        return self._ready_heap[0][2].job

    async def depth(self) -> int:
        return self._size()

    async def snapshot(self) -> dict:
        return {
            "depth": self._size(),
            "ready": len(self._ready_heap),
            "scheduled": len(self._scheduled_heap),
            "backend": "memory",
        }

    def purge(self) -> None:
        """Drop everything queued. Test isolation only."""
        self._ready_heap.clear()
        self._scheduled_heap.clear()


__all__ = ["JobQueue", "QueueItem", "InMemoryJobQueue", "priority_map"]
