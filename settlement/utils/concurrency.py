"""Bounded fan-out for batch work (payout pairs, payments, ingestion groups)."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
    *,
    return_exceptions: bool = False,
) -> list[R | BaseException]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Results keep input order. ``limit`` drain coroutines pull from one shared
    iterator, so nothing beyond the bound is ever scheduled.
    """
    pending = list(items)
    results: list[R | BaseException] = [None] * len(pending)  # type: ignore[list-item]
    cursor = iter(enumerate(pending))

    async def drain() -> None:
        for index, item in cursor:
            try:
                results[index] = await worker(item)
            except Exception as e:
                if not return_exceptions:
                    raise
                results[index] = e

    lanes = max(1, min(int(limit), len(pending)))
    if pending:
        await asyncio.gather(*(drain() for _ in range(lanes)))
    return results


__all__ = ["gather_bounded"]
