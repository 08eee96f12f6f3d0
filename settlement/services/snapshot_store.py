"""Snapshot persistence interface and the in-memory implementation.

Snapshots are append-only: a new observation supersedes the previous one for
the same content, it never overwrites it. ``view_records`` exposes each
stored snapshot's *new* views (its delta) with the legitimacy flag decided by
fraud detection at ingestion time, which is exactly what settlement sums.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Optional, Protocol

from settlement.models.db.enums import Platform
from settlement.models.schemas.metrics import StoredSnapshot, ViewMetricsSnapshot, ViewRecord
from settlement.models.schemas.payouts import PayoutPeriod


class SnapshotStore(Protocol):
    async def latest(self, platform: Platform, content_id: str) -> Optional[ViewMetricsSnapshot]: ...
    async def recent(self, platform: Platform, content_id: str, since: datetime) -> list[ViewMetricsSnapshot]: ...
    async def save(self, stored: StoredSnapshot) -> None: ...
    async def view_records(self, promoter_id: str, campaign_id: str, period: PayoutPeriod) -> list[ViewRecord]: ...


class InMemorySnapshotStore:
    def __init__(self) -> None:
        self._by_content: dict[tuple[str, str], list[StoredSnapshot]] = defaultdict(list)
        self._by_pair: dict[tuple[str, str], list[StoredSnapshot]] = defaultdict(list)

    async def latest(self, platform: Platform, content_id: str) -> Optional[ViewMetricsSnapshot]:
        rows = self._by_content.get((platform.value, content_id))
        return rows[-1].snapshot if rows else None

    async def recent(self, platform: Platform, content_id: str, since: datetime) -> list[ViewMetricsSnapshot]:
        rows = self._by_content.get((platform.value, content_id), [])
        return [r.snapshot for r in rows if r.snapshot.timestamp >= since]

    async def save(self, stored: StoredSnapshot) -> None:
        s = stored.snapshot
        self._by_content[(s.platform.value, s.content_id)].append(stored)
        self._by_pair[(s.promoter_id, s.campaign_id)].append(stored)

    async def view_records(self, promoter_id: str, campaign_id: str, period: PayoutPeriod) -> list[ViewRecord]:
        return [
            ViewRecord(
                view_count=r.delta.view_delta,
                is_legitimate=r.is_legitimate,
                timestamp=r.snapshot.timestamp,
            )
            for r in self._by_pair.get((promoter_id, campaign_id), [])
            if period.contains(r.snapshot.timestamp)
        ]

    def all(self) -> list[StoredSnapshot]:
        return [r for rows in self._by_content.values() for r in rows]


__all__ = ["SnapshotStore", "InMemorySnapshotStore"]
