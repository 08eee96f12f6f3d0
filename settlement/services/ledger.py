"""SQLAlchemy persistence for snapshots and the settlement ledger.

All timestamps are written and compared in UTC: SQLite keeps no offset, so a
local (Asia/Jakarta) period bound would otherwise be compared as wall time.
Sessions are synchronous and short-lived; the coroutine methods run them inline
on the event loop thread, one unit of work per call.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.database import SessionLocal
from settlement.models.db import MetricSnapshot, PayoutBatchRecord, PayoutRecord, PlatformRevenue, Promotion
from settlement.models.db.enums import PAYOUT_TRANSITIONS, Platform, PayoutStatus
from settlement.models.schemas.metrics import SnapshotDelta, StoredSnapshot, ViewMetricsSnapshot, ViewRecord
from settlement.models.schemas.payouts import ActivePromotion, PayoutBatch, PayoutCalculation, PayoutPeriod
from settlement.utils import get_logger
from settlement.utils.time import ensure_aware

logger = get_logger(__name__)

SessionFactory = Callable[[], Session]


def _utc(value: datetime) -> datetime:
    return ensure_aware(value).astimezone(timezone.utc)


def _read(value: datetime) -> datetime:
    return ensure_aware(value)


def _reaches(current: PayoutStatus, target: PayoutStatus) -> bool:
    """True when ``target`` is ``current`` or lies ahead of it in the payout lifecycle."""
    seen = set()
    frontier = {current}
    while frontier:
        status = frontier.pop()
        if status == target:
            return True
        seen.add(status)
        frontier |= PAYOUT_TRANSITIONS[status] - seen
    return False


def _to_snapshot(row: MetricSnapshot) -> ViewMetricsSnapshot:
    return ViewMetricsSnapshot(
        platform=row.platform,
        content_id=row.content_id,
        promoter_id=row.promoter_id,
        campaign_id=row.campaign_id,
        view_count=row.view_count,
        like_count=row.like_count,
        comment_count=row.comment_count,
        share_count=row.share_count,
        engagement_rate=row.engagement_rate,
        timestamp=_read(row.observed_at),
    )


class SqlSnapshotStore:
    def __init__(self, session_factory: SessionFactory = SessionLocal) -> None:
        self._session_factory = session_factory

    async def latest(self, platform: Platform, content_id: str) -> Optional[ViewMetricsSnapshot]:
        with self._session_factory() as session:
            row = session.scalars(
                select(MetricSnapshot)
                .where(MetricSnapshot.platform == platform, MetricSnapshot.content_id == content_id)
                .order_by(MetricSnapshot.observed_at.desc(), MetricSnapshot.id.desc())
                .limit(1)
            ).first()
            return _to_snapshot(row) if row else None

    async def recent(self, platform: Platform, content_id: str, since: datetime) -> List[ViewMetricsSnapshot]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(MetricSnapshot)
                .where(
                    MetricSnapshot.platform == platform,
                    MetricSnapshot.content_id == content_id,
                    MetricSnapshot.observed_at >= _utc(since),
                )
                .order_by(MetricSnapshot.observed_at, MetricSnapshot.id)
            ).all()
            return [_to_snapshot(r) for r in rows]

    async def save(self, stored: StoredSnapshot) -> None:
        s, d = stored.snapshot, stored.delta
        with self._session_factory() as session:
            session.add(MetricSnapshot(
                platform=s.platform,
                content_id=s.content_id,
                promoter_id=s.promoter_id,
                campaign_id=s.campaign_id,
                view_count=s.view_count,
                like_count=s.like_count,
                comment_count=s.comment_count,
                share_count=s.share_count,
                engagement_rate=s.engagement_rate,
                observed_at=_utc(s.timestamp),
                view_delta=d.view_delta,
                like_delta=d.like_delta,
                comment_delta=d.comment_delta,
                share_delta=d.share_delta,
                elapsed_seconds=d.elapsed_seconds,
                is_first=d.is_first,
                is_legitimate=stored.is_legitimate,
                bot_score=stored.bot_score,
                fraud_action=stored.fraud_action,
            ))
            session.commit()

    async def view_records(self, promoter_id: str, campaign_id: str, period: PayoutPeriod) -> List[ViewRecord]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(MetricSnapshot)
                .where(
                    MetricSnapshot.promoter_id == promoter_id,
                    MetricSnapshot.campaign_id == campaign_id,
                    MetricSnapshot.observed_at >= _utc(period.start),
                    MetricSnapshot.observed_at <= _utc(period.end),
                )
                .order_by(MetricSnapshot.observed_at, MetricSnapshot.id)
            ).all()
            return [
                ViewRecord(view_count=r.view_delta, is_legitimate=r.is_legitimate, timestamp=_read(r.observed_at))
                for r in rows
            ]

    async def history(self, platform: Platform, content_id: str) -> List[StoredSnapshot]:
        """Every stored observation of one piece of content, oldest first."""
        with self._session_factory() as session:
            rows = session.scalars(
                select(MetricSnapshot)
                .where(MetricSnapshot.platform == platform, MetricSnapshot.content_id == content_id)
                .order_by(MetricSnapshot.observed_at, MetricSnapshot.id)
            ).all()
            return [
                StoredSnapshot(
                    snapshot=_to_snapshot(r),
                    delta=SnapshotDelta(
                        view_delta=r.view_delta,
                        like_delta=r.like_delta,
                        comment_delta=r.comment_delta,
                        share_delta=r.share_delta,
                        elapsed_seconds=r.elapsed_seconds,
                        is_first=r.is_first,
                    ),
                    is_legitimate=r.is_legitimate,
                    bot_score=r.bot_score,
                    fraud_action=r.fraud_action,
                )
                for r in rows
            ]


class SqlSettlementLedger:
    """Persistence collaborators of the daily settlement run."""

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        *,
        snapshot_store: Optional[SqlSnapshotStore] = None,
    ) -> None:
        self._session_factory = session_factory
        self.snapshots = snapshot_store or SqlSnapshotStore(session_factory)

    # ----------------------------- reads ----------------------------- #
    async def get_active_promotions(self) -> List[ActivePromotion]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(Promotion).where(Promotion.is_active.is_(True)).order_by(Promotion.id)
            ).all()
            return [
                ActivePromotion(promoter_id=r.promoter_id, campaign_id=r.campaign_id, rate_per_view=r.rate_per_view)
                for r in rows
            ]

    async def get_view_records(self, promoter_id: str, campaign_id: str, period: PayoutPeriod) -> List[ViewRecord]:
        return await self.snapshots.view_records(promoter_id, campaign_id, period)

    async def upsert_promotion(
        self,
        promoter_id: str,
        campaign_id: str,
        rate_per_view: Decimal,
        *,
        is_active: bool = True,
    ) -> None:
        with self._session_factory() as session:
            row = session.scalars(
                select(Promotion).where(Promotion.promoter_id == promoter_id, Promotion.campaign_id == campaign_id)
            ).first()
            if row is None:
                row = Promotion(promoter_id=promoter_id, campaign_id=campaign_id)
                session.add(row)
            row.rate_per_view = rate_per_view
            row.is_active = is_active
            session.commit()

    # ----------------------------- writes ----------------------------- #
    async def save_payout_batch(self, batch: PayoutBatch) -> None:
        with self._session_factory() as session:
            record = session.get(PayoutBatchRecord, batch.id) or PayoutBatchRecord(id=batch.id)
            record.run_date = batch.date
            record.period_start = _utc(batch.period.start)
            record.period_end = _utc(batch.period.end)
            record.status = batch.status
            record.total_jobs = batch.total_jobs
            record.completed_jobs = batch.completed_jobs
            record.failed_jobs = batch.failed_jobs
            record.total_amount = batch.total_amount
            record.total_platform_fees = batch.total_platform_fees
            record.started_at = _utc(batch.started_at)
            record.completed_at = _utc(batch.completed_at) if batch.completed_at else None
            session.add(record)
            session.commit()
        logger.info("Payout batch saved", batch_id=batch.id, status=batch.status.value)

    async def save_payouts(self, payouts: Sequence[PayoutCalculation], batch: PayoutBatch) -> None:
        """Upsert one row per (promoter, campaign, period).

        A row never moves back in its lifecycle: a payout already further along
        than the incoming one (e.g. completed vs. a re-run's pending) is kept as is.
        """
        period_start = _utc(batch.period.start)
        kept = 0
        with self._session_factory() as session:
            for payout in payouts:
                row = session.scalars(
                    select(PayoutRecord).where(
                        PayoutRecord.promoter_id == payout.promoter_id,
                        PayoutRecord.campaign_id == payout.campaign_id,
                        PayoutRecord.period_start == period_start,
                    )
                ).first()
                if row is None:
                    row = PayoutRecord(
                        promoter_id=payout.promoter_id,
                        campaign_id=payout.campaign_id,
                        period_start=period_start,
                    )
                    session.add(row)
                elif not _reaches(row.status, payout.status):
                    logger.info(
                        "Payout already past incoming status, row kept",
                        promoter_id=payout.promoter_id,
                        campaign_id=payout.campaign_id,
                        stored_status=row.status.value,
                        incoming_status=payout.status.value,
                    )
                    kept += 1
                    continue
                row.batch_id = batch.id
                row.period_end = _utc(batch.period.end)
                row.total_views = payout.total_views
                row.legitimate_views = payout.legitimate_views
                row.bot_views = payout.bot_views
                row.rate_per_view = payout.rate_per_view
                row.platform_fee_percentage = payout.platform_fee_percentage
                row.gross_amount = payout.gross_amount
                row.platform_fee = payout.platform_fee
                row.net_amount = payout.net_amount
                row.status = payout.status
                row.failure_reason = payout.failure_reason
            session.commit()
        logger.info("Payouts saved", batch_id=batch.id, count=len(payouts) - kept, kept=kept)

    async def payout_statuses(self, period: PayoutPeriod) -> Dict[Tuple[str, str], Tuple[PayoutStatus, Optional[str]]]:
        """Persisted ``(status, failure_reason)`` per (promoter, campaign) for the period."""
        with self._session_factory() as session:
            rows = session.scalars(
                select(PayoutRecord).where(PayoutRecord.period_start == _utc(period.start))
            ).all()
            return {(r.promoter_id, r.campaign_id): (r.status, r.failure_reason) for r in rows}

    async def update_platform_revenue(self, period: PayoutPeriod, total_fees: Decimal) -> None:
        period_start = _utc(period.start)
        with self._session_factory() as session:
            row = session.scalars(select(PlatformRevenue).where(PlatformRevenue.period_start == period_start)).first()
            if row is None:
                row = PlatformRevenue(period_start=period_start)
                session.add(row)
            row.period_end = _utc(period.end)
            row.total_fees = Decimal(total_fees)
            session.commit()
        logger.info("Platform revenue updated", period_start=period.start.isoformat(), total_fees=str(total_fees))

    async def list_payouts(self, period: Optional[PayoutPeriod] = None) -> List[PayoutRecord]:
        with self._session_factory() as session:
            query = select(PayoutRecord).order_by(PayoutRecord.id)
            if period is not None:
                query = query.where(PayoutRecord.period_start == _utc(period.start))
            return list(session.scalars(query).all())

    async def platform_revenue(self, period: PayoutPeriod) -> Optional[Decimal]:
        with self._session_factory() as session:
            row = session.scalars(
                select(PlatformRevenue).where(PlatformRevenue.period_start == _utc(period.start))
            ).first()
            return row.total_fees if row else None


__all__ = ["SqlSnapshotStore", "SqlSettlementLedger"]
