"""Daily payout settlement.

Settlement period: the full local calendar day before the run date in the
configured timezone (00:00:00.000000 to 23:59:59.999999 inclusive).

Per active promoter/campaign pair:
    view records in period -> partition by is_legitimate
    -> compute_payout (pure) -> validate_payout (non-fatal business rules)

Batch guarantees:
    - single-flight across processes through the ``settlement:daily-batch`` lock
    - each pair visited at most once, processed with bounded concurrency
    - one pair raising never aborts the batch; it becomes a failed job
    - completed_jobs + failed_jobs == total_jobs

Money is ``Decimal``; the platform fee is rounded half-up to 2 places and the
net amount is the exact remainder so gross == net + fee always holds.
"""
from __future__ import annotations

import time
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence

from settlement.config import (
    MIN_PAYOUT_AMOUNT,
    PAYOUT_SETTINGS,
    PLATFORM_FEE_PERCENTAGE,
    SETTLEMENT_TIMEZONE,
)
from settlement.exceptions import BatchInProgressError, LockNotAcquired, ValidationFailure
from settlement.models.db.enums import BatchStatus, PayoutStatus
from settlement.models.schemas.metrics import ViewRecord
from settlement.models.schemas.payouts import (
    ActivePromotion,
    PayoutBatch,
    PayoutCalculation,
    PayoutJob,
    PayoutPeriod,
    PayoutValidation,
)
from settlement.utils import get_logger, log_business_event, log_performance
from settlement.utils.concurrency import gather_bounded
from settlement.utils.locks import DistributedLock
from settlement.utils.metrics import format_rupiah, round_money, to_decimal
from settlement.utils.time import local_day_bounds, settlement_day_for, utc_now

logger = get_logger(__name__)

GetActivePromotions = Callable[[], Awaitable[Sequence[ActivePromotion]]]
GetViewRecords = Callable[[str, str, PayoutPeriod], Awaitable[Sequence[ViewRecord]]]


class PayoutSettlementEngine:
    def __init__(
        self,
        lock: DistributedLock,
        *,
        fee_percentage: Optional[float | Decimal] = None,
        min_payout_amount: Optional[float | Decimal] = None,
        max_bot_ratio: Optional[float] = None,
        batch_concurrency: Optional[int] = None,
        timezone: Optional[str] = None,
        lock_key: Optional[str] = None,
        lock_ttl_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.lock = lock
        self.fee_percentage = to_decimal(fee_percentage if fee_percentage is not None else PLATFORM_FEE_PERCENTAGE)
        self.min_payout_amount = to_decimal(min_payout_amount if min_payout_amount is not None else MIN_PAYOUT_AMOUNT)
        self.max_bot_ratio = float(max_bot_ratio if max_bot_ratio is not None else PAYOUT_SETTINGS["max_bot_ratio"])
        self.batch_concurrency = int(
            batch_concurrency if batch_concurrency is not None else PAYOUT_SETTINGS["batch_concurrency"]
        )
        self.timezone = timezone or SETTLEMENT_TIMEZONE
        self.lock_key = lock_key or str(PAYOUT_SETTINGS["batch_lock_key"])
        self.lock_ttl = float(lock_ttl_seconds if lock_ttl_seconds is not None else PAYOUT_SETTINGS["batch_lock_ttl_seconds"])
        self._clock = clock

    # ----------------------------- calculation ----------------------------- #
    def compute_payout(
        self,
        promoter_id: str,
        campaign_id: str,
        rate_per_view: Decimal | float | str,
        legitimate_views: int,
        bot_views: int,
    ) -> PayoutCalculation:
        if legitimate_views < 0 or bot_views < 0:
            raise ValidationFailure(
                f"view counts must be non-negative (legitimate={legitimate_views}, bot={bot_views})"
            )
        rate = to_decimal(rate_per_view)
        gross = legitimate_views * rate
        fee = round_money(gross * self.fee_percentage / Decimal(100))
        return PayoutCalculation(
            promoter_id=promoter_id,
            campaign_id=campaign_id,
            total_views=legitimate_views + bot_views,
            legitimate_views=legitimate_views,
            bot_views=bot_views,
            rate_per_view=rate,
            platform_fee_percentage=self.fee_percentage,
            gross_amount=gross,
            platform_fee=fee,
            net_amount=gross - fee,
        )

    def validate_payout(self, calculation: PayoutCalculation) -> PayoutValidation:
        errors: List[str] = []
        warnings: List[str] = []
        c = calculation

        if c.rate_per_view <= 0:
            errors.append(f"rate per view must be positive (got {c.rate_per_view})")
        for name in ("gross_amount", "platform_fee", "net_amount"):
            if getattr(c, name) < 0:
                errors.append(f"{name} is negative")
        if c.legitimate_views + c.bot_views != c.total_views:
            errors.append("view counts do not reconcile")
        if c.net_amount != c.gross_amount - c.platform_fee:
            errors.append("net amount does not equal gross minus fee")

        below_minimum = c.net_amount < self.min_payout_amount
        if below_minimum:
            warnings.append(
                f"net amount {format_rupiah(c.net_amount)} below minimum payout {format_rupiah(self.min_payout_amount)}"
            )
        if c.total_views == 0:
            warnings.append("no views in settlement period")
        elif c.bot_ratio > self.max_bot_ratio:
            warnings.append(f"bot ratio {c.bot_ratio:.0%} above {self.max_bot_ratio:.0%}")

        return PayoutValidation(is_valid=not errors, errors=errors, warnings=warnings, below_minimum=below_minimum)

    # ----------------------------- batch ----------------------------- #
    def settlement_period(self, run_date: date) -> PayoutPeriod:
        start, end = local_day_bounds(settlement_day_for(run_date), self.timezone)
        return PayoutPeriod(start=start, end=end)

    async def run_daily_batch(
        self,
        run_date: date,
        get_active_promotions: GetActivePromotions,
        get_view_records: GetViewRecords,
    ) -> PayoutBatch:
        try:
            async with self.lock.hold(self.lock_key, self.lock_ttl):
                return await self._run_batch(run_date, get_active_promotions, get_view_records)
        except LockNotAcquired as e:
            logger.warning("Payout batch already running", run_date=run_date.isoformat())
            raise BatchInProgressError(f"payout batch for {run_date.isoformat()} already in progress") from e

    async def _run_batch(
        self,
        run_date: date,
        get_active_promotions: GetActivePromotions,
        get_view_records: GetViewRecords,
    ) -> PayoutBatch:
        started_at = self._clock()
        perf_start = time.perf_counter()
        batch_id = f"batch_{run_date.strftime('%Y%m%d')}_{uuid.uuid4().hex[:8]}"
        period = self.settlement_period(run_date)
        promotions = _unique_pairs(await get_active_promotions())
        logger.info(
            "Payout batch started",
            batch_id=batch_id,
            period_start=period.start.isoformat(),
            period_end=period.end.isoformat(),
            pairs=len(promotions),
        )

        async def settle(promotion: ActivePromotion) -> PayoutJob:
            return await self._settle_pair(promotion, period, get_view_records)

        jobs = tuple(await gather_bounded(promotions, settle, self.batch_concurrency))  # type: ignore[arg-type]

        completed = [j for j in jobs if j.status == PayoutStatus.COMPLETED]
        failed = len(jobs) - len(completed)
        if failed == 0:
            status = BatchStatus.COMPLETED
        elif completed:
            status = BatchStatus.PARTIALLY_FAILED
        else:
            status = BatchStatus.FAILED
        batch = PayoutBatch(
            id=batch_id,
            date=run_date,
            period=period,
            jobs=jobs,
            total_jobs=len(jobs),
            completed_jobs=len(completed),
            failed_jobs=failed,
            total_amount=sum((j.calculation.net_amount for j in completed if j.calculation), Decimal("0")),
            total_platform_fees=sum((j.calculation.platform_fee for j in completed if j.calculation), Decimal("0")),
            status=status,
            started_at=started_at,
            completed_at=self._clock(),
        )
        log_business_event(
            "payout_batch_completed",
            {
                "status": batch.status.value,
                "total_jobs": batch.total_jobs,
                "completed_jobs": batch.completed_jobs,
                "failed_jobs": batch.failed_jobs,
                "total_amount": str(batch.total_amount),
                "total_platform_fees": str(batch.total_platform_fees),
            },
            correlation_id=batch.id,
        )
        log_performance("payout_batch", (time.perf_counter() - perf_start) * 1000, {"pairs": batch.total_jobs})
        return batch

    async def _settle_pair(
        self,
        promotion: ActivePromotion,
        period: PayoutPeriod,
        get_view_records: GetViewRecords,
    ) -> PayoutJob:
        try:
            records = await get_view_records(promotion.promoter_id, promotion.campaign_id, period)
            legitimate = sum(r.view_count for r in records if r.is_legitimate)
            bots = sum(r.view_count for r in records if not r.is_legitimate)
            calculation = self.compute_payout(
                promotion.promoter_id, promotion.campaign_id, promotion.rate_per_view, legitimate, bots
            )
            validation = self.validate_payout(calculation)
        except Exception as e:
            logger.error(
                "Payout calculation failed",
                promoter_id=promotion.promoter_id,
                campaign_id=promotion.campaign_id,
                error=str(e),
                exc_info=True,
            )
            return PayoutJob(
                promoter_id=promotion.promoter_id,
                campaign_id=promotion.campaign_id,
                status=PayoutStatus.FAILED,
                error=f"{type(e).__name__}: {e}",
                processed_at=self._clock(),
            )

        if validation.errors or validation.warnings:
            logger.warning(
                "Payout flagged",
                promoter_id=promotion.promoter_id,
                campaign_id=promotion.campaign_id,
                errors=validation.errors or None,
                warnings=validation.warnings or None,
            )
        return PayoutJob(
            promoter_id=promotion.promoter_id,
            campaign_id=promotion.campaign_id,
            status=PayoutStatus.COMPLETED,
            calculation=calculation,
            validation=validation,
            processed_at=self._clock(),
        )

    # ----------------------------- reporting ----------------------------- #
    def generate_report(self, batch: PayoutBatch) -> str:
        success_rate = (batch.completed_jobs / batch.total_jobs * 100) if batch.total_jobs else 0.0
        lines = [
            f"Payout settlement report {batch.id}",
            f"Run date: {batch.date.isoformat()}",
            f"Period: {batch.period.start.isoformat()} - {batch.period.end.isoformat()}",
            f"Status: {batch.status.value}",
            f"Jobs: {batch.total_jobs} total, {batch.completed_jobs} completed, {batch.failed_jobs} failed",
            f"Success rate: {success_rate:.1f}%",
            f"Total payout: {format_rupiah(batch.total_amount)}",
            f"Platform fees: {format_rupiah(batch.total_platform_fees)}",
            "",
        ]
        for job in batch.jobs:
            head = f"- {job.promoter_id}/{job.campaign_id}: {job.status.value}"
            if job.calculation is None:
                lines.append(f"{head} ({job.error})")
                continue
            c = job.calculation
            line = (f"{head} views={c.total_views} legit={c.legitimate_views} bot={c.bot_views} "
                    f"net={format_rupiah(c.net_amount)}")
            if job.validation and job.validation.below_minimum:
                line += " [below minimum]"
            lines.append(line)
        return "\n".join(lines)


def _unique_pairs(promotions: Iterable[ActivePromotion]) -> List[ActivePromotion]:
    seen: set[tuple[str, str]] = set()
    unique: List[ActivePromotion] = []
    for promotion in promotions:
        if promotion.pair_key in seen:
            logger.warning(
                "Duplicate active promotion skipped",
                promoter_id=promotion.promoter_id,
                campaign_id=promotion.campaign_id,
            )
            continue
        seen.add(promotion.pair_key)
        unique.append(promotion)
    return unique


__all__ = ["PayoutSettlementEngine", "GetActivePromotions", "GetViewRecords"]
