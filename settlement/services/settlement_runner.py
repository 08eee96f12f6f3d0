"""Daily settlement orchestration around ``PayoutSettlementEngine``.

Run order for one date:
1. compute the batch (engine, single-flight)
2. save_payout_batch, save_payouts, update_platform_revenue (sum of fees)
3. optionally pay: payable payouts (valid, not below minimum, net > 0) with a
   resolvable recipient become payment requests; each payout moves
   pending -> processing -> completed | failed and is saved again
4. optionally notify promoters of their payout status, except for payouts the
   payment processor already notified about

When ``get_payout_statuses`` is wired, payouts already past pending in an
earlier run of the same date keep that status: they are neither paid nor
notified again, and a re-run never moves a completed payout back to pending.

Payment request ids are derived from the period and the pair, so re-running a
day reuses the same gateway idempotency keys instead of paying twice.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from settlement.config import ENABLE_PAYOUT_NOTIFICATIONS, PAYOUT_SETTINGS, SETTLEMENT_TIMEZONE
from settlement.exceptions import BatchInProgressError
from settlement.models.db.enums import Currency, PaymentStatus, PayoutStatus
from settlement.models.schemas.payments import PaymentRequest, PaymentResult, RecipientInfo
from settlement.models.schemas.payouts import (
    PayoutBatch,
    PayoutCalculation,
    PayoutJob,
    PayoutNotification,
    PayoutPeriod,
)
from settlement.services.payment_processor import PaymentSettlementProcessor
from settlement.services.payout_engine import GetActivePromotions, GetViewRecords, PayoutSettlementEngine
from settlement.utils import get_logger
from settlement.utils.metrics import format_rupiah
from settlement.utils.time import local_today, utc_now

logger = get_logger(__name__)

Pair = Tuple[str, str]
RecipientResolver = Callable[[str], Awaitable[Optional[RecipientInfo]]]
GetPayoutStatuses = Callable[[PayoutPeriod], Awaitable[Mapping[Pair, Tuple[PayoutStatus, Optional[str]]]]]

# transitions replayed to bring a freshly computed (pending) payout to a stored status
_PATH_FROM_PENDING: Dict[PayoutStatus, Tuple[PayoutStatus, ...]] = {
    PayoutStatus.PENDING: (),
    PayoutStatus.PROCESSING: (PayoutStatus.PROCESSING,),
    PayoutStatus.COMPLETED: (PayoutStatus.PROCESSING, PayoutStatus.COMPLETED),
    PayoutStatus.FAILED: (PayoutStatus.PROCESSING, PayoutStatus.FAILED),
}


@dataclass
class SettlementCollaborators:
    get_active_promotions: GetActivePromotions
    get_view_records: GetViewRecords
    save_payout_batch: Callable[[PayoutBatch], Awaitable[None]]
    save_payouts: Callable[[Sequence[PayoutCalculation], PayoutBatch], Awaitable[None]]
    update_platform_revenue: Callable[[PayoutPeriod, object], Awaitable[None]]
    send_payout_notifications: Callable[[Sequence[PayoutNotification]], Awaitable[object]]
    get_payout_statuses: Optional[GetPayoutStatuses] = None


class DailySettlementRunner:
    def __init__(
        self,
        engine: PayoutSettlementEngine,
        collaborators: SettlementCollaborators,
        *,
        payment_processor: Optional[PaymentSettlementProcessor] = None,
        recipient_resolver: Optional[RecipientResolver] = None,
        enable_notifications: Optional[bool] = None,
        timezone: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.collaborators = collaborators
        self.payment_processor = payment_processor
        self.recipient_resolver = recipient_resolver
        self.enable_notifications = (
            ENABLE_PAYOUT_NOTIFICATIONS if enable_notifications is None else enable_notifications
        )
        self.timezone = timezone or SETTLEMENT_TIMEZONE
        self._clock = clock
        self.last_batch: Optional[PayoutBatch] = None

    async def execute_scheduled_payout(self) -> PayoutBatch:
        """Cron entry point: settles the day before today (local time)."""
        return await self.execute_manual_payout(local_today(self.timezone, self._clock()))

    async def execute_manual_payout(self, run_date: date) -> PayoutBatch:
        c = self.collaborators
        batch = await self.engine.run_daily_batch(run_date, c.get_active_promotions, c.get_view_records)
        batch, settled = await self._carry_forward(batch)
        await c.save_payout_batch(batch)
        calculations = [job.calculation for job in batch.jobs if job.calculation is not None]
        await c.save_payouts(calculations, batch)
        await c.update_platform_revenue(batch.period, batch.total_platform_fees)

        payments: Dict[Pair, PaymentResult] = {}
        processor = self.payment_processor
        if processor is not None and self.recipient_resolver is not None:
            batch, payments = await self._pay(batch, processor, self.recipient_resolver)

        if self.enable_notifications:
            skip = set(settled)
            if processor is not None and processor.dispatcher is not None:
                # the processor already sent payment_completed / payment_failed for these
                skip.update(payments)
            await self._notify(batch, payments, skip)

        self.last_batch = batch
        logger.info(
            "Settlement run finished",
            batch_id=batch.id,
            status=batch.status.value,
            total_amount=str(batch.total_amount),
            already_settled=len(settled),
        )
        return batch

    async def _carry_forward(self, batch: PayoutBatch) -> tuple[PayoutBatch, set]:
        """Apply statuses persisted by an earlier run of the same period."""
        if self.collaborators.get_payout_statuses is None:
            return batch, set()
        stored = await self.collaborators.get_payout_statuses(batch.period)
        settled: set = set()
        jobs: List[PayoutJob] = []
        for job in batch.jobs:
            calculation = job.calculation
            status, reason = stored.get((job.promoter_id, job.campaign_id), (PayoutStatus.PENDING, None))
            if calculation is None or status == PayoutStatus.PENDING:
                jobs.append(job)
                continue
            for step in _PATH_FROM_PENDING[status]:
                calculation = calculation.transition(step, reason if step == PayoutStatus.FAILED else None)
            settled.add((job.promoter_id, job.campaign_id))
            jobs.append(job.model_copy(update={"calculation": calculation}))
        if settled:
            logger.info("Payouts settled by an earlier run kept", batch_id=batch.id, count=len(settled))
        return batch.model_copy(update={"jobs": tuple(jobs)}), settled

    # ----------------------------- payments ----------------------------- #
    def _payment_id(self, batch: PayoutBatch, calculation: PayoutCalculation) -> str:
        day = batch.period.start.strftime("%Y%m%d")
        return f"pay_{day}_{calculation.promoter_id}_{calculation.campaign_id}"

    async def _pay(
        self,
        batch: PayoutBatch,
        processor: PaymentSettlementProcessor,
        resolve_recipient: RecipientResolver,
    ) -> tuple[PayoutBatch, Dict[Pair, PaymentResult]]:
        requests: List[PaymentRequest] = []
        for job in batch.jobs:
            if not job.payable or job.calculation is None:
                continue
            calculation = job.calculation
            if calculation.status != PayoutStatus.PENDING:
                continue
            recipient = await resolve_recipient(calculation.promoter_id)
            if recipient is None:
                logger.warning("No payout destination, payment skipped",
                               promoter_id=calculation.promoter_id, campaign_id=calculation.campaign_id)
                continue
            request_id = self._payment_id(batch, calculation)
            requests.append(PaymentRequest(
                id=request_id,
                payout_id=f"{batch.id}:{calculation.promoter_id}:{calculation.campaign_id}",
                promoter_id=calculation.promoter_id,
                amount=calculation.net_amount,
                currency=Currency(str(PAYOUT_SETTINGS["currency"])),
                description=f"Payout {batch.period.start.date().isoformat()} campaign {calculation.campaign_id}",
                recipient=recipient,
                metadata={"campaign_id": calculation.campaign_id, "batch_id": batch.id},
            ))
        if not requests:
            return batch, {}

        try:
            payments = await processor.process_batch_payments(requests)
        except BatchInProgressError as e:
            logger.error("Payment batch skipped, another run holds the lock", batch_id=batch.id, error=str(e))
            return batch, {}

        by_pair: Dict[Pair, PaymentResult] = {}
        for request, result in zip(requests, payments.results):
            by_pair[(request.promoter_id, str(request.metadata["campaign_id"]))] = result

        jobs: List[PayoutJob] = []
        updated: List[PayoutCalculation] = []
        for job in batch.jobs:
            result = by_pair.get((job.promoter_id, job.campaign_id))
            if result is None or job.calculation is None:
                jobs.append(job)
                continue
            calculation = job.calculation.transition(PayoutStatus.PROCESSING)
            if result.status == PaymentStatus.COMPLETED:
                calculation = calculation.transition(PayoutStatus.COMPLETED)
            elif result.status == PaymentStatus.FAILED:
                calculation = calculation.transition(PayoutStatus.FAILED, result.failure_reason)
            updated.append(calculation)
            jobs.append(job.model_copy(update={"calculation": calculation}))

        await self.collaborators.save_payouts(updated, batch)
        return batch.model_copy(update={"jobs": tuple(jobs)}), by_pair

    # ----------------------------- notifications ----------------------------- #
    async def _notify(self, batch: PayoutBatch, payments: Dict[Pair, PaymentResult], skip: set) -> None:
        notifications: List[PayoutNotification] = []
        for job in batch.jobs:
            calculation = job.calculation
            if not job.payable or calculation is None:
                continue
            pair = (calculation.promoter_id, calculation.campaign_id)
            if pair in skip:
                continue
            payment = payments.get(pair)
            amount = format_rupiah(calculation.net_amount)
            if calculation.status == PayoutStatus.COMPLETED:
                message = f"Payout of {amount} completed"
            elif calculation.status == PayoutStatus.FAILED:
                message = calculation.failure_reason or "payment failed"
            else:
                message = f"Payout of {amount} is being processed"
            notifications.append(PayoutNotification(
                promoter_id=calculation.promoter_id,
                campaign_id=calculation.campaign_id,
                amount=calculation.net_amount,
                status=calculation.status,
                message=message,
                transaction_id=payment.transaction_id if payment else None,
            ))
        if not notifications:
            return
        try:
            await self.collaborators.send_payout_notifications(notifications)
        except Exception as e:
            logger.error("Payout notifications failed", batch_id=batch.id, count=len(notifications), error=str(e))


__all__ = ["DailySettlementRunner", "SettlementCollaborators", "RecipientResolver"]
