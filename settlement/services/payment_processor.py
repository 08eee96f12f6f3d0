"""Payment execution with retry, status polling and promoter notifications.

Gateway outcome handling:
    completed                -> completed, ``payment_completed`` sent
    failed                   -> failed (a decline is final, never retried)
    processing / pending     -> ``payment_processing`` sent, status polled every
                                ``poll_interval`` up to ``max_polls`` times; a
                                payment still unsettled afterwards stays
                                ``processing`` and is never dispatched again
    retryable gateway error  -> backoff ``min(max_backoff, base * factor**(n - 1))``,
                                ``payment_retry`` sent, up to ``max_retries``
                                retries, then failed + ``payment_failed``
    non-retryable error      -> failed + ``payment_failed``
    invalid request          -> failed + ``payment_failed`` (e.g. no destination account)

Notification failures are logged and never change a payment's outcome.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from settlement.config import PAYMENT_SETTINGS
from settlement.exceptions import (
    BatchInProgressError,
    LockNotAcquired,
    PaymentGatewayError,
    ValidationFailure,
)
from settlement.integrations.gateways import GatewayProvider
from settlement.models.db.enums import PaymentStatus, TemplateType
from settlement.models.schemas.payments import (
    GatewayResponse,
    PaymentBatchResult,
    PaymentRequest,
    PaymentResult,
)
from settlement.services.notifications import NotificationDispatcher
from settlement.utils import get_logger, log_business_event
from settlement.utils.backoff import compute_backoff_seconds
from settlement.utils.concurrency import gather_bounded
from settlement.utils.locks import DistributedLock
from settlement.utils.time import utc_now

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def _setting(value: Any, key: str) -> Any:
    return value if value is not None else PAYMENT_SETTINGS[key]


class PaymentSettlementProcessor:
    def __init__(
        self,
        gateway: GatewayProvider,
        lock: DistributedLock,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
        max_retries: Optional[int] = None,
        base_seconds: Optional[float] = None,
        factor: Optional[float] = None,
        max_backoff_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
        max_polls: Optional[int] = None,
        batch_concurrency: Optional[int] = None,
        lock_key: Optional[str] = None,
        lock_ttl_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.lock = lock
        self.dispatcher = dispatcher
        self.max_retries = int(_setting(max_retries, "max_retries"))
        self.base_seconds = float(_setting(base_seconds, "base_seconds"))
        self.factor = float(_setting(factor, "factor"))
        self.max_backoff_seconds = float(_setting(max_backoff_seconds, "max_seconds"))
        self.poll_interval_seconds = float(_setting(poll_interval_seconds, "poll_interval_seconds"))
        self.max_polls = int(_setting(max_polls, "max_polls"))
        self.batch_concurrency = int(_setting(batch_concurrency, "batch_concurrency"))
        self.lock_key = str(_setting(lock_key, "batch_lock_key"))
        self.lock_ttl = float(_setting(lock_ttl_seconds, "batch_lock_ttl_seconds"))
        self._clock = clock
        self._sleep = sleep

    def backoff_delay(self, retry_number: int) -> float:
        return compute_backoff_seconds(
            retry_number,
            base=self.base_seconds,
            factor=self.factor,
            max_seconds=self.max_backoff_seconds,
            jitter_pct=0.0,
        )

    # ----------------------------- single payment ----------------------------- #
    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self.gateway.process_payment(request)
                break
            except ValidationFailure as e:
                return await self._failed(request, attempt, f"invalid payment request: {e}")
            except (PaymentGatewayError, asyncio.TimeoutError, ConnectionError) as e:
                retryable = getattr(e, "retryable", True)
                if not retryable:
                    return await self._failed(request, attempt, f"gateway rejected payment: {e}")
                if attempt > self.max_retries:
                    return await self._failed(request, attempt, f"retries exhausted: {e}")
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Payment dispatch failed, retrying",
                    request_id=request.id,
                    attempt=attempt,
                    backoff_seconds=round(delay, 2),
                    error=str(e),
                )
                await self._notify(request, TemplateType.PAYMENT_RETRY,
                                   retry_count=attempt, max_retries=self.max_retries)
                await self._sleep(delay)

        if response.status == PaymentStatus.COMPLETED:
            return await self._completed(request, response, attempt)
        if response.status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            return await self._failed(request, attempt, response.failure_reason or "declined by gateway", response)

        await self._notify(request, TemplateType.PAYMENT_PROCESSING)
        final = await self._poll(request, response)
        if final.status == PaymentStatus.COMPLETED:
            return await self._completed(request, final, attempt)
        if final.status.is_terminal:
            return await self._failed(request, attempt, final.failure_reason or f"payment {final.status.value}", final)

        logger.warning("Payment still processing after status polling", request_id=request.id,
                       payment_id=final.payment_id, polls=self.max_polls)
        return PaymentResult(
            request_id=request.id,
            payment_id=final.payment_id,
            status=PaymentStatus.PROCESSING,
            amount=request.amount,
            currency=request.currency,
            attempts=attempt,
            failure_reason=f"status polling exhausted after {self.max_polls} checks; payment not re-sent",
            processed_at=self._clock(),
        )

    async def _poll(self, request: PaymentRequest, response: GatewayResponse) -> GatewayResponse:
        current = response
        for _ in range(self.max_polls):
            await self._sleep(self.poll_interval_seconds)
            try:
                current = await self.gateway.check_status(response.payment_id)
            except PaymentGatewayError as e:
                logger.warning("Payment status check failed", request_id=request.id,
                               payment_id=response.payment_id, error=str(e))
                continue
            if current.status.is_terminal:
                break
        return current

    async def _completed(self, request: PaymentRequest, response: GatewayResponse, attempts: int) -> PaymentResult:
        now = self._clock()
        result = PaymentResult(
            request_id=request.id,
            payment_id=response.payment_id,
            status=PaymentStatus.COMPLETED,
            amount=request.amount,
            currency=request.currency,
            attempts=attempts,
            transaction_id=response.transaction_id,
            processed_at=now,
            completed_at=now,
        )
        log_business_event(
            "payment_completed",
            {"amount": str(request.amount), "currency": request.currency.value,
             "payment_id": response.payment_id, "attempts": attempts},
            promoter_id=request.promoter_id,
            correlation_id=request.id,
        )
        await self._notify(request, TemplateType.PAYMENT_COMPLETED,
                           transaction_id=response.transaction_id or response.payment_id)
        return result

    async def _failed(
        self,
        request: PaymentRequest,
        attempts: int,
        reason: str,
        response: Optional[GatewayResponse] = None,
    ) -> PaymentResult:
        result = PaymentResult(
            request_id=request.id,
            payment_id=response.payment_id if response else None,
            status=PaymentStatus.FAILED,
            amount=request.amount,
            currency=request.currency,
            attempts=attempts,
            failure_reason=reason,
            processed_at=self._clock(),
        )
        log_business_event(
            "payment_failed",
            {"amount": str(request.amount), "currency": request.currency.value,
             "attempts": attempts, "reason": reason},
            promoter_id=request.promoter_id,
            correlation_id=request.id,
        )
        await self._notify(request, TemplateType.PAYMENT_FAILED, failure_reason=reason)
        return result

    async def _notify(self, request: PaymentRequest, template: TemplateType, **extra: Any) -> None:
        if self.dispatcher is None:
            return
        variables: Dict[str, Any] = {
            "promoter_name": request.recipient.name,
            "amount": request.amount,
            "campaign_title": request.metadata.get("campaign_title") or request.metadata.get("campaign_id")
            or request.description or "-",
            **extra,
        }
        try:
            await self.dispatcher.send(request.promoter_id, template, variables)
        except Exception as e:
            logger.error("Payment notification failed", request_id=request.id,
                         template=template.value, error=str(e))

    # ----------------------------- batch ----------------------------- #
    async def process_batch_payments(
        self,
        requests: Sequence[PaymentRequest],
        concurrency: Optional[int] = None,
    ) -> PaymentBatchResult:
        try:
            async with self.lock.hold(self.lock_key, self.lock_ttl):
                outcomes = await gather_bounded(
                    list(requests),
                    self.process_payment,
                    concurrency or self.batch_concurrency,
                    return_exceptions=True,
                )
        except LockNotAcquired as e:
            raise BatchInProgressError("payment batch already in progress") from e

        results: List[PaymentResult] = []
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Payment crashed", request_id=request.id, error=str(outcome))
                results.append(PaymentResult(
                    request_id=request.id,
                    status=PaymentStatus.FAILED,
                    amount=request.amount,
                    currency=request.currency,
                    attempts=0,
                    failure_reason=f"{type(outcome).__name__}: {outcome}",
                    processed_at=self._clock(),
                ))
            else:
                results.append(outcome)

        batch = PaymentBatchResult(
            results=results,
            completed=sum(1 for r in results if r.status == PaymentStatus.COMPLETED),
            failed=sum(1 for r in results if r.status == PaymentStatus.FAILED),
            processing=sum(1 for r in results if r.status == PaymentStatus.PROCESSING),
        )
        logger.info("Payment batch finished", total=batch.total, completed=batch.completed,
                    failed=batch.failed, processing=batch.processing)
        return batch

    # ----------------------------- passthrough ----------------------------- #
    async def cancel_payment(self, payment_id: str) -> GatewayResponse:
        response = await self.gateway.cancel(payment_id)
        logger.info("Payment cancelled", payment_id=payment_id, status=response.status.value)
        return response

    async def transaction_history(
        self,
        promoter_id: Optional[str] = None,
        *,
        status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
    ) -> List[GatewayResponse]:
        return await self.gateway.history(promoter_id=promoter_id, status=status, limit=limit)


__all__ = ["PaymentSettlementProcessor"]
