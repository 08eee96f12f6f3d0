"""
Settlement endpoints: manual payout runs, pipeline status and rate-limit inspection.
"""
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from settlement.api.deps import get_context, get_request_id
from settlement.context import ServiceContext
from settlement.exceptions import BatchInProgressError
from settlement.models.schemas.base import ResponseBase
from settlement.models.schemas.payouts import PayoutBatch
from settlement.models.schemas.requests import PayoutRunRequest
from settlement.utils import get_logger, log_business_event, log_performance
from settlement.utils.time import local_today

router = APIRouter()
logger = get_logger(__name__)


def _batch_summary(batch: Optional[PayoutBatch]) -> Optional[Dict[str, Any]]:
    if batch is None:
        return None
    return {
        "id": batch.id,
        "date": batch.date.isoformat(),
        "status": batch.status.value,
        "total_jobs": batch.total_jobs,
        "completed_jobs": batch.completed_jobs,
        "failed_jobs": batch.failed_jobs,
        "total_amount": str(batch.total_amount),
        "total_platform_fees": str(batch.total_platform_fees),
    }


@router.post(
    "/payouts/run",
    response_model=ResponseBase,
    summary="Run settlement for a date"
)
async def run_payouts(
    body: PayoutRunRequest,
    ctx: ServiceContext = Depends(get_context),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    """Settle the local day before ``date`` now, outside the daily schedule."""
    start_time = time.time()
    run_date = body.date or local_today(ctx.runner.timezone)

    logger.info("Manual payout requested", run_date=run_date.isoformat(), request_id=request_id)
    try:
        batch = await ctx.runner.execute_manual_payout(run_date)
    except BatchInProgressError as e:
        logger.warning("Manual payout rejected, batch in progress", run_date=run_date.isoformat(), request_id=request_id)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    duration_ms = (time.time() - start_time) * 1000
    log_performance(
        operation="manual_payout",
        duration_ms=duration_ms,
        additional_data={"batch_id": batch.id, "total_jobs": batch.total_jobs}
    )
    log_business_event(
        "manual_payout_run",
        {"batch_id": batch.id, "run_date": run_date.isoformat(), "status": batch.status.value},
        correlation_id=request_id,
    )

    return ResponseBase(
        success=True,
        message=f"Batch {batch.id} finished with status {batch.status.value}",
        data={
            "batch": batch.model_dump(mode="json"),
            "report": ctx.payout_engine.generate_report(batch),
        },
    )


@router.get(
    "/status",
    response_model=ResponseBase,
    summary="Pipeline status"
)
async def pipeline_status(ctx: ServiceContext = Depends(get_context)) -> ResponseBase:
    return ResponseBase(
        data={
            "scheduler": ctx.scheduler.state(),
            "ingestion": await ctx.worker.stats(),
            "queue": await ctx.queue.snapshot(),
            "notifications": ctx.dispatcher.stats(),
            "last_batch": _batch_summary(ctx.runner.last_batch),
        }
    )


@router.get(
    "/rate-limits/{platform}/{user_id}",
    response_model=ResponseBase,
    summary="Remaining platform quota for a user"
)
async def rate_limit_status(
    platform: str,
    user_id: str,
    ctx: ServiceContext = Depends(get_context),
) -> ResponseBase:
    state = await ctx.platform_client.rate_limit_status(platform, user_id)
    return ResponseBase(
        data={
            "platform": state.platform,
            "user_id": user_id,
            "limit": state.limit,
            "remaining": state.remaining,
            "count": state.count,
            "reset_at": state.reset_at.isoformat(),
        }
    )
