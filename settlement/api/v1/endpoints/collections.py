"""
Metrics collection endpoints.
"""
from fastapi import APIRouter, Depends, status

from settlement.api.deps import get_context, get_request_id
from settlement.context import ServiceContext
from settlement.models.schemas.base import ResponseBase
from settlement.models.schemas.requests import CollectionRequest
from settlement.utils import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "/",
    response_model=ResponseBase,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Schedule metrics collection for a piece of content"
)
async def schedule_collection(
    body: CollectionRequest,
    ctx: ServiceContext = Depends(get_context),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    job = await ctx.worker.schedule_collection(
        body.promoter_id,
        body.campaign_id,
        body.platform,
        body.content_id,
        priority=body.priority,
        recurring=body.recurring,
        delay_seconds=body.delay_seconds,
    )
    logger.info("Collection accepted", job_id=job.id, content_key=job.key(), request_id=request_id)
    return ResponseBase(
        message="Collection scheduled",
        data={"job_id": job.id, "content_key": job.key(), "recurring": job.recurring},
    )


@router.post(
    "/run",
    response_model=ResponseBase,
    summary="Run one ingestion cycle now"
)
async def run_cycle(ctx: ServiceContext = Depends(get_context)) -> ResponseBase:
    results = await ctx.worker.run_cycle()
    outcomes: dict[str, int] = {}
    for r in results:
        outcomes[r.outcome.value] = outcomes.get(r.outcome.value, 0) + 1
    return ResponseBase(data={"processed": len(results), "outcomes": outcomes})


@router.get(
    "/dead-letters",
    response_model=ResponseBase,
    summary="Dead-lettered collection jobs"
)
async def dead_letters(ctx: ServiceContext = Depends(get_context)) -> ResponseBase:
    return ResponseBase(data={"depth": await ctx.dead_letters.depth()})
