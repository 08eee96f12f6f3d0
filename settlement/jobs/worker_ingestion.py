"""Metrics ingestion worker.

One cycle (driven by the 60s recurring task):
    dequeue up to ``batch_size`` ready jobs
    -> group by content (platform:content_id), arrival order kept per group
    -> groups run concurrently, at most ``max_concurrent_jobs`` at a time,
       jobs inside a group run one after another so deltas and duplicate
       checks always see the previous snapshot of the same content

Per job:
    token -> rate-limited fetch -> validate -> normalize -> duplicate check
    -> delta -> fraud detection -> persist -> optional auto action

Failure routing:
    RateLimitExceeded           deferred to the window reset, retry budget untouched
    AuthorizationError          credential invalidated, job failed
    non-retryable platform err  job failed
    validation errors           job failed (outcome ``invalid``), never retried
    anything transient          retry path; exhausted jobs go to the dead-letter queue
"""
from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from settlement.config import ENABLE_AUTO_ACTIONS, INGESTION_SETTINGS
from settlement.exceptions import (
    AuthorizationError,
    PlatformAPIError,
    RateLimitExceeded,
    SettlementError,
    ValidationFailure,
)
from settlement.integrations.platforms import RateLimitedPlatformClient, resolve_platform
from settlement.jobs.collection_job import CollectionJob
from settlement.jobs.queue import InMemoryJobQueue, JobQueue
from settlement.models.db.enums import FraudAction, IngestionOutcome, JobPriority, Platform
from settlement.models.schemas.fraud import FraudAssessment
from settlement.models.schemas.metrics import (
    RawMetricsSnapshot,
    SnapshotDelta,
    StoredSnapshot,
    ViewMetricsSnapshot,
)
from settlement.services.credential_manager import CredentialManager
from settlement.services.fraud_detection import FraudDetectionEngine
from settlement.services.normalization import NormalizationPipeline
from settlement.services.snapshot_store import SnapshotStore
from settlement.services.snapshot_validation import validate_candidate
from settlement.utils import get_logger, log_business_event, log_performance
from settlement.utils.concurrency import gather_bounded
from settlement.utils.time import utc_now

logger = get_logger(__name__)


@dataclass
class JobResult:
    job_id: str
    content_key: str
    outcome: IngestionOutcome
    error: Optional[str] = None
    snapshot: Optional[ViewMetricsSnapshot] = None
    assessment: Optional[FraudAssessment] = None


class FraudActionHandler(Protocol):
    async def handle(self, assessment: FraudAssessment, snapshot: ViewMetricsSnapshot) -> None: ...


class LoggingFraudActionHandler:
    """Records the recommended action; enforcement lives outside this service."""

    async def handle(self, assessment: FraudAssessment, snapshot: ViewMetricsSnapshot) -> None:
        log_business_event(
            "fraud_action_applied",
            {
                "campaign_id": assessment.campaign_id,
                "action": assessment.action.value,
                "bot_score": assessment.bot_score,
                "content_key": snapshot.content_key,
                "reason": assessment.reason,
            },
            promoter_id=assessment.promoter_id,
        )


def compute_delta(previous: Optional[ViewMetricsSnapshot], current: ViewMetricsSnapshot) -> SnapshotDelta:
    """New engagement since ``previous``; the first observation counts in full."""
    if previous is None:
        return SnapshotDelta(
            view_delta=current.view_count,
            like_delta=current.like_count,
            comment_delta=current.comment_count,
            share_delta=current.share_count,
            elapsed_seconds=0.0,
            is_first=True,
        )
    return SnapshotDelta(
        # platforms occasionally revise counts downwards; never pay negative views
        view_delta=max(0, current.view_count - previous.view_count),
        like_delta=current.like_count - previous.like_count,
        comment_delta=current.comment_count - previous.comment_count,
        share_delta=current.share_count - previous.share_count,
        elapsed_seconds=max(0.0, (current.timestamp - previous.timestamp).total_seconds()),
    )


class MetricsIngestionWorker:
    def __init__(
        self,
        queue: JobQueue[CollectionJob],
        platform_client: RateLimitedPlatformClient,
        credentials: CredentialManager,
        snapshot_store: SnapshotStore,
        fraud_engine: FraudDetectionEngine,
        *,
        dead_letters: Optional[JobQueue[CollectionJob]] = None,
        action_handler: Optional[FraudActionHandler] = None,
        pipeline: Optional[NormalizationPipeline] = None,
        enable_auto_actions: Optional[bool] = None,
        batch_size: Optional[int] = None,
        max_concurrent_jobs: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
        duplicate_window_seconds: Optional[float] = None,
        collection_interval_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue = queue
        self.platform_client = platform_client
        self.credentials = credentials
        self.snapshot_store = snapshot_store
        self.fraud_engine = fraud_engine
        self.dead_letters: JobQueue[CollectionJob] = dead_letters if dead_letters is not None else InMemoryJobQueue()
        self.action_handler: FraudActionHandler = action_handler or LoggingFraudActionHandler()
        self.pipeline = pipeline or NormalizationPipeline()
        self.enable_auto_actions = ENABLE_AUTO_ACTIONS if enable_auto_actions is None else enable_auto_actions
        cfg = INGESTION_SETTINGS
        self.batch_size = int(batch_size if batch_size is not None else cfg["batch_size"])  # type: ignore[arg-type]
        self.max_concurrent_jobs = int(
            max_concurrent_jobs if max_concurrent_jobs is not None else cfg["max_concurrent_jobs"]  # type: ignore[arg-type]
        )
        self.retry_delay_seconds = float(
            retry_delay_seconds if retry_delay_seconds is not None else cfg["retry_delay_seconds"]  # type: ignore[arg-type]
        )
        self.duplicate_window_seconds = float(
            duplicate_window_seconds if duplicate_window_seconds is not None else cfg["duplicate_window_seconds"]  # type: ignore[arg-type]
        )
        self.collection_interval_seconds = float(
            collection_interval_seconds if collection_interval_seconds is not None
            else cfg["collection_interval_seconds"]  # type: ignore[arg-type]
        )
        self._clock = clock
        self._counters: Dict[str, int] = {
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "retried": 0,
            "duplicates": 0,
            "invalid": 0,
            "rate_limited": 0,
        }
        self._cycles = 0

    # ----------------------------- scheduling ----------------------------- #
    async def schedule_collection(
        self,
        promoter_id: str,
        campaign_id: str,
        platform: Platform | str,
        content_id: str,
        *,
        priority: JobPriority = JobPriority.NORMAL,
        recurring: bool = False,
        delay_seconds: float = 0.0,
    ) -> CollectionJob:
        job = CollectionJob(
            promoter_id=promoter_id,
            campaign_id=campaign_id,
            platform=resolve_platform(platform),
            content_id=content_id,
            priority=priority,
            recurring=recurring,
        )
        await self.queue.enqueue(job, priority=priority.value, delay_seconds=delay_seconds)
        logger.info("Collection scheduled", job_id=job.id, content_key=job.key(), recurring=recurring)
        return job

    # ----------------------------- cycle ----------------------------- #
    async def run_cycle(self) -> List[JobResult]:
        started = time.perf_counter()
        jobs: List[CollectionJob] = []
        while len(jobs) < self.batch_size:
            job = await self.queue.dequeue()
            if job is None:
                break
            jobs.append(job)
        self._cycles += 1
        if not jobs:
            return []

        groups: "OrderedDict[str, List[CollectionJob]]" = OrderedDict()
        for job in jobs:
            groups.setdefault(job.key(), []).append(job)

        async def run_group(group: List[CollectionJob]) -> List[JobResult]:
            return [await self.process_job(job) for job in group]

        grouped = await gather_bounded(list(groups.values()), run_group, self.max_concurrent_jobs)
        results = [result for group_results in grouped for result in group_results]  # type: ignore[union-attr]
        log_performance(
            "ingestion_cycle",
            (time.perf_counter() - started) * 1000,
            {"jobs": len(jobs), "groups": len(groups)},
        )
        return results

    # ----------------------------- single job ----------------------------- #
    async def process_job(self, job: CollectionJob) -> JobResult:
        job.start(self._clock())
        self._counters["processed"] += 1
        try:
            result = await self._collect(job)
        except RateLimitExceeded as e:
            result = await self._defer(job, e)
        except AuthorizationError as e:
            await self.credentials.invalidate(job.promoter_id, job.platform, str(e))
            result = self._fail(job, f"authorization failed: {e}")
        except ValidationFailure as e:
            result = self._invalid(job, str(e))
        except PlatformAPIError as e:
            if e.retryable:
                result = await self._retry(job, str(e))
            else:
                result = self._fail(job, str(e))
        except SettlementError as e:
            result = await self._retry(job, str(e))
        except Exception as e:
            logger.error("Unexpected ingestion error", job_id=job.id, error=str(e), exc_info=True)
            result = await self._retry(job, f"{type(e).__name__}: {e}")
        return result

    async def _collect(self, job: CollectionJob) -> JobResult:
        token = await self.credentials.get_valid_token(job.promoter_id, job.platform)
        if token is None:
            if await self.credentials.needs_reauth(job.promoter_id, job.platform):
                return self._fail(job, "no valid credential, re-authentication required")
            return await self._retry(job, "credential refresh failed")

        raw = await self.platform_client.fetch_metrics(job.platform, token.access_token, job.content_id, job.promoter_id)
        candidate = self._candidate(job, raw)
        report = validate_candidate(candidate)
        if not report.is_valid:
            return self._invalid(job, report.summary())
        if report.warnings:
            logger.warning(
                "Snapshot validation warnings",
                job_id=job.id,
                content_key=job.key(),
                warnings=[w["key"] for w in report.warnings],
            )

        now = self._clock()
        snapshot = self.pipeline.to_snapshot(candidate, now)
        previous = await self.snapshot_store.latest(snapshot.platform, snapshot.content_id)
        if previous is not None and (now - previous.timestamp).total_seconds() < self.duplicate_window_seconds:
            self._counters["duplicates"] += 1
            job.complete(now)
            await self._requeue_recurring(job)
            logger.debug("Duplicate snapshot dropped", job_id=job.id, content_key=job.key())
            return JobResult(job.id, job.key(), IngestionOutcome.DUPLICATE, snapshot=previous)

        delta = compute_delta(previous, snapshot)
        history = await self.snapshot_store.recent(
            snapshot.platform, snapshot.content_id, now - self.fraud_engine.spike_window
        )
        assessment = self.fraud_engine.detect(job.promoter_id, job.campaign_id, [*history, snapshot])
        await self.snapshot_store.save(StoredSnapshot(
            snapshot=snapshot,
            delta=delta,
            is_legitimate=assessment.views_legitimate,
            bot_score=assessment.bot_score,
            fraud_action=assessment.action,
        ))
        if assessment.action != FraudAction.NONE:
            logger.warning(
                "Suspicious engagement",
                promoter_id=job.promoter_id,
                campaign_id=job.campaign_id,
                bot_score=assessment.bot_score,
                action=assessment.action.value,
                rules=assessment.triggered_rules,
            )
            if self.enable_auto_actions:
                await self._apply_action(assessment, snapshot)

        job.complete(self._clock())
        self._counters["succeeded"] += 1
        await self._requeue_recurring(job)
        logger.info(
            "Snapshot stored",
            job_id=job.id,
            content_key=job.key(),
            views=snapshot.view_count,
            view_delta=delta.view_delta,
            legitimate=assessment.views_legitimate,
        )
        return JobResult(job.id, job.key(), IngestionOutcome.STORED, snapshot=snapshot, assessment=assessment)

    @staticmethod
    def _candidate(job: CollectionJob, raw: RawMetricsSnapshot) -> Dict[str, Any]:
        return {
            "platform": raw.platform,
            "content_id": raw.content_id or job.content_id,
            "promoter_id": job.promoter_id,
            "campaign_id": job.campaign_id,
            "view_count": raw.view_count,
            "like_count": raw.like_count,
            "comment_count": raw.comment_count,
            "share_count": raw.share_count,
        }

    async def _apply_action(self, assessment: FraudAssessment, snapshot: ViewMetricsSnapshot) -> None:
        # the snapshot is already persisted; a handler failure must not undo or retry it
        try:
            await self.action_handler.handle(assessment, snapshot)
        except Exception as e:
            logger.error(
                "Fraud action handler failed",
                promoter_id=assessment.promoter_id,
                action=assessment.action.value,
                error=str(e),
                exc_info=True,
            )

    async def _requeue_recurring(self, job: CollectionJob) -> None:
        if job.recurring:
            await self.queue.enqueue(
                job.next_occurrence(),
                priority=job.priority.value,
                delay_seconds=self.collection_interval_seconds,
            )

    # ----------------------------- outcomes ----------------------------- #
    def _fail(self, job: CollectionJob, error: str) -> JobResult:
        job.fail(error, self._clock())
        self._counters["failed"] += 1
        logger.warning("Collection job failed", job_id=job.id, content_key=job.key(), error=error)
        return JobResult(job.id, job.key(), IngestionOutcome.FAILED, error=error)

    def _invalid(self, job: CollectionJob, error: str) -> JobResult:
        job.fail(error, self._clock())
        self._counters["invalid"] += 1
        logger.warning("Collected metrics rejected", job_id=job.id, content_key=job.key(), error=error)
        return JobResult(job.id, job.key(), IngestionOutcome.INVALID, error=error)

    async def _defer(self, job: CollectionJob, error: RateLimitExceeded) -> JobResult:
        now = self._clock()
        job.defer(error.reset_at, str(error), now)
        delay = max(0.0, (error.reset_at - now).total_seconds())
        await self.queue.enqueue(job, priority=job.priority.value, delay_seconds=delay)
        self._counters["rate_limited"] += 1
        logger.info("Collection deferred by rate limit", job_id=job.id, content_key=job.key(),
                    retry_at=error.reset_at.isoformat())
        return JobResult(job.id, job.key(), IngestionOutcome.RATE_LIMITED, error=str(error))

    async def _retry(self, job: CollectionJob, error: str) -> JobResult:
        now = self._clock()
        if job.schedule_retry(error, self.retry_delay_seconds, now):
            await self.queue.enqueue(job, priority=job.priority.value, delay_seconds=self.retry_delay_seconds)
            self._counters["retried"] += 1
            logger.info(
                "Collection retry scheduled",
                job_id=job.id,
                retry_count=job.retry_count,
                retry_at=(now + timedelta(seconds=self.retry_delay_seconds)).isoformat(),
                error=error,
            )
            return JobResult(job.id, job.key(), IngestionOutcome.RETRY_SCHEDULED, error=error)

        await self.dead_letters.enqueue(job, priority=JobPriority.LOW.value)
        self._counters["failed"] += 1
        logger.error("Collection job dead-lettered", job_id=job.id, content_key=job.key(),
                     retries=job.retry_count - 1, error=error)
        return JobResult(job.id, job.key(), IngestionOutcome.FAILED, error=error)

    async def stats(self) -> Dict[str, Any]:
        return {
            **self._counters,
            "cycles": self._cycles,
            "queue_depth": await self.queue.depth(),
            "dead_letters": await self.dead_letters.depth(),
        }


__all__ = [
    "MetricsIngestionWorker",
    "JobResult",
    "FraudActionHandler",
    "LoggingFraudActionHandler",
    "compute_delta",
]
