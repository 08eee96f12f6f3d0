"""Collection cycle: outcomes, retries, dead letters, rate-limit deferral and recurrence."""
import asyncio
from datetime import timedelta

import pytest

from settlement.exceptions import AuthorizationError, PlatformAPIError
from settlement.integrations.platforms import RateLimitedPlatformClient
from settlement.jobs.queue import InMemoryJobQueue
from settlement.jobs.worker_ingestion import MetricsIngestionWorker, compute_delta
from settlement.models.db.enums import FraudAction, IngestionOutcome, JobStatus, Platform
from settlement.models.schemas.tokens import SocialToken
from settlement.services.credential_manager import CredentialManager
from settlement.services.fraud_detection import FraudDetectionEngine
from settlement.services.snapshot_store import InMemorySnapshotStore
from settlement.utils.ratelimiter import PlatformRateLimiter


def counts(views, likes=0, comments=0, shares=0):
    return {"view_count": views, "like_count": likes, "comment_count": comments, "share_count": shares, "raw": {}}


class FeedIntegration:
    """Serves responses in order; the last one repeats. Exceptions are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    async def fetch_content_metrics(self, access_token, content_id):
        self.calls += 1
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return dict(item)


class RecordingHandler:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def handle(self, assessment, snapshot):
        self.calls.append((assessment.action, snapshot.content_key))
        if self.error:
            raise self.error


class Harness:
    def __init__(self, store, lock, clock, sleeps, integration, *, limit=100, **worker_kwargs):
        self.clock = clock
        self.integration = integration
        limiter = PlatformRateLimiter(
            store, limits={"tiktok": {"limit": limit, "window_seconds": 3600}}, clock=clock.epoch
        )
        # no client-side retries so every failure reaches the worker
        client = RateLimitedPlatformClient(
            limiter, integrations={Platform.TIKTOK: integration}, max_retries=0, sleep=sleeps
        )
        self.credentials = CredentialManager(store, lock, {}, clock=clock)
        self.snapshots = InMemorySnapshotStore()
        self.queue = InMemoryJobQueue(clock=clock.epoch)
        self.dead = InMemoryJobQueue(clock=clock.epoch)
        worker_kwargs.setdefault("retry_delay_seconds", 5)
        worker_kwargs.setdefault("duplicate_window_seconds", 10)
        worker_kwargs.setdefault("collection_interval_seconds", 60)
        self.worker = MetricsIngestionWorker(
            self.queue,
            client,
            self.credentials,
            self.snapshots,
            FraudDetectionEngine(clock=clock),
            dead_letters=self.dead,
            clock=clock,
            **worker_kwargs,
        )

    async def login(self, user_id="promoter_1"):
        await self.credentials.store_token(SocialToken(
            access_token="access",
            refresh_token="refresh",
            expires_at=self.clock.now + timedelta(days=30),
            platform=Platform.TIKTOK,
            user_id=user_id,
        ))

    async def schedule(self, content_id="vid_1", **kwargs):
        return await self.worker.schedule_collection(
            "promoter_1", "campaign_1", Platform.TIKTOK, content_id, **kwargs
        )


@pytest.fixture()
def make_harness(store, lock, clock, sleeps):
    def _create(*responses, **kwargs):
        return Harness(store, lock, clock, sleeps, FeedIntegration(*responses), **kwargs)
    return _create


def test_first_snapshot_is_stored_with_full_delta(make_harness):
    h = make_harness(counts(1000, 100, 10, 5))

    async def scenario():
        await h.login()
        job = await h.schedule()
        results = await h.worker.run_cycle()
        return job, results

    job, results = asyncio.run(scenario())
    assert [r.outcome for r in results] == [IngestionOutcome.STORED]
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 1
    stored = h.snapshots.all()
    assert len(stored) == 1
    assert stored[0].delta.is_first
    assert stored[0].delta.view_delta == 1000
    assert stored[0].is_legitimate
    assert stored[0].snapshot.engagement_rate == round(115 / 1000, 6)


def test_recurring_job_collects_again_after_interval(make_harness, clock):
    h = make_harness(counts(1000, 100, 10), counts(1500, 150, 15))

    async def scenario():
        await h.login()
        await h.schedule(recurring=True)
        first = await h.worker.run_cycle()
        too_early = await h.worker.run_cycle()
        clock.advance(60)
        second = await h.worker.run_cycle()
        return first, too_early, second

    first, too_early, second = asyncio.run(scenario())
    assert first[0].outcome == IngestionOutcome.STORED
    assert too_early == []
    assert second[0].outcome == IngestionOutcome.STORED
    deltas = [s.delta for s in h.snapshots.all()]
    assert deltas[1].view_delta == 500
    assert deltas[1].elapsed_seconds == 60
    assert asyncio.run(h.queue.depth()) == 1


def test_snapshot_within_duplicate_window_is_dropped(make_harness):
    h = make_harness(counts(1000, 100, 10))

    async def scenario():
        await h.login()
        await h.schedule()
        await h.schedule()
        return await h.worker.run_cycle()

    results = asyncio.run(scenario())
    assert [r.outcome for r in results] == [IngestionOutcome.STORED, IngestionOutcome.DUPLICATE]
    assert len(h.snapshots.all()) == 1
    stats = asyncio.run(h.worker.stats())
    assert stats["duplicates"] == 1


def test_missing_identifier_is_invalid_and_not_retried(make_harness):
    h = make_harness(counts(1000, 100, 10))

    async def scenario():
        await h.login()
        job = await h.schedule(content_id="  ")
        results = await h.worker.run_cycle()
        return job, results, await h.queue.depth()

    job, results, depth = asyncio.run(scenario())
    assert results[0].outcome == IngestionOutcome.INVALID
    assert "content_id is required" in results[0].error
    assert job.status == JobStatus.FAILED
    assert depth == 0


def test_transient_failures_retry_then_dead_letter(make_harness, clock):
    error = PlatformAPIError("tiktok", "server error 500", status_code=500, retryable=True)
    h = make_harness(error)

    async def scenario():
        await h.login()
        job = await h.schedule()
        outcomes = []
        for _ in range(6):
            outcomes.extend(r.outcome for r in await h.worker.run_cycle())
            clock.advance(5)
        return job, outcomes

    job, outcomes = asyncio.run(scenario())
    assert outcomes == [IngestionOutcome.RETRY_SCHEDULED] * 3 + [IngestionOutcome.FAILED]
    assert h.integration.calls == 4
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 4
    assert asyncio.run(h.queue.depth()) == 0
    assert asyncio.run(h.dead.depth()) == 1


def test_retry_waits_for_fixed_delay(make_harness, clock):
    error = PlatformAPIError("tiktok", "server error 503", status_code=503, retryable=True)
    h = make_harness(error, counts(1000, 100, 10))

    async def scenario():
        await h.login()
        job = await h.schedule()
        first = await h.worker.run_cycle()
        clock.advance(4)
        early = await h.worker.run_cycle()
        clock.advance(1)
        later = await h.worker.run_cycle()
        return job, first, early, later

    job, first, early, later = asyncio.run(scenario())
    assert first[0].outcome == IngestionOutcome.RETRY_SCHEDULED
    assert early == []
    assert later[0].outcome == IngestionOutcome.STORED
    assert job.attempts == 2


def test_rate_limited_job_is_deferred_without_spending_retries(make_harness, clock):
    h = make_harness(counts(1000, 100, 10), limit=1)

    async def scenario():
        await h.login()
        await h.schedule("vid_1")
        await h.worker.run_cycle()
        job = await h.schedule("vid_2")
        limited = await h.worker.run_cycle()
        retry_at = job.retry_at
        clock.advance(3600)
        resumed = await h.worker.run_cycle()
        return job, limited, retry_at, resumed

    job, limited, retry_at, resumed = asyncio.run(scenario())
    assert limited[0].outcome == IngestionOutcome.RATE_LIMITED
    assert retry_at == clock.now
    assert resumed[0].outcome == IngestionOutcome.STORED
    assert job.retry_count == 0
    assert h.integration.calls == 2


def test_authorization_error_invalidates_credential(make_harness):
    h = make_harness(AuthorizationError("tiktok rejected credentials (401)"))

    async def scenario():
        await h.login()
        await h.schedule()
        results = await h.worker.run_cycle()
        return results, await h.credentials.needs_reauth("promoter_1", Platform.TIKTOK)

    results, needs_reauth = asyncio.run(scenario())
    assert results[0].outcome == IngestionOutcome.FAILED
    assert results[0].error.startswith("authorization failed")
    assert needs_reauth


def test_missing_credential_fails_job(make_harness):
    h = make_harness(counts(1000, 100, 10))

    async def scenario():
        await h.schedule()
        return await h.worker.run_cycle()

    results = asyncio.run(scenario())
    assert results[0].outcome == IngestionOutcome.FAILED
    assert "re-authentication required" in results[0].error
    assert h.integration.calls == 0


def test_bot_traffic_is_stored_as_illegitimate(make_harness):
    h = make_harness(counts(10_000))

    async def scenario():
        await h.login()
        await h.schedule()
        return await h.worker.run_cycle()

    results = asyncio.run(scenario())
    assert results[0].outcome == IngestionOutcome.STORED
    assert results[0].assessment.action == FraudAction.WARNING
    assert h.snapshots.all()[0].is_legitimate is False


def test_auto_actions_call_handler_only_when_enabled(make_harness):
    handler = RecordingHandler()
    disabled = make_harness(counts(10_000), action_handler=handler, enable_auto_actions=False)
    enabled = make_harness(counts(10_000), action_handler=handler, enable_auto_actions=True)

    async def scenario(h):
        await h.login()
        await h.schedule()
        return await h.worker.run_cycle()

    asyncio.run(scenario(disabled))
    assert handler.calls == []
    asyncio.run(scenario(enabled))
    assert handler.calls == [(FraudAction.WARNING, "tiktok:vid_1")]


def test_failing_handler_does_not_fail_the_job(make_harness):
    handler = RecordingHandler(error=RuntimeError("moderation service down"))
    h = make_harness(counts(10_000), action_handler=handler, enable_auto_actions=True)

    async def scenario():
        await h.login()
        await h.schedule()
        return await h.worker.run_cycle()

    results = asyncio.run(scenario())
    assert results[0].outcome == IngestionOutcome.STORED
    assert len(handler.calls) == 1


def test_batch_size_limits_jobs_per_cycle(make_harness):
    h = make_harness(counts(1000, 100, 10), batch_size=2)

    async def scenario():
        await h.login()
        for i in range(3):
            await h.schedule(f"vid_{i}")
        first = await h.worker.run_cycle()
        second = await h.worker.run_cycle()
        return first, second

    first, second = asyncio.run(scenario())
    assert len(first) == 2
    assert len(second) == 1


def test_compute_delta_never_negative(make_snapshot):
    previous = make_snapshot(1000, 100, 10)
    current = make_snapshot(900, 90, 10, seconds=60)
    delta = compute_delta(previous, current)
    assert delta.view_delta == 0
    assert delta.like_delta == -10
    assert delta.elapsed_seconds == 60
    assert not delta.is_first
