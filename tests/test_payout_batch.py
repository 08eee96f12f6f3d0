"""Daily batch: pair fan-out, failure isolation and single-flight locking."""
import asyncio
from datetime import date
from decimal import Decimal

import pytest

from settlement.exceptions import BatchInProgressError
from settlement.models.db.enums import BatchStatus, PayoutStatus
from settlement.models.schemas.metrics import ViewRecord
from settlement.models.schemas.payouts import ActivePromotion
from settlement.services.payout_engine import PayoutSettlementEngine

from conftest import BASE_TIME

RUN_DATE = date(2025, 1, 15)

PROMOTIONS = [
    ActivePromotion(promoter_id="promoter_1", campaign_id="campaign_1", rate_per_view=Decimal("1")),
    ActivePromotion(promoter_id="promoter_2", campaign_id="campaign_1", rate_per_view=Decimal("2")),
    ActivePromotion(promoter_id="promoter_3", campaign_id="campaign_1", rate_per_view=Decimal("1")),
]

VIEWS = {
    "promoter_1": [(20_000, True), (5_000, False)],
    "promoter_2": [(10_000, True)],
    "promoter_3": [(100, True)],  # net 95, below minimum
}


@pytest.fixture()
def engine(lock, clock):
    return PayoutSettlementEngine(lock, clock=clock)


def _sources(promotions=PROMOTIONS, views=VIEWS, fail_for=()):
    seen_periods = []

    async def get_active_promotions():
        return list(promotions)

    async def get_view_records(promoter_id, campaign_id, period):
        seen_periods.append(period)
        if promoter_id in fail_for:
            raise RuntimeError("ledger unavailable")
        return [
            ViewRecord(view_count=count, is_legitimate=legit, timestamp=BASE_TIME)
            for count, legit in views.get(promoter_id, [])
        ]

    return get_active_promotions, get_view_records, seen_periods


def test_batch_settles_every_pair_and_flags_below_minimum(engine):
    promotions, records, periods = _sources()
    batch = asyncio.run(engine.run_daily_batch(RUN_DATE, promotions, records))

    assert batch.status == BatchStatus.COMPLETED
    assert batch.total_jobs == 3
    assert batch.completed_jobs == 3
    assert batch.failed_jobs == 0
    assert all(p == engine.settlement_period(RUN_DATE) for p in periods)

    by_promoter = {j.promoter_id: j for j in batch.jobs}
    first = by_promoter["promoter_1"].calculation
    assert first.legitimate_views == 20_000
    assert first.bot_views == 5_000
    assert first.net_amount == Decimal("19000.00")
    assert by_promoter["promoter_2"].calculation.net_amount == Decimal("19000.00")

    small = by_promoter["promoter_3"]
    assert small.flagged
    assert not small.payable
    assert by_promoter["promoter_1"].payable

    assert batch.total_platform_fees == Decimal("1000.00") + Decimal("1000.00") + Decimal("5.00")
    assert batch.total_amount == Decimal("19000.00") * 2 + Decimal("95.00")


def test_one_failing_pair_does_not_abort_the_batch(engine):
    promotions, records, _ = _sources(fail_for={"promoter_2"})
    batch = asyncio.run(engine.run_daily_batch(RUN_DATE, promotions, records))

    assert batch.status == BatchStatus.PARTIALLY_FAILED
    assert batch.completed_jobs == 2
    assert batch.failed_jobs == 1
    failed = next(j for j in batch.jobs if j.status == PayoutStatus.FAILED)
    assert failed.promoter_id == "promoter_2"
    assert failed.calculation is None
    assert "ledger unavailable" in failed.error


def test_duplicate_pairs_are_settled_once(engine):
    promotions, records, periods = _sources(promotions=PROMOTIONS + [PROMOTIONS[0]])
    batch = asyncio.run(engine.run_daily_batch(RUN_DATE, promotions, records))
    assert batch.total_jobs == 3
    assert len(periods) == 3


def test_empty_batch_completes(engine):
    promotions, records, _ = _sources(promotions=[])
    batch = asyncio.run(engine.run_daily_batch(RUN_DATE, promotions, records))
    assert batch.status == BatchStatus.COMPLETED
    assert batch.total_jobs == 0
    assert batch.total_amount == Decimal("0")


def test_contended_batch_raises_and_keeps_lock(engine, lock):
    promotions, records, periods = _sources()

    async def scenario():
        assert await lock.acquire(engine.lock_key, 60)
        with pytest.raises(BatchInProgressError):
            await engine.run_daily_batch(RUN_DATE, promotions, records)
        assert await lock.is_locked(engine.lock_key)

    asyncio.run(scenario())
    assert periods == []


def test_lock_is_released_after_batch(engine, lock):
    promotions, records, _ = _sources()

    async def scenario():
        await engine.run_daily_batch(RUN_DATE, promotions, records)
        return await lock.is_locked(engine.lock_key)

    assert asyncio.run(scenario()) is False


def test_report_lists_pairs_and_totals(engine):
    promotions, records, _ = _sources(fail_for={"promoter_2"})
    batch = asyncio.run(engine.run_daily_batch(RUN_DATE, promotions, records))
    report = engine.generate_report(batch)
    assert f"Payout settlement report {batch.id}" in report
    assert "Jobs: 3 total, 2 completed, 1 failed" in report
    assert "Success rate: 66.7%" in report
    assert "promoter_3/campaign_1: completed" in report
    assert "[below minimum]" in report
    assert "promoter_2/campaign_1: failed (RuntimeError: ledger unavailable)" in report
