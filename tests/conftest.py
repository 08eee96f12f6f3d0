"""Pytest fixtures and factories.

Everything async is driven with ``asyncio.run`` inside plain test functions;
collaborators are in-memory, clocks are fixed and sleeps are recorded instead
of awaited.
"""
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure project root on sys.path so 'settlement' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from settlement.database import Base  # noqa: E402
import settlement.models.db  # noqa: E402,F401  (registers the tables on Base.metadata)
from settlement.models.db.enums import Platform  # noqa: E402
from settlement.models.schemas.metrics import ViewMetricsSnapshot  # noqa: E402
from settlement.models.schemas.payments import BankAccount, PaymentRequest, RecipientInfo  # noqa: E402
from settlement.utils.kvstore import InMemoryKeyValueStore  # noqa: E402
from settlement.utils.locks import DistributedLock  # noqa: E402

# 2025-01-15 10:00 in Asia/Jakarta
BASE_TIME = datetime(2025, 1, 15, 3, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock; ``epoch`` feeds components that want a float timestamp."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def epoch(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class SleepRecorder:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def sleeps():
    return SleepRecorder()


@pytest.fixture()
def store(clock):
    return InMemoryKeyValueStore(clock=clock.epoch)


@pytest.fixture()
def lock(store):
    return DistributedLock(store)


@pytest.fixture()
def session_factory():
    # single shared connection so every session sees the same in-memory database
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


# ---------- Data factory helpers ----------

@pytest.fixture()
def make_snapshot():
    def _create(
        views: int,
        likes: int = 0,
        comments: int = 0,
        *,
        seconds: float = 0,
        content_id: str = "vid_1",
        promoter_id: str = "promoter_1",
        campaign_id: str = "campaign_1",
        platform: Platform = Platform.TIKTOK,
        at: datetime | None = None,
    ) -> ViewMetricsSnapshot:
        return ViewMetricsSnapshot(
            platform=platform,
            content_id=content_id,
            promoter_id=promoter_id,
            campaign_id=campaign_id,
            view_count=views,
            like_count=likes,
            comment_count=comments,
            timestamp=(at or BASE_TIME) + timedelta(seconds=seconds),
        )
    return _create


@pytest.fixture()
def make_payment_request():
    def _create(promoter_id: str = "promoter_1", amount: str = "95000", **kwargs) -> PaymentRequest:
        return PaymentRequest(
            promoter_id=promoter_id,
            amount=Decimal(amount),
            description="Payout campaign_1",
            recipient=RecipientInfo(
                name=f"Creator {promoter_id}",
                email=f"{promoter_id}@example.com",
                bank_account=BankAccount(bank_code="BCA", account_number="1234567890", account_name="Creator"),
            ),
            metadata={"campaign_id": "campaign_1"},
            **kwargs,
        )
    return _create
