"""Service wiring.

One ``ServiceContext`` holds every long-lived component of the pipeline. It is
built once at startup (``build_context``) and handed to whatever needs it: the
FastAPI app keeps it on ``app.state``, tests build their own around in-memory
collaborators. Nothing here is a module-level singleton.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from settlement.config import (
    INGESTION_SETTINGS,
    PAYMENT_GATEWAY,
    SCHEDULER_SETTINGS,
    SETTLEMENT_TIMEZONE,
    STORE_SETTINGS,
)
from settlement.database import SessionLocal
from settlement.integrations.gateways import GatewayProvider, create_gateway
from settlement.integrations.oauth import default_oauth_providers
from settlement.integrations.platforms import RateLimitedPlatformClient
from settlement.jobs.collection_job import CollectionJob
from settlement.jobs.scheduler import DailyTask, RecurringTask, Scheduler
from settlement.jobs.store_queue import KeyValueJobQueue
from settlement.jobs.worker_ingestion import FraudActionHandler, MetricsIngestionWorker
from settlement.services.credential_manager import CredentialManager
from settlement.services.fraud_detection import FraudDetectionEngine
from settlement.services.ledger import SqlSettlementLedger, SqlSnapshotStore
from settlement.services.notifications import NotificationDispatcher, PayoutNotifier
from settlement.services.payment_processor import PaymentSettlementProcessor
from settlement.services.payout_engine import PayoutSettlementEngine
from settlement.services.settlement_runner import DailySettlementRunner, RecipientResolver, SettlementCollaborators
from settlement.utils import get_logger
from settlement.utils.kvstore import KeyValueStore, create_store
from settlement.utils.locks import DistributedLock
from settlement.utils.ratelimiter import PlatformRateLimiter

logger = get_logger(__name__)

INGESTION_TASK = "metrics-ingestion"
SETTLEMENT_TASK = "daily-settlement"


@dataclass
class ServiceContext:
    store: KeyValueStore
    lock: DistributedLock
    rate_limiter: PlatformRateLimiter
    platform_client: RateLimitedPlatformClient
    credentials: CredentialManager
    fraud_engine: FraudDetectionEngine
    snapshot_store: SqlSnapshotStore
    ledger: SqlSettlementLedger
    queue: KeyValueJobQueue[CollectionJob]
    dead_letters: KeyValueJobQueue[CollectionJob]
    worker: MetricsIngestionWorker
    payout_engine: PayoutSettlementEngine
    gateway: GatewayProvider
    dispatcher: NotificationDispatcher
    payment_processor: PaymentSettlementProcessor
    runner: DailySettlementRunner
    scheduler: Scheduler

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.store.close()
        logger.info("Service context closed")


def _job_queue(store: KeyValueStore, name: str) -> KeyValueJobQueue[CollectionJob]:
    return KeyValueJobQueue(
        store,
        name,
        serialize=lambda job: job.model_dump_json(),
        deserialize=CollectionJob.model_validate_json,
    )


async def build_context(
    *,
    store: Optional[KeyValueStore] = None,
    session_factory: sessionmaker[Session] | None = None,
    gateway: Optional[GatewayProvider] = None,
    recipient_resolver: Optional[RecipientResolver] = None,
    action_handler: Optional[FraudActionHandler] = None,
) -> ServiceContext:
    """Assemble the pipeline; payments run only when a recipient resolver is given."""
    store = store or await create_store()
    session_factory = session_factory or SessionLocal
    prefix = str(STORE_SETTINGS["key_prefix"])

    lock = DistributedLock(store, namespace=f"{prefix}:lock")
    rate_limiter = PlatformRateLimiter(store)
    platform_client = RateLimitedPlatformClient(rate_limiter)
    credentials = CredentialManager(store, lock, default_oauth_providers())
    fraud_engine = FraudDetectionEngine()
    snapshot_store = SqlSnapshotStore(session_factory)
    ledger = SqlSettlementLedger(session_factory, snapshot_store=snapshot_store)

    queue = _job_queue(store, f"{prefix}:collection")
    dead_letters = _job_queue(store, f"{prefix}:collection:dead")
    worker = MetricsIngestionWorker(
        queue,
        platform_client,
        credentials,
        snapshot_store,
        fraud_engine,
        dead_letters=dead_letters,
        action_handler=action_handler,
    )

    dispatcher = NotificationDispatcher()
    gateway = gateway or create_gateway(PAYMENT_GATEWAY)
    payment_processor = PaymentSettlementProcessor(gateway, lock, dispatcher=dispatcher)
    payout_engine = PayoutSettlementEngine(lock)
    runner = DailySettlementRunner(
        payout_engine,
        SettlementCollaborators(
            get_active_promotions=ledger.get_active_promotions,
            get_view_records=ledger.get_view_records,
            save_payout_batch=ledger.save_payout_batch,
            save_payouts=ledger.save_payouts,
            update_platform_revenue=ledger.update_platform_revenue,
            send_payout_notifications=PayoutNotifier(dispatcher),
            get_payout_statuses=ledger.payout_statuses,
        ),
        payment_processor=payment_processor,
        recipient_resolver=recipient_resolver,
    )

    scheduler = Scheduler()
    scheduler.add(RecurringTask(
        INGESTION_TASK,
        float(INGESTION_SETTINGS["collection_interval_seconds"]),
        worker.run_cycle,
    ))
    scheduler.add(DailyTask(
        SETTLEMENT_TASK,
        int(SCHEDULER_SETTINGS["settlement_hour"]),
        int(SCHEDULER_SETTINGS["settlement_minute"]),
        SETTLEMENT_TIMEZONE,
        runner.execute_scheduled_payout,
    ))

    logger.info("Service context built", gateway=type(gateway).__name__, payments_enabled=recipient_resolver is not None)
    return ServiceContext(
        store=store,
        lock=lock,
        rate_limiter=rate_limiter,
        platform_client=platform_client,
        credentials=credentials,
        fraud_engine=fraud_engine,
        snapshot_store=snapshot_store,
        ledger=ledger,
        queue=queue,
        dead_letters=dead_letters,
        worker=worker,
        payout_engine=payout_engine,
        gateway=gateway,
        dispatcher=dispatcher,
        payment_processor=payment_processor,
        runner=runner,
        scheduler=scheduler,
    )


__all__ = ["ServiceContext", "build_context", "INGESTION_TASK", "SETTLEMENT_TASK"]
