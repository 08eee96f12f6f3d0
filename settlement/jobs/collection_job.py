"""Metrics collection job payload and its state machine.

    pending -> processing -> completed
                          -> failed -> pending (retry, while retries remain)
                          -> failed (terminal)

``retry_at`` is persisted with the job so a delayed retry survives restarts;
the queue uses it as the ready-at score.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from settlement.config import INGESTION_SETTINGS
from settlement.models.db.enums import JobPriority, JobStatus, Platform
from settlement.utils.time import utc_now


class CollectionJob(BaseModel):
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex}")
    promoter_id: str
    campaign_id: str
    platform: Platform
    content_id: str
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    retry_count: int = 0
    max_retries: int = Field(default_factory=lambda: int(INGESTION_SETTINGS["max_retries"]))
    retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    recurring: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def key(self) -> str:
        return f"{self.platform.value}:{self.content_id}"

    def start(self, now: datetime) -> None:
        self.status = JobStatus.PROCESSING
        self.attempts += 1
        self.updated_at = now

    def complete(self, now: datetime) -> None:
        self.status = JobStatus.COMPLETED
        self.retry_at = None
        self.updated_at = now

    def fail(self, error: str, now: datetime) -> None:
        self.status = JobStatus.FAILED
        self.last_error = error
        self.retry_at = None
        self.updated_at = now

    def schedule_retry(self, error: str, delay_seconds: float, now: datetime) -> bool:
        """Move a failed attempt back to pending; False once retries are spent."""
        self.retry_count += 1
        if self.retry_count > self.max_retries:
            self.fail(error, now)
            return False
        self.status = JobStatus.PENDING
        self.last_error = error
        self.retry_at = now + timedelta(seconds=delay_seconds)
        self.updated_at = now
        return True

    def defer(self, until: datetime, reason: str, now: datetime) -> None:
        """Back to pending without spending retry budget (rate limits)."""
        self.status = JobStatus.PENDING
        self.last_error = reason
        self.retry_at = until
        self.updated_at = now

    def next_occurrence(self) -> "CollectionJob":
        """Fresh pending job for the next recurring collection of the same content."""
        return CollectionJob(
            promoter_id=self.promoter_id,
            campaign_id=self.campaign_id,
            platform=self.platform,
            content_id=self.content_id,
            priority=self.priority,
            max_retries=self.max_retries,
            recurring=True,
        )


__all__ = ["CollectionJob"]
