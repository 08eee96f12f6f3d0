"""
Engagement metric schemas: raw platform observations, normalized snapshots,
deltas between consecutive snapshots and the view records settlement reads.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from settlement.models.db.enums import Platform, FraudAction
from settlement.utils.time import utc_now


class RawMetricsSnapshot(BaseModel):
    """
    One platform fetch, exactly as reported. Counts may be missing, fractional or
    negative; the ingestion worker validates and normalizes them.
    """
    platform: Platform
    content_id: str
    user_id: str
    view_count: Optional[float] = None
    like_count: Optional[float] = None
    comment_count: Optional[float] = None
    share_count: Optional[float] = None
    fetched_at: datetime = Field(default_factory=utc_now)
    raw_response: Dict[str, Any] = Field(default_factory=dict)


class ViewMetricsSnapshot(BaseModel):
    """
    One normalized observation of a single piece of content.
    Immutable once built; the next fetch produces a new snapshot.
    """
    model_config = ConfigDict(frozen=True)

    platform: Platform
    content_id: str = Field(min_length=1)
    promoter_id: str = Field(min_length=1)
    campaign_id: str = Field(min_length=1)
    view_count: int = Field(ge=0)
    like_count: int = Field(ge=0)
    comment_count: int = Field(ge=0)
    share_count: int = Field(ge=0, default=0)
    timestamp: datetime
    engagement_rate: float = Field(ge=0, default=0.0, description="(likes+comments+shares)/views")

    @property
    def content_key(self) -> str:
        return f"{self.platform.value}:{self.content_id}"

    @property
    def pair_key(self) -> str:
        return f"{self.promoter_id}:{self.campaign_id}"


class SnapshotDelta(BaseModel):
    model_config = ConfigDict(frozen=True)

    view_delta: int = Field(ge=0)
    like_delta: int
    comment_delta: int
    share_delta: int
    elapsed_seconds: float = Field(ge=0)
    is_first: bool = False


class StoredSnapshot(BaseModel):
    """What the snapshot store persists per accepted observation."""
    model_config = ConfigDict(frozen=True)

    snapshot: ViewMetricsSnapshot
    delta: SnapshotDelta
    is_legitimate: bool = True
    bot_score: float = Field(ge=0, le=100, default=0.0)
    fraud_action: FraudAction = FraudAction.NONE


class ViewRecord(BaseModel):
    view_count: int = Field(ge=0)
    is_legitimate: bool
    timestamp: datetime


__all__ = [
    "RawMetricsSnapshot",
    "ViewMetricsSnapshot",
    "SnapshotDelta",
    "StoredSnapshot",
    "ViewRecord",
]
