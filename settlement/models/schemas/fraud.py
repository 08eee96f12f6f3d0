"""Fraud assessment schemas."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from settlement.models.db.enums import Confidence, FraudAction
from settlement.utils.time import utc_now


class FraudMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    view_like_ratio: float = Field(ge=0)
    view_comment_ratio: float = Field(ge=0)
    spike_detected: bool = False
    spike_percentage: Optional[float] = None
    views_per_minute: Optional[float] = None
    snapshots_analyzed: int = Field(ge=0, default=0)


class FraudAssessment(BaseModel):
    """Score for one promoter/campaign pair over a window; replaced on every cycle."""
    model_config = ConfigDict(frozen=True)

    promoter_id: str
    campaign_id: str
    bot_score: float = Field(ge=0, le=100)
    confidence: Confidence
    action: FraudAction
    metrics: FraudMetrics
    reason: str
    triggered_rules: List[str] = Field(default_factory=list)
    assessed_at: datetime = Field(default_factory=utc_now)

    @property
    def views_legitimate(self) -> bool:
        return self.action not in (FraudAction.WARNING, FraudAction.BAN)


__all__ = ["FraudMetrics", "FraudAssessment"]
