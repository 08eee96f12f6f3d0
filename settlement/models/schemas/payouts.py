"""
Payout schemas: per-pair calculations, their business-rule validation, and the
daily batch that aggregates them.

Money is ``Decimal`` throughout. ``PayoutCalculation`` enforces its arithmetic
invariants at construction, so a calculation that exists is internally
consistent; ``PayoutValidation`` carries the softer business rules.
"""
from __future__ import annotations

import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from settlement.exceptions import InvalidStatusTransition
from settlement.models.db.enums import BatchStatus, PayoutStatus, PAYOUT_TRANSITIONS


class PayoutPeriod(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime  # inclusive

    @model_validator(mode="after")
    def _ordered(self) -> "PayoutPeriod":
        if self.end < self.start:
            raise ValueError("period end precedes start")
        return self

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class ActivePromotion(BaseModel):
    model_config = ConfigDict(frozen=True)

    promoter_id: str = Field(min_length=1)
    campaign_id: str = Field(min_length=1)
    rate_per_view: Decimal

    @property
    def pair_key(self) -> tuple[str, str]:
        return (self.promoter_id, self.campaign_id)


class PayoutCalculation(BaseModel):
    model_config = ConfigDict(frozen=True)

    promoter_id: str
    campaign_id: str
    total_views: int = Field(ge=0)
    legitimate_views: int = Field(ge=0)
    bot_views: int = Field(ge=0)
    rate_per_view: Decimal
    platform_fee_percentage: Decimal
    gross_amount: Decimal
    platform_fee: Decimal
    net_amount: Decimal
    status: PayoutStatus = PayoutStatus.PENDING
    failure_reason: Optional[str] = None

    @model_validator(mode="after")
    def _invariants(self) -> "PayoutCalculation":
        if self.legitimate_views + self.bot_views != self.total_views:
            raise ValueError("legitimate_views + bot_views must equal total_views")
        if self.gross_amount != self.legitimate_views * self.rate_per_view:
            raise ValueError("gross_amount must equal legitimate_views * rate_per_view")
        if self.net_amount != self.gross_amount - self.platform_fee:
            raise ValueError("net_amount must equal gross_amount - platform_fee")
        return self

    @property
    def bot_ratio(self) -> float:
        if self.total_views == 0:
            return 0.0
        return self.bot_views / self.total_views

    def transition(self, status: PayoutStatus, failure_reason: Optional[str] = None) -> "PayoutCalculation":
        """Return a copy in ``status``; only forward moves are allowed."""
        if status not in PAYOUT_TRANSITIONS[self.status]:
            raise InvalidStatusTransition(self.status.value, status.value)
        return self.model_copy(update={"status": status, "failure_reason": failure_reason})


class PayoutValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    below_minimum: bool = False


class PayoutJob(BaseModel):
    """Outcome of one promoter/campaign pair inside a batch."""
    model_config = ConfigDict(frozen=True)

    promoter_id: str
    campaign_id: str
    status: PayoutStatus
    calculation: Optional[PayoutCalculation] = None
    validation: Optional[PayoutValidation] = None
    error: Optional[str] = None
    processed_at: datetime

    @property
    def flagged(self) -> bool:
        v = self.validation
        return bool(v and (v.below_minimum or v.warnings or v.errors))

    @property
    def payable(self) -> bool:
        c, v = self.calculation, self.validation
        return bool(
            self.status == PayoutStatus.COMPLETED
            and c is not None and v is not None
            and v.is_valid and not v.below_minimum
            and c.net_amount > 0
        )


class PayoutBatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    date: dt.date
    period: PayoutPeriod
    jobs: Tuple[PayoutJob, ...] = ()
    total_jobs: int = Field(ge=0)
    completed_jobs: int = Field(ge=0)
    failed_jobs: int = Field(ge=0)
    total_amount: Decimal = Decimal("0")
    total_platform_fees: Decimal = Decimal("0")
    status: BatchStatus
    started_at: datetime
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _counts_reconcile(self) -> "PayoutBatch":
        if self.completed_jobs + self.failed_jobs != self.total_jobs:
            raise ValueError("completed_jobs + failed_jobs must equal total_jobs")
        if len(self.jobs) != self.total_jobs:
            raise ValueError("total_jobs must match the number of job results")
        return self


class PayoutNotification(BaseModel):
    promoter_id: str
    campaign_id: str
    amount: Decimal
    status: PayoutStatus
    message: str
    transaction_id: Optional[str] = None


__all__ = [
    "PayoutPeriod",
    "ActivePromotion",
    "PayoutCalculation",
    "PayoutValidation",
    "PayoutJob",
    "PayoutBatch",
    "PayoutNotification",
]
