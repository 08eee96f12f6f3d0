"""
Request bodies of the operational API.
"""
import datetime as dt
from typing import Optional

from pydantic import BaseModel, Field

from settlement.models.db.enums import JobPriority, Platform


class PayoutRunRequest(BaseModel):
    """Manual settlement trigger; the batch covers the local day before ``date``."""
    date: Optional[dt.date] = Field(default=None, description="Run date (defaults to today in the settlement timezone)")


class CollectionRequest(BaseModel):
    promoter_id: str = Field(..., min_length=1)
    campaign_id: str = Field(..., min_length=1)
    platform: Platform
    content_id: str = Field(..., min_length=1)
    priority: JobPriority = JobPriority.NORMAL
    recurring: bool = True
    delay_seconds: float = Field(default=0.0, ge=0)


__all__ = ["PayoutRunRequest", "CollectionRequest"]
