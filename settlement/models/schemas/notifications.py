"""Notification template and delivery record schemas."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from settlement.models.db.enums import DeliveryStatus, NotificationChannel, TemplateType
from settlement.utils.time import utc_now


class NotificationTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: TemplateType
    subject: str
    body: str
    variables: FrozenSet[str]
    channels: Tuple[NotificationChannel, ...] = (NotificationChannel.IN_APP,)


class DeliveryRecord(BaseModel):
    channel: NotificationChannel
    status: DeliveryStatus
    error: Optional[str] = None
    sent_at: datetime = Field(default_factory=utc_now)


class NotificationRecord(BaseModel):
    id: str = Field(default_factory=lambda: f"ntf_{uuid.uuid4().hex}")
    recipient_id: str
    template_type: TemplateType
    subject: str
    body: str
    variables: Dict[str, str] = Field(default_factory=dict)
    deliveries: List[DeliveryRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def delivered(self) -> bool:
        return any(d.status == DeliveryStatus.SENT for d in self.deliveries)


__all__ = ["NotificationTemplate", "DeliveryRecord", "NotificationRecord"]
