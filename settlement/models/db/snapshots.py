"""SQLAlchemy model for stored metric snapshots."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base
from .enums import FraudAction, Platform


class MetricSnapshot(Base):
    __tablename__ = "metric_snapshots"
    __table_args__ = (
        Index("ix_metric_snapshots_content_ts", "platform", "content_id", "observed_at"),
        Index("ix_metric_snapshots_pair_ts", "promoter_id", "campaign_id", "observed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    platform: Mapped[Platform] = mapped_column(Enum(Platform), nullable=False)
    content_id: Mapped[str] = mapped_column(String(255), nullable=False)
    promoter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)

    view_count: Mapped[int] = mapped_column(Integer, default=0)
    like_count: Mapped[int] = mapped_column(Integer, default=0)
    comment_count: Mapped[int] = mapped_column(Integer, default=0)
    share_count: Mapped[int] = mapped_column(Integer, default=0)
    engagement_rate: Mapped[float] = mapped_column(Float, default=0.0)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Delta to the previous snapshot of the same content
    view_delta: Mapped[int] = mapped_column(Integer, default=0)
    like_delta: Mapped[int] = mapped_column(Integer, default=0)
    comment_delta: Mapped[int] = mapped_column(Integer, default=0)
    share_delta: Mapped[int] = mapped_column(Integer, default=0)
    elapsed_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    is_first: Mapped[bool] = mapped_column(Boolean, default=False)

    # Fraud verdict at ingestion time
    is_legitimate: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    bot_score: Mapped[float] = mapped_column(Float, default=0.0)
    fraud_action: Mapped[FraudAction] = mapped_column(Enum(FraudAction), default=FraudAction.NONE)
