"""Settlement ledger: payout batches, per-pair payouts, platform revenue."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List

from sqlalchemy import Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from settlement.database import Base
from .enums import BatchStatus, PayoutStatus


class PayoutBatchRecord(Base):
    __tablename__ = "payout_batches"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[BatchStatus] = mapped_column(Enum(BatchStatus), nullable=False)
    total_jobs: Mapped[int] = mapped_column(Integer, default=0)
    completed_jobs: Mapped[int] = mapped_column(Integer, default=0)
    failed_jobs: Mapped[int] = mapped_column(Integer, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    total_platform_fees: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payouts: Mapped[List["PayoutRecord"]] = relationship("PayoutRecord", back_populates="batch")


class PayoutRecord(Base):
    __tablename__ = "payouts"
    # A pair is paid at most once per settlement period; reruns update in place.
    __table_args__ = (
        UniqueConstraint("promoter_id", "campaign_id", "period_start", name="uq_payout_pair_period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    batch_id: Mapped[str] = mapped_column(String(64), ForeignKey("payout_batches.id"), nullable=False, index=True)
    promoter_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    total_views: Mapped[int] = mapped_column(Integer, default=0)
    legitimate_views: Mapped[int] = mapped_column(Integer, default=0)
    bot_views: Mapped[int] = mapped_column(Integer, default=0)
    rate_per_view: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    platform_fee_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)

    status: Mapped[PayoutStatus] = mapped_column(Enum(PayoutStatus), nullable=False, index=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    batch: Mapped[PayoutBatchRecord] = relationship("PayoutBatchRecord", back_populates="payouts")


class PlatformRevenue(Base):
    __tablename__ = "platform_revenue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, unique=True)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_fees: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
