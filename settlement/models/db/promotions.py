"""Active promoter/campaign pairs and what each view pays."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from settlement.database import Base


class Promotion(Base):
    __tablename__ = "promotions"
    __table_args__ = (UniqueConstraint("promoter_id", "campaign_id", name="uq_promotion_pair"),)

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    promoter_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    rate_per_view: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
