"""
Send-once models - the per-campaign flag and the finalization record.

SendOnceSetting lives in a side table keyed by campaign id so the external
campaigns table needs no extra column.

FinalizationRecord is the single source of truth for "this campaign is
finalized". The unique constraint on campaign_id is what makes concurrent
finalize attempts safe: exactly one insert wins.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Integer, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sendonce.database import Base


class SendOnceSetting(Base):
    __tablename__ = "send_once_settings"

    campaign_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), primary_key=True
    )
    send_once: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )
    # Last applied pass that evaluated this campaign; candidate pages rotate on it
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<SendOnceSetting campaign={self.campaign_id} send_once={self.send_once}>"


class FinalizationRecord(Base):
    __tablename__ = "send_once_finalizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    finalized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("campaign_id", name="uq_send_once_finalizations_campaign_id"),
    )

    def __repr__(self) -> str:
        return f"<FinalizationRecord campaign={self.campaign_id} sent={self.sent_count}>"
