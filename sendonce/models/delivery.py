"""
Delivery models - outcomes and the outbound queue written by the dispatch engine.
A delivery outcome exists once per (campaign, recipient) attempt, failed or not.
"""
from datetime import datetime, timezone
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from sendonce.database import Base

# Queue statuses that will never produce another send
TERMINAL_QUEUE_STATUSES = ("sent", "cancelled")


class DeliveryOutcome(Base):
    __tablename__ = "delivery_outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    recipient_id: Mapped[int] = mapped_column(Integer, nullable=False)
    is_failed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    delivered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_delivery_outcomes_campaign_recipient", "campaign_id", "recipient_id"),
    )


class OutboundQueueEntry(Base):
    __tablename__ = "outbound_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    recipient_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, rescheduled, sent, cancelled
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_outbound_queue_campaign_recipient", "campaign_id", "recipient_id"),
        Index("ix_outbound_queue_status", "status"),
    )
