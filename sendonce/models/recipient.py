"""
Recipient preference models - channel-wide and per-category opt-outs.
Owned by the contact store; the finalizer only reads them.
"""
from datetime import datetime, timezone
from sqlalchemy import String, Integer, DateTime, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sendonce.database import Base

EMAIL_CHANNEL = "email"


class ChannelOptOut(Base):
    __tablename__ = "channel_opt_outs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_id: Mapped[int] = mapped_column(Integer, nullable=False)
    channel: Mapped[str] = mapped_column(String(20), default=EMAIL_CHANNEL, nullable=False)
    reason: Mapped[str] = mapped_column(String(30), default="unsubscribed")  # unsubscribed, bounced, manual
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("recipient_id", "channel", name="uq_channel_opt_outs_recipient_channel"),
    )


class CategoryOptOut(Base):
    __tablename__ = "category_opt_outs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("recipient_id", "category_id", name="uq_category_opt_outs_pair"),
        Index("ix_category_opt_outs_category", "category_id"),
    )
