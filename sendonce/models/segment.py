"""
Segment models - opaque recipient sets and their attachment to campaigns.
Read-only for the send-once service; segmentation logic lives elsewhere.
"""
from typing import Optional
from sqlalchemy import String, Integer, Boolean, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sendonce.database import Base


class Segment(Base):
    __tablename__ = "segments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    def __repr__(self) -> str:
        return f"<Segment #{self.id} {self.name}>"


class SegmentMembership(Base):
    __tablename__ = "segment_memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    segment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("segments.id", ondelete="CASCADE"), nullable=False
    )
    recipient_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # Manually removed members stay in the table but are no longer reachable
    manually_removed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("segment_id", "recipient_id", name="uq_segment_memberships_member"),
        Index("ix_segment_memberships_recipient", "recipient_id"),
    )


class CampaignSegment(Base):
    """Included (is_excluded=False) or excluded segment of a campaign."""
    __tablename__ = "campaign_segments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    segment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("segments.id", ondelete="CASCADE"), nullable=False
    )
    is_excluded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("campaign_id", "segment_id", name="uq_campaign_segments_pair"),
        Index("ix_campaign_segments_campaign", "campaign_id"),
    )

    def __repr__(self) -> str:
        role = "excluded" if self.is_excluded else "included"
        return f"<CampaignSegment campaign={self.campaign_id} segment={self.segment_id} {role}>"
