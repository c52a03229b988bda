"""
Campaign model - the segment-targeted email broadcast entity.
Owned by the dispatch engine: it increments sent_count and publishes campaigns.
The send-once finalizer only ever writes is_published and disabled_from.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from sendonce.database import Base

# Only segment broadcasts are eligible for send-once finalization
SEGMENT_BROADCAST = "segment"
TEMPLATE = "template"


class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    campaign_type: Mapped[str] = mapped_column(
        String(20), default=SEGMENT_BROADCAST, nullable=False
    )  # segment, template
    is_published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Set together with is_published=False when the campaign is finalized
    disabled_from: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Non-null only for A/B test child variants
    variant_parent_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True
    )
    category_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_campaigns_variant_parent_id", "variant_parent_id"),
        Index("ix_campaigns_published_type", "is_published", "campaign_type"),
    )

    def __repr__(self) -> str:
        return f"<Campaign #{self.id} {self.name} sent={self.sent_count}>"
