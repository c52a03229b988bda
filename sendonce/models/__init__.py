"""
Database models - import all models here so Alembic can discover them.
"""
from sendonce.models.campaign import Campaign
from sendonce.models.segment import Segment, SegmentMembership, CampaignSegment
from sendonce.models.recipient import ChannelOptOut, CategoryOptOut
from sendonce.models.delivery import DeliveryOutcome, OutboundQueueEntry
from sendonce.models.send_once import SendOnceSetting, FinalizationRecord

__all__ = [
    "Campaign",
    "Segment",
    "SegmentMembership",
    "CampaignSegment",
    "ChannelOptOut",
    "CategoryOptOut",
    "DeliveryOutcome",
    "OutboundQueueEntry",
    "SendOnceSetting",
    "FinalizationRecord",
]
