"""
Recipient eligibility - counts recipients still pending for a variant group.

A recipient is pending when it is reachable through a segment included by any
campaign in the group (and not manually removed from that segment) and none
of the five exclusion rules apply:

1. global opt-out of the email channel
2. a delivery outcome (sent or failed) for any campaign in the group
3. a non-terminal outbound queue entry for any campaign in the group
4. membership of a segment excluded by any campaign in the group
5. an opt-out of a category attached to any campaign in the group

Always pass the FULL variant group. Evaluating a single variant ignores
deliveries made through its siblings and the siblings' segments.

Read-only. Database errors propagate; callers must treat them as
"unknown", never as zero pending.
"""
import logging
from typing import Iterable

from sqlalchemy import select, func
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession

from sendonce.models.campaign import Campaign
from sendonce.models.delivery import DeliveryOutcome, OutboundQueueEntry, TERMINAL_QUEUE_STATUSES
from sendonce.models.recipient import ChannelOptOut, CategoryOptOut, EMAIL_CHANNEL
from sendonce.models.segment import CampaignSegment, SegmentMembership

logger = logging.getLogger(__name__)


def _segment_ids(campaign_ids: list[int], excluded: bool):
    return select(CampaignSegment.segment_id).where(
        CampaignSegment.campaign_id.in_(campaign_ids),
        CampaignSegment.is_excluded == excluded,
    )


def _opted_out_of_channel(recipient_id):
    return select(ChannelOptOut.id).where(
        ChannelOptOut.recipient_id == recipient_id,
        ChannelOptOut.channel == EMAIL_CHANNEL,
    ).exists()


def _has_delivery_outcome(recipient_id, campaign_ids: list[int]):
    return select(DeliveryOutcome.id).where(
        DeliveryOutcome.recipient_id == recipient_id,
        DeliveryOutcome.campaign_id.in_(campaign_ids),
    ).exists()


def _is_queued(recipient_id, campaign_ids: list[int]):
    return select(OutboundQueueEntry.id).where(
        OutboundQueueEntry.recipient_id == recipient_id,
        OutboundQueueEntry.campaign_id.in_(campaign_ids),
        OutboundQueueEntry.status.notin_(TERMINAL_QUEUE_STATUSES),
    ).exists()


def _in_excluded_segment(recipient_id, campaign_ids: list[int]):
    excluded_membership = aliased(SegmentMembership)
    return select(excluded_membership.id).where(
        excluded_membership.recipient_id == recipient_id,
        excluded_membership.manually_removed == False,
        excluded_membership.segment_id.in_(_segment_ids(campaign_ids, excluded=True)),
    ).exists()


def _opted_out_of_category(recipient_id, campaign_ids: list[int]):
    categories = select(Campaign.category_id).where(
        Campaign.id.in_(campaign_ids),
        Campaign.category_id.isnot(None),
    )
    return select(CategoryOptOut.id).where(
        CategoryOptOut.recipient_id == recipient_id,
        CategoryOptOut.category_id.in_(categories),
    ).exists()


def pending_recipients_query(campaign_ids: Iterable[int]):
    """
    Build the SELECT of distinct pending recipient ids for a variant group.
    Exposed separately from pending_count so diagnostics can list them.
    """
    ids = sorted(set(campaign_ids))
    if not ids:
        raise ValueError("pending recipients need at least one campaign id")

    membership = aliased(SegmentMembership)
    recipient = membership.recipient_id

    return (
        select(recipient.label("recipient_id"))
        .distinct()
        .where(
            membership.segment_id.in_(_segment_ids(ids, excluded=False)),
            membership.manually_removed == False,
            ~_opted_out_of_channel(recipient),
            ~_has_delivery_outcome(recipient, ids),
            ~_is_queued(recipient, ids),
            ~_in_excluded_segment(recipient, ids),
            ~_opted_out_of_category(recipient, ids),
        )
    )


async def pending_count(db: AsyncSession, campaign_ids: Iterable[int]) -> int:
    """Count unique recipients still pending delivery for the given variant group."""
    ids = sorted(set(campaign_ids))
    pending = pending_recipients_query(ids).subquery()
    result = await db.execute(select(func.count()).select_from(pending))
    count = result.scalar() or 0
    logger.debug("Pending recipients for campaigns %s: %d", ids, count)
    return count


async def pending_recipient_ids(
    db: AsyncSession,
    campaign_ids: Iterable[int],
    limit: int = 100,
) -> list[int]:
    """First `limit` pending recipient ids, ascending. Used by operator previews."""
    query = pending_recipients_query(campaign_ids).order_by("recipient_id").limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())
