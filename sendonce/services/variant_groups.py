"""
Variant grouping - resolves the A/B test family of a campaign.

A family is the root campaign plus every campaign whose variant_parent_id
points at it. Resolving any member returns the same sorted id list, so the
joined ids work as a dedupe key within a finalizer pass.
"""
import logging
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sendonce.models.campaign import Campaign

logger = logging.getLogger(__name__)


class CampaignNotFoundError(Exception):
    """Raised when a referenced campaign no longer exists."""

    def __init__(self, campaign_id: int):
        self.campaign_id = campaign_id
        super().__init__(f"Campaign #{campaign_id} not found")


def group_key(campaign_ids: Iterable[int]) -> str:
    """Deterministic key for a variant group: sorted ids joined by commas."""
    return ",".join(str(cid) for cid in sorted(set(campaign_ids)))


async def resolve_group(db: AsyncSession, campaign_id: int) -> list[int]:
    """
    Return every campaign id in campaign_id's variant family, sorted ascending.

    Raises CampaignNotFoundError if campaign_id does not exist.
    """
    result = await db.execute(
        select(Campaign.id, Campaign.variant_parent_id).where(Campaign.id == campaign_id)
    )
    row = result.one_or_none()
    if row is None:
        raise CampaignNotFoundError(campaign_id)

    root_id = row.variant_parent_id if row.variant_parent_id is not None else row.id

    children_result = await db.execute(
        select(Campaign.id).where(Campaign.variant_parent_id == root_id)
    )
    members = {campaign_id, root_id}
    members.update(children_result.scalars().all())

    if len(members) > 1:
        logger.debug("Campaign #%d resolved to variant group %s", campaign_id, group_key(members))
    return sorted(members)
