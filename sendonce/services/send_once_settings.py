"""
Send-once settings - the per-campaign flag and "has this campaign been finalized".

Used by the settings API (campaign editing UI) and by the dispatch engine's
pre-send guard. Lookups that serve many campaigns at once go through
get_send_once_batch() with a cache dict owned by the caller, scoped to one
request or one pass. Nothing here is memoized process-wide.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sendonce.models.campaign import Campaign, SEGMENT_BROADCAST
from sendonce.models.send_once import SendOnceSetting, FinalizationRecord
from sendonce.services.variant_groups import CampaignNotFoundError

logger = logging.getLogger(__name__)


class SendOnceLockedError(Exception):
    """Raised when changing the send-once flag of an already finalized campaign."""

    def __init__(self, campaign_id: int):
        self.campaign_id = campaign_id
        super().__init__(f"Campaign #{campaign_id} is finalized; send-once can no longer change")


async def get_send_once(db: AsyncSession, campaign_id: int) -> bool:
    """Send-once flag for one campaign. No settings row means disabled."""
    result = await db.execute(
        select(SendOnceSetting.send_once).where(SendOnceSetting.campaign_id == campaign_id)
    )
    return bool(result.scalar_one_or_none())


async def get_send_once_batch(
    db: AsyncSession,
    campaign_ids: Iterable[int],
    cache: Optional[dict[int, bool]] = None,
) -> dict[int, bool]:
    """
    Send-once flags for many campaigns in one query.

    Args:
        campaign_ids: Campaigns to look up
        cache: Optional caller-owned dict; hits skip the query and misses are
            written back into it. Scope it to a single request or pass.

    Returns:
        {campaign_id: bool} for every requested id
    """
    ids = sorted(set(campaign_ids))
    if cache is None:
        cache = {}

    missing = [cid for cid in ids if cid not in cache]
    if missing:
        result = await db.execute(
            select(SendOnceSetting.campaign_id, SendOnceSetting.send_once)
            .where(SendOnceSetting.campaign_id.in_(missing))
        )
        found = {row.campaign_id: bool(row.send_once) for row in result.all()}
        for cid in missing:
            cache[cid] = found.get(cid, False)

    return {cid: cache[cid] for cid in ids}


async def get_finalization(db: AsyncSession, campaign_id: int) -> Optional[FinalizationRecord]:
    """The finalization record for a campaign, read fresh from the database."""
    result = await db.execute(
        select(FinalizationRecord)
        .where(FinalizationRecord.campaign_id == campaign_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def is_finalized(db: AsyncSession, campaign_id: int) -> bool:
    """True once a finalization record exists. Publish state is never consulted."""
    result = await db.execute(
        select(FinalizationRecord.id).where(FinalizationRecord.campaign_id == campaign_id)
    )
    return result.scalar_one_or_none() is not None


async def set_send_once(db: AsyncSession, campaign_id: int, enabled: bool) -> SendOnceSetting:
    """
    Insert or update the send-once flag for a campaign.

    Raises:
        CampaignNotFoundError: campaign does not exist
        SendOnceLockedError: campaign is finalized and the value would change
    """
    campaign = await db.get(Campaign, campaign_id)
    if campaign is None:
        raise CampaignNotFoundError(campaign_id)

    setting = await db.get(SendOnceSetting, campaign_id)
    current = bool(setting.send_once) if setting else False

    if current != enabled and await is_finalized(db, campaign_id):
        raise SendOnceLockedError(campaign_id)

    if setting is None:
        setting = SendOnceSetting(campaign_id=campaign_id, send_once=enabled)
        db.add(setting)
    else:
        setting.send_once = enabled
        setting.updated_at = datetime.now(timezone.utc)

    await db.commit()
    logger.info(
        "Updated send_once for campaign #%d: %s", campaign_id, enabled,
        extra={"campaign_id": campaign_id},
    )
    return setting


async def should_block_send(db: AsyncSession, campaign_id: int) -> bool:
    """
    Pre-send guard for the dispatch engine.

    Blocks any send of a segment broadcast that already has a finalization
    record, e.g. after someone re-published a finalized campaign.
    """
    result = await db.execute(
        select(Campaign.campaign_type, Campaign.name).where(Campaign.id == campaign_id)
    )
    row = result.one_or_none()
    if row is None or row.campaign_type != SEGMENT_BROADCAST:
        return False

    record = await get_finalization(db, campaign_id)
    if record is None:
        return False

    logger.warning(
        "Blocked re-send of send-once campaign #%d %s (finalized %s)",
        campaign_id, row.name, record.finalized_at.isoformat() if record.finalized_at else "unknown",
        extra={"campaign_id": campaign_id},
    )
    return True
