"""
Send-once settings API - used by the campaign editing UI.

- GET /api/v1/campaigns/send-once?ids=1,2,3  - batch flag lookup
- GET /api/v1/campaigns/{id}/send-once       - flag + finalization status
- PUT /api/v1/campaigns/{id}/send-once       - set the flag (409 once finalized)
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sendonce.database import get_db
from sendonce.models.campaign import Campaign
from sendonce.schemas.send_once import SendOnceUpdate, SendOnceStatus, SendOnceBatchResponse
from sendonce.services.send_once_settings import (
    get_send_once,
    get_send_once_batch,
    get_finalization,
    set_send_once,
    SendOnceLockedError,
)
from sendonce.services.variant_groups import CampaignNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/campaigns", tags=["send-once"])

MAX_BATCH_IDS = 200


def _parse_ids(raw: str) -> list[int]:
    try:
        ids = [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(status_code=400, detail="ids must be a comma-separated list of integers")
    if not ids:
        raise HTTPException(status_code=400, detail="At least one campaign id is required")
    if len(ids) > MAX_BATCH_IDS:
        raise HTTPException(status_code=400, detail=f"At most {MAX_BATCH_IDS} ids per request")
    return ids


async def _status(db: AsyncSession, campaign_id: int) -> SendOnceStatus:
    record = await get_finalization(db, campaign_id)
    return SendOnceStatus(
        campaign_id=campaign_id,
        send_once=await get_send_once(db, campaign_id),
        finalized=record is not None,
        finalized_at=record.finalized_at if record else None,
        sent_count_at_finalization=record.sent_count if record else None,
    )


@router.get("/send-once", response_model=SendOnceBatchResponse)
async def get_send_once_flags(
    ids: str = Query(..., description="Comma-separated campaign ids"),
    db: AsyncSession = Depends(get_db),
):
    """Send-once flags for many campaigns in one query."""
    # Request-scoped cache: lives only as long as this call
    cache: dict[int, bool] = {}
    flags = await get_send_once_batch(db, _parse_ids(ids), cache=cache)
    return SendOnceBatchResponse(campaigns=flags)


@router.get("/{campaign_id}/send-once", response_model=SendOnceStatus)
async def get_campaign_send_once(
    campaign_id: int,
    db: AsyncSession = Depends(get_db),
):
    """Send-once flag and finalization status for one campaign."""
    campaign = await db.get(Campaign, campaign_id)
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return await _status(db, campaign_id)


@router.put("/{campaign_id}/send-once", response_model=SendOnceStatus)
async def update_campaign_send_once(
    campaign_id: int,
    payload: SendOnceUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Enable or disable send-once. Locked once the campaign is finalized."""
    try:
        await set_send_once(db, campaign_id, payload.send_once)
    except CampaignNotFoundError:
        raise HTTPException(status_code=404, detail="Campaign not found")
    except SendOnceLockedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return await _status(db, campaign_id)
