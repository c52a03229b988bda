"""
Broadcast-complete listener - finalizes a send-once campaign as soon as the
dispatch engine reports a finished delivery batch, without waiting for the
next finalizer pass.

The completion check runs for the single campaign named in the event. With
EVENT_FINALIZER_GROUP_AWARE=true it evaluates and finalizes the whole variant
group instead, the same way the periodic finalizer does.

Nothing raised here may reach the dispatch pipeline: failures are logged,
alerted and swallowed.
"""
import asyncio
import logging
from typing import Optional

from sqlalchemy import select

from sendonce.database import async_session_factory
from sendonce.models.campaign import Campaign, SEGMENT_BROADCAST
from sendonce.services.completion import evaluate_group
from sendonce.services.event_bus import drain_events, DELIVERY_BATCH_COMPLETE
from sendonce.services.finalizer import finalize_member, finalize_group
from sendonce.services.send_once_settings import get_send_once, is_finalized
from sendonce.services.variant_groups import resolve_group
from sendonce.utils.alerting import send_alert, AlertType
from sendonce.utils.redis_client import write_heartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "broadcast_complete"
MAX_EVENTS_PER_CYCLE = 50


async def check_and_finalize(campaign_id: int) -> Optional[str]:
    """
    Run the completion check for one campaign and finalize it when done.

    Returns a short outcome label: "missing", "not_segment", "not_send_once",
    "already_finalized", "pending", "not_started", or the finalizer status.
    """
    from sendonce.config import get_settings
    group_aware = get_settings().event_finalizer_group_aware

    async with async_session_factory() as db:
        result = await db.execute(
            select(Campaign.id, Campaign.campaign_type).where(Campaign.id == campaign_id)
        )
        row = result.one_or_none()
        if row is None:
            logger.warning("Delivery event for unknown campaign #%d", campaign_id)
            return "missing"

        if row.campaign_type != SEGMENT_BROADCAST:
            return "not_segment"

        if not await get_send_once(db, campaign_id):
            return "not_send_once"

        # Fresh read: another run may have finalized it a moment ago
        if await is_finalized(db, campaign_id):
            logger.info(
                "Campaign #%d already has a finalization record, skipping", campaign_id,
                extra={"campaign_id": campaign_id},
            )
            return "already_finalized"

        members = await resolve_group(db, campaign_id) if group_aware else [campaign_id]
        group = await evaluate_group(db, members)

        if group["pending_count"] > 0:
            logger.debug(
                "Campaign #%d still has %d pending recipient(s)", campaign_id, group["pending_count"],
                extra={"campaign_id": campaign_id, "pending_count": group["pending_count"]},
            )
            return "pending"

        if group["total_sent_count"] <= 0:
            return "not_started"

        if group_aware:
            outcome = await finalize_group(db, group)
            return outcome["status"]

        member = await finalize_member(db, campaign_id, group["sent_counts"].get(campaign_id, 0))
        return member["status"]


async def on_delivery_batch_complete(campaign_id: int) -> None:
    """Entry point for the dispatch engine's "delivery batch complete" signal."""
    try:
        outcome = await check_and_finalize(campaign_id)
        logger.debug(
            "Delivery batch complete for campaign #%d: %s", campaign_id, outcome,
            extra={"campaign_id": campaign_id, "outcome": outcome},
        )
    except Exception as e:
        logger.error(
            "Event-triggered finalization failed for campaign #%d: %s", campaign_id, str(e),
            extra={"campaign_id": campaign_id},
        )
        await send_alert(
            AlertType.EVENT_FINALIZE_FAILED,
            f"Event-triggered finalization failed for campaign #{campaign_id}: {str(e)}",
            extra={"campaign_id": campaign_id},
        )


async def process_pending_events(max_events: int = MAX_EVENTS_PER_CYCLE) -> int:
    """Drain the event bus and handle delivery_batch_complete events. Returns events handled."""
    handled = 0
    for event in await drain_events(max_events):
        if event.get("type") != DELIVERY_BATCH_COMPLETE:
            continue

        raw_id = (event.get("data") or {}).get("campaign_id")
        try:
            campaign_id = int(raw_id)
        except (TypeError, ValueError):
            logger.warning("Ignoring delivery event without a valid campaign_id: %r", raw_id)
            continue

        await on_delivery_batch_complete(campaign_id)
        handled += 1

    return handled


async def run_broadcast_complete_listener():
    """Main loop - drain delivery events every EVENT_POLL_INTERVAL_SECONDS."""
    from sendonce.config import get_settings
    interval = get_settings().event_poll_interval_seconds
    logger.info("Broadcast-complete listener started (poll every %ds)", interval)

    while True:
        await write_heartbeat(WORKER_NAME, ttl_seconds=interval * 4 + 60)
        try:
            handled = await process_pending_events()
            if handled:
                logger.info("Handled %d delivery batch event(s)", handled)
        except Exception as e:
            logger.error("Broadcast-complete listener error: %s", str(e))

        await asyncio.sleep(interval)
