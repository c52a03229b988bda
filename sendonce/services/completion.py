"""
Completion detection - decides which send-once variant groups are done.

Candidate campaigns are published segment broadcasts with send-once enabled
and no finalization record. Each candidate is expanded to its variant group;
a group is evaluated once per pass even when several of its members are
candidates (A/B parent and child both show up in the candidate query).

A group is complete when no recipient is pending AND the group has sent at
least one message. A zero-sent group is "not started", never complete:
empty segments also produce zero pending.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import select, update, nulls_first
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sendonce.models.campaign import Campaign, SEGMENT_BROADCAST
from sendonce.models.send_once import SendOnceSetting, FinalizationRecord
from sendonce.services.eligibility import pending_count
from sendonce.services.variant_groups import resolve_group, group_key, CampaignNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


async def fetch_candidates(db: AsyncSession, limit: Optional[int] = None) -> list[Campaign]:
    """
    Send-once enabled, published segment broadcasts without a finalization record.
    Bounded by `limit` to cap memory and lock time per pass.

    Never-checked campaigns come first, then the least recently checked, so
    campaigns that stay incomplete cannot hold the page against the rest.
    """
    if limit is None:
        from sendonce.config import get_settings
        limit = get_settings().send_once_batch_size or DEFAULT_BATCH_SIZE

    already_finalized = select(FinalizationRecord.id).where(
        FinalizationRecord.campaign_id == Campaign.id
    ).exists()

    result = await db.execute(
        select(Campaign)
        .join(SendOnceSetting, SendOnceSetting.campaign_id == Campaign.id)
        .where(
            SendOnceSetting.send_once == True,
            Campaign.is_published == True,
            Campaign.campaign_type == SEGMENT_BROADCAST,
            ~already_finalized,
        )
        .order_by(nulls_first(SendOnceSetting.last_checked_at.asc()), Campaign.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def mark_checked(db: AsyncSession, campaign_ids: Iterable[int], checked_at: datetime) -> None:
    """Stamp last_checked_at for evaluated campaigns. Members without a settings row are skipped."""
    ids = sorted(set(campaign_ids))
    if not ids:
        return
    await db.execute(
        update(SendOnceSetting)
        .where(SendOnceSetting.campaign_id.in_(ids))
        .values(last_checked_at=checked_at, updated_at=SendOnceSetting.updated_at)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def evaluate_group(db: AsyncSession, member_ids: Sequence[int]) -> dict:
    """
    Evaluate one variant group.

    Returns:
        {"member_ids": [...], "group_key": str, "names": {id: name},
         "sent_counts": {id: int}, "total_sent_count": int,
         "pending_count": int, "is_complete": bool, "error": None}

    Database errors propagate to the caller.
    """
    ids = sorted(set(member_ids))

    rows = await db.execute(
        select(Campaign.id, Campaign.name, Campaign.sent_count).where(Campaign.id.in_(ids))
    )
    names: dict[int, str] = {}
    sent_counts: dict[int, int] = {}
    for row in rows.all():
        names[row.id] = row.name
        sent_counts[row.id] = row.sent_count or 0

    pending = await pending_count(db, ids)
    total_sent = sum(sent_counts.values())

    return {
        "member_ids": ids,
        "group_key": group_key(ids),
        "names": names,
        "sent_counts": sent_counts,
        "total_sent_count": total_sent,
        "pending_count": pending,
        "is_complete": pending == 0 and total_sent > 0,
        "error": None,
    }


def _failed_group(candidate_id: int, member_ids: Sequence[int], error: str) -> dict:
    ids = sorted(set(member_ids)) or [candidate_id]
    return {
        "member_ids": ids,
        "group_key": group_key(ids),
        "names": {},
        "sent_counts": {},
        "total_sent_count": 0,
        "pending_count": None,
        "is_complete": False,
        "error": error,
    }


async def find_completed_groups(db: AsyncSession, candidates: Sequence[Campaign]) -> list[dict]:
    """
    Resolve and evaluate each distinct variant group among the candidates.

    Returns one result per group, in candidate order, complete or not. A group
    that could not be evaluated carries an `error` and is_complete=False, so
    the caller never finalizes on an evaluation failure.
    """
    # Read plain ids up front; a rollback below would expire the ORM objects
    candidate_ids = [c.id for c in candidates]
    seen_keys: set[str] = set()
    results: list[dict] = []

    for candidate_id in candidate_ids:
        members: list[int] = []
        try:
            members = await resolve_group(db, candidate_id)
            key = group_key(members)
            if key in seen_keys:
                logger.debug("Campaign #%d already evaluated in group %s", candidate_id, key)
                continue
            seen_keys.add(key)

            result = await evaluate_group(db, members)
        except CampaignNotFoundError as e:
            logger.warning("%s (vanished since candidate query), skipping", e, extra={"campaign_id": candidate_id})
            results.append(_failed_group(candidate_id, members, "campaign not found"))
            continue
        except SQLAlchemyError as e:
            logger.error(
                "Failed to evaluate campaign #%d: %s", candidate_id, str(e),
                extra={"campaign_id": candidate_id},
            )
            await db.rollback()
            if members:
                seen_keys.add(group_key(members))
            results.append(_failed_group(candidate_id, members, str(e)))
            continue

        logger.debug(
            "Group %s: pending=%d sent=%d complete=%s",
            result["group_key"], result["pending_count"], result["total_sent_count"], result["is_complete"],
            extra={"group_key": result["group_key"]},
        )
        results.append(result)

    return results
