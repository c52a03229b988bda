"""
Finalizer - records completion and disables delivery, exactly once per campaign.

Per member the order is fixed: insert the finalization record, then unpublish
and set disabled_from. The unique constraint on the record is the only
concurrency control. When two runs race, one insert wins and the loser sees
an IntegrityError, which means "already finalized" and skips the disable step.

If the disable step fails after the record was committed, the member is left
PARTIALLY finalized (record exists, campaign still published). That state is
alerted loudly and is never retried automatically; an operator re-runs the
disable step with reconcile_partial_finalizations().
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sendonce.models.campaign import Campaign
from sendonce.models.send_once import FinalizationRecord
from sendonce.utils.alerting import send_alert, AlertType

logger = logging.getLogger(__name__)


class MemberOutcome:
    """Per-campaign finalization outcomes."""
    FINALIZED = "finalized"
    ALREADY_FINALIZED = "already_finalized"
    FAILED = "failed"
    PARTIAL = "partial"
    NOT_FOUND = "not_found"


async def _insert_record(db: AsyncSession, campaign_id: int, sent_count: int, observed_at: datetime) -> None:
    await db.execute(
        insert(FinalizationRecord).values(
            campaign_id=campaign_id,
            finalized_at=observed_at,
            sent_count=sent_count,
        )
    )
    await db.commit()


async def _campaign_exists(db: AsyncSession, campaign_id: int) -> bool:
    result = await db.execute(select(Campaign.id).where(Campaign.id == campaign_id))
    return result.scalar_one_or_none() is not None


async def _rejected_insert_outcome(db: AsyncSession, campaign_id: int) -> dict:
    """
    Classify an IntegrityError on the record insert. The unique constraint
    means another run won; the campaigns.id foreign key means the campaign
    was deleted since it was evaluated.
    """
    try:
        exists = await _campaign_exists(db, campaign_id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(
            "Failed to look up campaign #%d after a rejected insert: %s", campaign_id, str(e),
            extra={"campaign_id": campaign_id, "outcome": MemberOutcome.FAILED},
        )
        return {"campaign_id": campaign_id, "status": MemberOutcome.FAILED, "error": str(e)}

    if not exists:
        logger.warning(
            "Campaign #%d vanished before finalization, skipping", campaign_id,
            extra={"campaign_id": campaign_id, "outcome": MemberOutcome.NOT_FOUND},
        )
        return {"campaign_id": campaign_id, "status": MemberOutcome.NOT_FOUND, "error": "campaign not found"}

    logger.info(
        "Campaign #%d already has a finalization record, skipping", campaign_id,
        extra={"campaign_id": campaign_id, "outcome": MemberOutcome.ALREADY_FINALIZED},
    )
    return {"campaign_id": campaign_id, "status": MemberOutcome.ALREADY_FINALIZED, "error": None}


async def _disable_campaign(db: AsyncSession, campaign_id: int, disabled_from: datetime) -> None:
    await db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id)
        .values(is_published=False, disabled_from=disabled_from)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def finalize_member(
    db: AsyncSession,
    campaign_id: int,
    sent_count: int,
    observed_at: Optional[datetime] = None,
) -> dict:
    """
    Finalize one campaign: insert its record, then disable it.

    Returns:
        {"campaign_id": int, "status": MemberOutcome.*, "error": str | None}
    """
    observed_at = observed_at or datetime.now(timezone.utc)

    try:
        await _insert_record(db, campaign_id, sent_count, observed_at)
    except IntegrityError:
        await db.rollback()
        return await _rejected_insert_outcome(db, campaign_id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(
            "Failed to record finalization for campaign #%d: %s", campaign_id, str(e),
            extra={"campaign_id": campaign_id, "outcome": MemberOutcome.FAILED},
        )
        return {"campaign_id": campaign_id, "status": MemberOutcome.FAILED, "error": str(e)}

    try:
        await _disable_campaign(db, campaign_id, observed_at)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.critical(
            "PARTIAL finalization of campaign #%d: record written but disable failed (%s). "
            "Re-run the disable step with --reconcile.",
            campaign_id, str(e),
            extra={"campaign_id": campaign_id, "outcome": MemberOutcome.PARTIAL},
        )
        await send_alert(
            AlertType.PARTIAL_FINALIZATION,
            f"Campaign #{campaign_id} has a finalization record but is still published",
            severity="critical",
            extra={"campaign_id": campaign_id, "error": str(e)},
        )
        return {"campaign_id": campaign_id, "status": MemberOutcome.PARTIAL, "error": str(e)}

    logger.info(
        "Finalized send-once campaign #%d (sent: %d)", campaign_id, sent_count,
        extra={"campaign_id": campaign_id, "sent_count": sent_count, "outcome": MemberOutcome.FINALIZED},
    )
    return {"campaign_id": campaign_id, "status": MemberOutcome.FINALIZED, "error": None}


async def finalize_group(
    db: AsyncSession,
    group: dict,
    observed_at: Optional[datetime] = None,
) -> dict:
    """
    Finalize every member of a completed variant group.

    Members are independent units; a failed insert stops the group (the next
    pass picks up the rest), a partial or vanished member does not.

    Returns:
        {"status": "finalized" | "already_finalized" | "failed" | "partial" | "not_found",
         "finalized_ids": [...], "already_finalized_ids": [...],
         "partial_ids": [...], "missing_ids": [...], "error": str | None}
    """
    observed_at = observed_at or datetime.now(timezone.utc)
    sent_counts = group.get("sent_counts") or {}

    outcome = {
        "status": MemberOutcome.ALREADY_FINALIZED,
        "finalized_ids": [],
        "already_finalized_ids": [],
        "partial_ids": [],
        "missing_ids": [],
        "error": None,
    }

    for campaign_id in group["member_ids"]:
        member = await finalize_member(db, campaign_id, sent_counts.get(campaign_id, 0), observed_at)
        status = member["status"]
        if status == MemberOutcome.FINALIZED:
            outcome["finalized_ids"].append(campaign_id)
        elif status == MemberOutcome.ALREADY_FINALIZED:
            outcome["already_finalized_ids"].append(campaign_id)
        elif status == MemberOutcome.PARTIAL:
            outcome["partial_ids"].append(campaign_id)
            outcome["error"] = member["error"]
        elif status == MemberOutcome.NOT_FOUND:
            outcome["missing_ids"].append(campaign_id)
            outcome["error"] = outcome["error"] or member["error"]
        else:
            outcome["error"] = member["error"]
            outcome["status"] = MemberOutcome.FAILED
            break

    if outcome["partial_ids"]:
        outcome["status"] = MemberOutcome.PARTIAL
    elif outcome["status"] != MemberOutcome.FAILED and outcome["finalized_ids"]:
        outcome["status"] = MemberOutcome.FINALIZED
    elif outcome["status"] != MemberOutcome.FAILED and outcome["missing_ids"] and not outcome["already_finalized_ids"]:
        outcome["status"] = MemberOutcome.NOT_FOUND

    return outcome


async def find_partial_finalizations(db: AsyncSession) -> list[dict]:
    """
    Reconciliation check: campaigns with a finalization record that are still published.

    Returns:
        [{"campaign_id": int, "name": str, "finalized_at": datetime}, ...] ordered by id
    """
    result = await db.execute(
        select(Campaign.id, Campaign.name, FinalizationRecord.finalized_at)
        .join(FinalizationRecord, FinalizationRecord.campaign_id == Campaign.id)
        .where(Campaign.is_published == True)
        .order_by(Campaign.id)
    )
    return [
        {"campaign_id": row.id, "name": row.name, "finalized_at": row.finalized_at}
        for row in result.all()
    ]


async def reconcile_partial_finalizations(db: AsyncSession, preview: bool = False) -> dict:
    """
    Re-run ONLY the disable step for partially finalized campaigns.
    Uses the recorded finalized_at as disabled_from. Operator-invoked.

    Returns:
        {"found": int, "repaired_ids": [...], "failed": {id: error}}
    """
    partials = await find_partial_finalizations(db)
    summary = {"found": len(partials), "repaired_ids": [], "failed": {}}

    for item in partials:
        campaign_id = item["campaign_id"]
        if preview:
            logger.info("[DRY RUN] Would disable partially finalized campaign #%d", campaign_id)
            continue
        try:
            await db.execute(
                update(Campaign)
                .where(and_(Campaign.id == campaign_id, Campaign.is_published == True))
                .values(is_published=False, disabled_from=item["finalized_at"])
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            summary["repaired_ids"].append(campaign_id)
            logger.info(
                "Reconciled partially finalized campaign #%d", campaign_id,
                extra={"campaign_id": campaign_id},
            )
        except SQLAlchemyError as e:
            await db.rollback()
            summary["failed"][campaign_id] = str(e)
            logger.error("Reconcile failed for campaign #%d: %s", campaign_id, str(e))

    return summary
