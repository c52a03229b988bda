"""
Send-once finalizer worker - finalizes completed send-once campaigns.
Runs every few minutes (SEND_ONCE_POLL_INTERVAL_SECONDS, default 5 minutes).

One pass:
1. Fetch a bounded page of candidate campaigns
2. Resolve variant groups and evaluate each group once
3. Finalize complete groups (skipped in preview mode)
4. Stamp last_checked_at on every evaluated campaign (skipped in preview mode)
5. Report one line per group plus a summary line

Passes keep no in-memory state. Between passes only the finalization records
and the last_checked_at stamps (applied passes only) carry over; the stamps
rotate the candidate page so incomplete campaigns cannot starve the rest.
Overlapping passes are safe because the record's unique constraint lets
exactly one finalize attempt win.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from sendonce.database import async_session_factory
from sendonce.services.completion import fetch_candidates, find_completed_groups, mark_checked
from sendonce.services.finalizer import finalize_group, MemberOutcome
from sendonce.utils.alerting import send_alert, AlertType
from sendonce.utils.logging import generate_correlation_id, set_correlation_id
from sendonce.utils.redis_client import write_heartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "send_once_finalizer"


class RunMode:
    APPLY = "apply"
    PREVIEW = "preview"


class GroupOutcome:
    """Per-group outcome labels shown in the pass report."""
    SKIPPED_PENDING = "skipped-pending"
    SKIPPED_NOT_STARTED = "skipped-not-started"
    FINALIZED = "finalized"
    WOULD_FINALIZE = "would-finalize"
    ALREADY_FINALIZED = "already-finalized"
    PARTIAL = "partial"
    ERROR = "error"


def _describe(group: dict) -> str:
    names = group.get("names") or {}
    parts = []
    for cid in group["member_ids"]:
        name = names.get(cid)
        parts.append(f'#{cid} "{name}"' if name else f"#{cid}")
    return " + ".join(parts)


def _report(group: dict, outcome: str, detail: Optional[str] = None) -> dict:
    label = f"{outcome}({detail})" if detail is not None else outcome
    return {
        "group_key": group["group_key"],
        "member_ids": group["member_ids"],
        "outcome": outcome,
        "detail": detail,
        "line": f"  - {_describe(group)}: {label}",
    }


async def run_once(mode: str = RunMode.APPLY, limit: Optional[int] = None) -> dict:
    """
    Run one finalizer pass.

    Args:
        mode: RunMode.APPLY writes; RunMode.PREVIEW performs zero writes
        limit: Candidate page size (defaults to SEND_ONCE_BATCH_SIZE)

    Returns:
        {"mode": str, "groups_evaluated": int, "groups_finalized": int,
         "groups_would_finalize": int, "outcomes": [...], "lines": [...]}

    Per-group failures are reported, never raised. Only a failure to load
    the candidate page propagates.
    """
    if mode not in (RunMode.APPLY, RunMode.PREVIEW):
        raise ValueError(f"Unknown run mode: {mode}")

    set_correlation_id(generate_correlation_id())
    preview = mode == RunMode.PREVIEW
    summary = {
        "mode": mode,
        "groups_evaluated": 0,
        "groups_finalized": 0,
        "groups_would_finalize": 0,
        "outcomes": [],
        "lines": [],
    }

    async with async_session_factory() as db:
        candidates = await fetch_candidates(db, limit)
        if not candidates:
            summary["lines"].append("No send-once campaigns pending finalization")
            logger.info("No send-once campaigns pending finalization", extra={"mode": mode})
            return summary

        summary["lines"].append(f"Checking {len(candidates)} send-once campaign(s) for completion")
        groups = await find_completed_groups(db, candidates)
        observed_at = datetime.now(timezone.utc)

        for group in groups:
            summary["groups_evaluated"] += 1

            if group.get("error"):
                report = _report(group, GroupOutcome.ERROR, group["error"])
            elif group["pending_count"] > 0:
                report = _report(group, GroupOutcome.SKIPPED_PENDING, str(group["pending_count"]))
            elif group["total_sent_count"] <= 0:
                report = _report(group, GroupOutcome.SKIPPED_NOT_STARTED)
            elif preview:
                summary["groups_would_finalize"] += 1
                report = _report(group, GroupOutcome.WOULD_FINALIZE)
            else:
                result = await finalize_group(db, group, observed_at)
                report = _finalization_report(group, result)
                if report["outcome"] == GroupOutcome.FINALIZED:
                    summary["groups_finalized"] += 1

            logger.info(
                report["line"].strip(),
                extra={"group_key": group["group_key"], "outcome": report["outcome"], "mode": mode},
            )
            summary["outcomes"].append(report)
            summary["lines"].append(report["line"])

        if not preview:
            await _stamp_checked(db, groups, observed_at)

    if preview:
        closing = (
            f"Dry run complete. Would have finalized {summary['groups_would_finalize']} "
            f"of {summary['groups_evaluated']} group(s) evaluated"
        )
    else:
        closing = (
            f"Finalized {summary['groups_finalized']} "
            f"of {summary['groups_evaluated']} group(s) evaluated"
        )
    summary["lines"].append(closing)
    logger.info(closing, extra={"mode": mode})
    return summary


async def _stamp_checked(db, groups: list[dict], checked_at: datetime) -> None:
    checked_ids = [cid for group in groups for cid in group["member_ids"]]
    try:
        await mark_checked(db, checked_ids, checked_at)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning("Failed to stamp last_checked_at for %d campaign(s): %s", len(checked_ids), str(e))


def _finalization_report(group: dict, result: dict) -> dict:
    status = result["status"]
    if status == MemberOutcome.FINALIZED:
        return _report(group, GroupOutcome.FINALIZED)
    if status == MemberOutcome.ALREADY_FINALIZED:
        return _report(group, GroupOutcome.ALREADY_FINALIZED)
    if status == MemberOutcome.PARTIAL:
        ids = ",".join(str(cid) for cid in result["partial_ids"])
        return _report(group, GroupOutcome.PARTIAL, f"disable failed for {ids}; run --reconcile")
    return _report(group, GroupOutcome.ERROR, result.get("error") or "finalization failed")


async def run_send_once_finalizer():
    """Main loop - run a finalizer pass every SEND_ONCE_POLL_INTERVAL_SECONDS."""
    from sendonce.config import get_settings
    interval = get_settings().send_once_poll_interval_seconds
    logger.info("Send-once finalizer started (poll every %ds)", interval)

    while True:
        await write_heartbeat(WORKER_NAME, ttl_seconds=interval * 2 + 60)
        try:
            await run_once(RunMode.APPLY)
        except Exception as e:
            logger.error("Send-once finalizer pass error: %s", str(e))
            await send_alert(
                AlertType.FINALIZER_PASS_FAILED,
                f"Send-once finalizer pass failed: {str(e)}",
            )

        await asyncio.sleep(interval)
