"""
Tests for sendonce/workers/send_once_finalizer.py - one finalizer pass end to
end (candidates -> groups -> finalize -> report) and the worker loop.
"""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from sendonce.models.campaign import Campaign
from sendonce.models.send_once import FinalizationRecord, SendOnceSetting
from sendonce.workers import send_once_finalizer
from sendonce.workers.send_once_finalizer import (
    run_once,
    run_send_once_finalizer,
    RunMode,
    GroupOutcome,
)
from sendonce.utils.alerting import AlertType
from factories import (
    make_campaign,
    make_segment,
    attach_segment,
    record_deliveries,
    completed_campaign,
    campaign_state,
    finalization_campaign_ids,
    finalization_count,
    session_factory_from,
)


@pytest.fixture
def worker_db(db, mock_alert):
    """Route the worker's session factory to the test session."""
    with patch(
        "sendonce.workers.send_once_finalizer.async_session_factory",
        lambda: session_factory_from(db),
    ):
        yield db


async def _ab_group(db):
    """Parent #20 and child #21 sharing one segment, fully delivered between them."""
    await make_campaign(db, 20, sent_count=3)
    await make_campaign(db, 21, variant_parent_id=20, sent_count=2)
    segment_id = await make_segment(db, [1, 2, 3, 4, 5])
    await attach_segment(db, 20, segment_id)
    await attach_segment(db, 21, segment_id)
    await record_deliveries(db, 20, [1, 2, 3])
    await record_deliveries(db, 21, [4, 5])


class TestRunOnceApply:
    async def test_completed_campaign_is_finalized(self, worker_db):
        db = worker_db
        await completed_campaign(db, 10)

        summary = await run_once(RunMode.APPLY)

        assert summary["groups_evaluated"] == 1
        assert summary["groups_finalized"] == 1
        assert summary["lines"] == [
            "Checking 1 send-once campaign(s) for completion",
            '  - #10 "Campaign 10": finalized',
            "Finalized 1 of 1 group(s) evaluated",
        ]
        assert await finalization_campaign_ids(db) == [10]
        is_published, disabled_from = await campaign_state(db, 10)
        assert is_published is False
        assert disabled_from is not None

    async def test_variant_group_finalized_together(self, worker_db):
        db = worker_db
        await _ab_group(db)

        summary = await run_once(RunMode.APPLY)

        assert summary["groups_evaluated"] == 1
        assert summary["groups_finalized"] == 1
        assert summary["outcomes"][0]["group_key"] == "20,21"
        assert summary["outcomes"][0]["line"] == '  - #20 "Campaign 20" + #21 "Campaign 21": finalized'
        assert await finalization_campaign_ids(db) == [20, 21]
        for cid in (20, 21):
            is_published, _ = await campaign_state(db, cid)
            assert is_published is False

    async def test_second_pass_is_a_no_op(self, worker_db):
        db = worker_db
        await completed_campaign(db, 10)

        await run_once(RunMode.APPLY)
        summary = await run_once(RunMode.APPLY)

        assert summary["lines"] == ["No send-once campaigns pending finalization"]
        assert summary["groups_evaluated"] == 0
        assert await finalization_count(db) == 1

    async def test_republished_campaign_not_finalized_again(self, worker_db):
        db = worker_db
        await completed_campaign(db, 10)
        await run_once(RunMode.APPLY)

        await db.execute(update(Campaign).where(Campaign.id == 10).values(is_published=True))
        await db.commit()

        summary = await run_once(RunMode.APPLY)

        assert summary["groups_evaluated"] == 0
        assert await finalization_count(db) == 1

    async def test_pending_recipients_skip_the_group(self, worker_db):
        db = worker_db
        await make_campaign(db, 10, sent_count=2)
        segment_id = await make_segment(db, [1, 2, 3, 4, 5])
        await attach_segment(db, 10, segment_id)
        await record_deliveries(db, 10, [1, 2])

        summary = await run_once(RunMode.APPLY)

        assert summary["outcomes"][0]["outcome"] == GroupOutcome.SKIPPED_PENDING
        assert summary["outcomes"][0]["line"] == '  - #10 "Campaign 10": skipped-pending(3)'
        assert summary["groups_finalized"] == 0
        assert await finalization_count(db) == 0

    async def test_never_sent_campaign_is_not_started(self, worker_db):
        """Zero pending and zero sent (e.g. empty segment) must never finalize."""
        db = worker_db
        await make_campaign(db, 10, sent_count=0)

        summary = await run_once(RunMode.APPLY)

        assert summary["outcomes"][0]["outcome"] == GroupOutcome.SKIPPED_NOT_STARTED
        assert await finalization_count(db) == 0
        is_published, _ = await campaign_state(db, 10)
        assert is_published is True

    async def test_lost_race_reports_already_finalized(self, worker_db):
        """Another pass wrote the record between evaluation and finalize."""
        db = worker_db
        await completed_campaign(db, 10)
        real_find = send_once_finalizer.find_completed_groups

        async def find_then_race(session, candidates):
            groups = await real_find(session, candidates)
            session.add(FinalizationRecord(
                campaign_id=10, finalized_at=datetime.now(timezone.utc), sent_count=5,
            ))
            await session.commit()
            return groups

        with patch("sendonce.workers.send_once_finalizer.find_completed_groups", side_effect=find_then_race):
            summary = await run_once(RunMode.APPLY)

        assert summary["outcomes"][0]["outcome"] == GroupOutcome.ALREADY_FINALIZED
        assert summary["groups_finalized"] == 0
        assert await finalization_count(db) == 1

    async def test_evaluation_error_does_not_stop_the_pass(self, worker_db):
        db = worker_db
        await completed_campaign(db, 10)
        await completed_campaign(db, 11)
        error_group = {
            "member_ids": [10], "group_key": "10", "names": {}, "sent_counts": {},
            "total_sent_count": 0, "pending_count": None, "is_complete": False,
            "error": "database is locked",
        }
        real_find = send_once_finalizer.find_completed_groups

        async def find_with_error(session, candidates):
            groups = await real_find(session, candidates)
            return [error_group] + [g for g in groups if g["group_key"] != "10"]

        with patch("sendonce.workers.send_once_finalizer.find_completed_groups", side_effect=find_with_error):
            summary = await run_once(RunMode.APPLY)

        outcomes = {o["group_key"]: o for o in summary["outcomes"]}
        assert outcomes["10"]["line"] == "  - #10: error(database is locked)"
        assert outcomes["11"]["outcome"] == GroupOutcome.FINALIZED
        assert summary["lines"][-1] == "Finalized 1 of 2 group(s) evaluated"
        assert await finalization_campaign_ids(db) == [11]

    async def test_partial_finalization_reported(self, worker_db, mock_alert):
        db = worker_db
        await completed_campaign(db, 10)

        with patch(
            "sendonce.services.finalizer._disable_campaign",
            new_callable=AsyncMock,
            side_effect=SQLAlchemyError("lock timeout"),
        ):
            summary = await run_once(RunMode.APPLY)

        assert summary["outcomes"][0]["outcome"] == GroupOutcome.PARTIAL
        assert "run --reconcile" in summary["outcomes"][0]["line"]
        assert summary["groups_finalized"] == 0
        assert mock_alert.call_args.args[0] == AlertType.PARTIAL_FINALIZATION

    async def test_limit_bounds_the_candidate_page(self, worker_db):
        db = worker_db
        for cid in (10, 11, 12):
            await completed_campaign(db, cid)

        summary = await run_once(RunMode.APPLY, limit=2)

        assert summary["groups_evaluated"] == 2
        assert await finalization_campaign_ids(db) == [10, 11]


class TestRunOncePreview:
    async def test_preview_writes_nothing(self, worker_db):
        db = worker_db
        await completed_campaign(db, 10)
        await _ab_group(db)

        summary = await run_once(RunMode.PREVIEW)

        assert summary["mode"] == RunMode.PREVIEW
        assert summary["groups_finalized"] == 0
        assert summary["groups_would_finalize"] == 2
        assert [o["outcome"] for o in summary["outcomes"]] == [GroupOutcome.WOULD_FINALIZE] * 2
        assert summary["lines"][-1] == "Dry run complete. Would have finalized 2 of 2 group(s) evaluated"
        assert await finalization_count(db) == 0
        for cid in (10, 20, 21):
            is_published, disabled_from = await campaign_state(db, cid)
            assert is_published is True
            assert disabled_from is None

    async def test_preview_reports_pending_groups(self, worker_db):
        db = worker_db
        await make_campaign(db, 10, sent_count=1)
        segment_id = await make_segment(db, [1, 2])
        await attach_segment(db, 10, segment_id)
        await record_deliveries(db, 10, [1])

        summary = await run_once(RunMode.PREVIEW)

        assert summary["outcomes"][0]["outcome"] == GroupOutcome.SKIPPED_PENDING
        assert summary["groups_would_finalize"] == 0

    async def test_preview_then_apply(self, worker_db):
        db = worker_db
        await completed_campaign(db, 10)

        await run_once(RunMode.PREVIEW)
        summary = await run_once(RunMode.APPLY)

        assert summary["groups_finalized"] == 1


class TestRunOnceValidation:
    async def test_unknown_mode_rejected(self, worker_db):
        with pytest.raises(ValueError):
            await run_once("force")

    async def test_candidate_query_failure_propagates(self, worker_db):
        with patch(
            "sendonce.workers.send_once_finalizer.fetch_candidates",
            new_callable=AsyncMock,
            side_effect=RuntimeError("db unreachable"),
        ):
            with pytest.raises(RuntimeError):
                await run_once(RunMode.APPLY)


class TestFinalizerLoop:
    async def test_pass_failure_is_alerted_and_loop_continues(self):
        calls = {"sleep": 0}

        async def mock_sleep(seconds):
            calls["sleep"] += 1
            raise asyncio.CancelledError()

        with patch("sendonce.workers.send_once_finalizer.write_heartbeat", new_callable=AsyncMock) as heartbeat, \
             patch("sendonce.workers.send_once_finalizer.run_once", new_callable=AsyncMock,
                   side_effect=RuntimeError("db unreachable")), \
             patch("sendonce.workers.send_once_finalizer.send_alert", new_callable=AsyncMock) as alert, \
             patch("sendonce.workers.send_once_finalizer.asyncio.sleep", side_effect=mock_sleep):
            with pytest.raises(asyncio.CancelledError):
                await run_send_once_finalizer()

        heartbeat.assert_awaited_once()
        alert.assert_awaited_once()
        assert alert.call_args.args[0] == AlertType.FINALIZER_PASS_FAILED
        assert calls["sleep"] == 1

    async def test_loop_runs_apply_mode(self):
        async def mock_sleep(seconds):
            raise asyncio.CancelledError()

        with patch("sendonce.workers.send_once_finalizer.write_heartbeat", new_callable=AsyncMock), \
             patch("sendonce.workers.send_once_finalizer.run_once", new_callable=AsyncMock) as mock_run, \
             patch("sendonce.workers.send_once_finalizer.asyncio.sleep", side_effect=mock_sleep):
            with pytest.raises(asyncio.CancelledError):
                await run_send_once_finalizer()

        mock_run.assert_awaited_once_with(RunMode.APPLY)


class TestCandidateRotation:
    async def _checked_at(self, db):
        result = await db.execute(
            select(SendOnceSetting.campaign_id, SendOnceSetting.last_checked_at)
            .order_by(SendOnceSetting.campaign_id)
        )
        return {row.campaign_id: row.last_checked_at for row in result.all()}

    async def test_incomplete_campaigns_do_not_hold_the_page(self, worker_db):
        """Two never-started campaigns fill a page of 2; the completed one still gets its turn."""
        db = worker_db
        await make_campaign(db, 10, sent_count=0)
        await make_campaign(db, 11, sent_count=0)
        await completed_campaign(db, 12)

        first = await run_once(RunMode.APPLY, limit=2)
        second = await run_once(RunMode.APPLY, limit=2)

        assert [o["group_key"] for o in first["outcomes"]] == ["10", "11"]
        assert second["outcomes"][0]["group_key"] == "12"
        assert second["outcomes"][0]["outcome"] == GroupOutcome.FINALIZED
        assert await finalization_campaign_ids(db) == [12]

    async def test_apply_stamps_every_evaluated_campaign(self, worker_db):
        db = worker_db
        await make_campaign(db, 10, sent_count=0)
        await make_campaign(db, 11, sent_count=0)
        await make_campaign(db, 12, sent_count=0)

        await run_once(RunMode.APPLY, limit=2)

        checked = await self._checked_at(db)
        assert checked[10] is not None
        assert checked[11] is not None
        assert checked[12] is None

    async def test_preview_does_not_stamp(self, worker_db):
        db = worker_db
        await make_campaign(db, 10, sent_count=0)
        await completed_campaign(db, 11)

        await run_once(RunMode.PREVIEW)

        assert await self._checked_at(db) == {10: None, 11: None}
