"""
Tests for sendonce/services/eligibility.py - pending-recipient counting and
the five exclusion rules.
"""
import warnings

import pytest
from sqlalchemy.exc import SAWarning

from sendonce.services.eligibility import pending_count, pending_recipient_ids
from factories import (
    make_campaign,
    make_segment,
    attach_segment,
    record_deliveries,
    enqueue,
    opt_out,
    opt_out_category,
)


async def _campaign_with_segment(db, campaign_id=10, recipients=(1, 2, 3), **kwargs):
    await make_campaign(db, campaign_id, **kwargs)
    segment_id = await make_segment(db, recipients)
    await attach_segment(db, campaign_id, segment_id)
    return segment_id


# ---------------------------------------------------------------------------
# Reachability through included segments
# ---------------------------------------------------------------------------


class TestIncludedSegments:
    async def test_counts_undelivered_members(self, db):
        await _campaign_with_segment(db)
        assert await pending_count(db, [10]) == 3

    async def test_all_delivered_is_zero(self, db):
        await _campaign_with_segment(db)
        await record_deliveries(db, 10, [1, 2, 3])
        assert await pending_count(db, [10]) == 0

    async def test_no_segments_is_zero(self, db):
        await make_campaign(db, 10)
        assert await pending_count(db, [10]) == 0

    async def test_recipient_in_two_segments_counted_once(self, db):
        await make_campaign(db, 10)
        first = await make_segment(db, [1, 2])
        second = await make_segment(db, [2, 3])
        await attach_segment(db, 10, first)
        await attach_segment(db, 10, second)

        assert await pending_count(db, [10]) == 3

    async def test_manually_removed_member_not_reachable(self, db):
        await make_campaign(db, 10)
        segment_id = await make_segment(db, [1, 2, 3], removed=[2])
        await attach_segment(db, 10, segment_id)

        assert await pending_recipient_ids(db, [10]) == [1, 3]

    async def test_other_campaigns_segments_ignored(self, db):
        await _campaign_with_segment(db, 10, recipients=[1])
        await _campaign_with_segment(db, 11, recipients=[2, 3])

        assert await pending_count(db, [10]) == 1

    async def test_empty_id_set_rejected(self, db):
        with pytest.raises(ValueError):
            await pending_count(db, [])


# ---------------------------------------------------------------------------
# Exclusion rules
# ---------------------------------------------------------------------------


class TestExclusionRules:
    async def test_channel_opt_out_excluded_without_delivery(self, db):
        """Segment-eligible, never delivered, but globally opted out -> not pending."""
        await _campaign_with_segment(db)
        await opt_out(db, 2)

        assert await pending_recipient_ids(db, [10]) == [1, 3]

    async def test_opt_out_of_other_channel_still_pending(self, db):
        await _campaign_with_segment(db)
        await opt_out(db, 2, channel="sms")

        assert await pending_count(db, [10]) == 3

    async def test_failed_delivery_counts_as_outcome(self, db):
        await _campaign_with_segment(db)
        await record_deliveries(db, 10, [1, 2])
        await record_deliveries(db, 10, [3], failed=True)

        assert await pending_count(db, [10]) == 0

    async def test_delivery_for_unrelated_campaign_does_not_exclude(self, db):
        await _campaign_with_segment(db, 10, recipients=[1])
        await make_campaign(db, 99)
        await record_deliveries(db, 99, [1])

        assert await pending_count(db, [10]) == 1

    @pytest.mark.parametrize("status", ["pending", "rescheduled"])
    async def test_queued_non_terminal_excluded(self, db, status):
        await _campaign_with_segment(db)
        await enqueue(db, 10, 3, status=status)

        assert await pending_recipient_ids(db, [10]) == [1, 2]

    @pytest.mark.parametrize("status", ["sent", "cancelled"])
    async def test_queued_terminal_still_pending(self, db, status):
        await _campaign_with_segment(db)
        await enqueue(db, 10, 3, status=status)

        assert await pending_count(db, [10]) == 3

    async def test_excluded_segment_member_excluded(self, db):
        await _campaign_with_segment(db)
        excluded = await make_segment(db, [1, 7])
        await attach_segment(db, 10, excluded, excluded=True)

        assert await pending_recipient_ids(db, [10]) == [2, 3]

    async def test_removed_from_excluded_segment_still_pending(self, db):
        await _campaign_with_segment(db)
        excluded = await make_segment(db, [1], removed=[1])
        await attach_segment(db, 10, excluded, excluded=True)

        assert await pending_count(db, [10]) == 3

    async def test_category_opt_out_excluded(self, db):
        await _campaign_with_segment(db, category_id=5)
        await opt_out_category(db, 1, category_id=5)

        assert await pending_recipient_ids(db, [10]) == [2, 3]

    async def test_opt_out_of_unrelated_category_still_pending(self, db):
        await _campaign_with_segment(db, category_id=5)
        await opt_out_category(db, 1, category_id=6)

        assert await pending_count(db, [10]) == 3

    async def test_rules_compose(self, db):
        await make_campaign(db, 10, category_id=5)
        included = await make_segment(db, [1, 2, 3, 4, 5, 6])
        await attach_segment(db, 10, included)
        excluded = await make_segment(db, [4])
        await attach_segment(db, 10, excluded, excluded=True)

        await opt_out(db, 1)
        await record_deliveries(db, 10, [2])
        await enqueue(db, 10, 3)
        await opt_out_category(db, 5, category_id=5)

        assert await pending_recipient_ids(db, [10]) == [6]


# ---------------------------------------------------------------------------
# Variant groups
# ---------------------------------------------------------------------------


class TestVariantGroups:
    async def test_delivery_via_sibling_only_counts_for_full_group(self, db):
        """Recipient served only by child B is pending for A alone, not for {A, B}."""
        await make_campaign(db, 20)
        await make_campaign(db, 21, variant_parent_id=20)
        segment_id = await make_segment(db, [1, 2])
        await attach_segment(db, 20, segment_id)
        await attach_segment(db, 21, segment_id)
        await record_deliveries(db, 20, [1])
        await record_deliveries(db, 21, [2])

        assert await pending_count(db, [20]) == 1
        assert await pending_count(db, [20, 21]) == 0

    async def test_sibling_segments_are_included(self, db):
        await make_campaign(db, 20)
        await make_campaign(db, 21, variant_parent_id=20)
        parent_segment = await make_segment(db, [1])
        child_segment = await make_segment(db, [2])
        await attach_segment(db, 20, parent_segment)
        await attach_segment(db, 21, child_segment)
        await record_deliveries(db, 20, [1])

        assert await pending_count(db, [20]) == 0
        assert await pending_count(db, [20, 21]) == 1

    async def test_sibling_exclusions_apply_to_group(self, db):
        await make_campaign(db, 20)
        await make_campaign(db, 21, variant_parent_id=20, category_id=8)
        segment_id = await make_segment(db, [1, 2])
        await attach_segment(db, 20, segment_id)
        await opt_out_category(db, 2, category_id=8)
        await record_deliveries(db, 20, [1])

        assert await pending_count(db, [20]) == 1
        assert await pending_count(db, [20, 21]) == 0


class TestPendingRecipientIds:
    async def test_ordered_and_limited(self, db):
        await _campaign_with_segment(db, recipients=[9, 3, 7, 1])

        assert await pending_recipient_ids(db, [10], limit=2) == [1, 3]

    async def test_query_compiles_without_sqlalchemy_warnings(self, db):
        await _campaign_with_segment(db, recipients=[2, 1])

        with warnings.catch_warnings():
            warnings.simplefilter("error", SAWarning)
            assert await pending_recipient_ids(db, [10]) == [1, 2]
            assert await pending_count(db, [10]) == 2
