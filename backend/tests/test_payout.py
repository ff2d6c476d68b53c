"""
Tests for services/payout.py: the payout calculation engine.

Test categories:
  1. PAYOUT AMOUNT (rate math, half-up rounding to cents)
  2. PERIOD VIEWS (baseline selection, negative delta clamp)
  3. BUDGET CLIPPING (single clip, serial accumulation across clips)
  4. CAMPAIGN COMPLETION (status transition, exclusion of finished campaigns)
  5. IDEMPOTENCE (repeat runs with and without new observations)
  6. FAILURE ISOLATION (per-clip skip, per-campaign rollback, concurrent runs)
  7. CREATOR TOTALS
  8. PENDING PAYOUTS → DISBURSEMENT SINK
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from conftest import DAY_1, DAY_2, DAY_3
from db.models import Campaign, CampaignStatus, ClipStatus, PayoutRecord, PayoutStatus
from models.schemas import PayoutRecordOut
from services.disbursement import DisbursementError
from services.payout import (
    build_creator_totals,
    calculate_all_campaign_payouts,
    calculate_payout_amount,
    calculate_period_views,
    clip_to_budget,
    process_pending_payouts,
)
from services.payout_ledger import load_active_clips, utcnow
from services.view_ledger import ViewLedger
from services.view_supplier import ViewSupplierError


# ===========================================================================
# Test helpers
# ===========================================================================

def payout_records(session, campaign_id=None):
    query = session.query(PayoutRecord)
    if campaign_id is not None:
        query = query.filter(PayoutRecord.campaign_id == campaign_id)
    return query.order_by(PayoutRecord.id).all()


class FailingViewSource:
    """Wraps the real ledger but fails for selected clip ids."""

    def __init__(self, session, failing_clip_ids, error=ViewSupplierError("supplier timed out")):
        self.ledger = ViewLedger(session)
        self.failing_clip_ids = set(failing_clip_ids)
        self.error = error

    def get_latest_observations(self, clip):
        if clip.id in self.failing_clip_ids:
            raise self.error
        return self.ledger.get_latest_observations(clip)


class RecordingSink:
    def __init__(self, fail_ids=(), refuse_ids=()):
        self.fail_ids = set(fail_ids)
        self.refuse_ids = set(refuse_ids)
        self.disbursed = []

    def disburse(self, record):
        if record.id in self.fail_ids:
            raise DisbursementError(f"sink down for {record.id}")
        if record.id in self.refuse_ids:
            return False
        self.disbursed.append(record.id)
        return True


# ===========================================================================
# 1. PAYOUT AMOUNT
# ===========================================================================

class TestCalculatePayoutAmount:

    def test_rounds_half_up_to_cents(self):
        # 333 * 7.5 / 1000 = 2.4975 → 2.50
        assert calculate_payout_amount(333, Decimal("7.5")) == Decimal("2.50")

    def test_exact_amount(self):
        assert calculate_payout_amount(2_000, Decimal("10")) == Decimal("20.00")

    def test_half_cent_rounds_up(self):
        # 5 * 1 / 1000 = 0.005 → 0.01
        assert calculate_payout_amount(5, Decimal("1")) == Decimal("0.01")

    def test_below_half_cent_rounds_down(self):
        assert calculate_payout_amount(4, Decimal("1")) == Decimal("0.00")

    def test_zero_views(self):
        assert calculate_payout_amount(0, Decimal("10")) == Decimal("0.00")

    def test_negative_views_pay_nothing(self):
        assert calculate_payout_amount(-500, Decimal("10")) == Decimal("0.00")

    def test_accepts_float_rate(self):
        assert calculate_payout_amount(333, 7.5) == Decimal("2.50")

    def test_custom_rate_unit(self):
        assert calculate_payout_amount(250, Decimal("1"), rate_unit=100) == Decimal("2.50")

    def test_returns_decimal(self):
        assert isinstance(calculate_payout_amount(1_000, Decimal("3")), Decimal)


# ===========================================================================
# 2. PERIOD VIEWS
# ===========================================================================

class TestCalculatePeriodViews:

    def test_uses_initial_views_when_never_paid(self):
        assert calculate_period_views(latest=1_500, previous=None, initial_views=500) == 1_000

    def test_uses_previous_when_present(self):
        assert calculate_period_views(latest=1_500, previous=1_200, initial_views=500) == 300

    def test_drop_clamps_to_zero(self):
        assert calculate_period_views(latest=9_500, previous=10_000, initial_views=0) == 0

    def test_no_observation_is_zero(self):
        assert calculate_period_views(latest=None, previous=None, initial_views=100) == 0

    def test_previous_zero_is_not_treated_as_missing(self):
        assert calculate_period_views(latest=300, previous=0, initial_views=200) == 300


class TestClipToBudget:

    def test_within_budget(self):
        assert clip_to_budget(Decimal("5.00"), Decimal("10.00")) == (Decimal("5.00"), False)

    def test_exactly_remaining_is_not_limited(self):
        assert clip_to_budget(Decimal("10.00"), Decimal("10.00")) == (Decimal("10.00"), False)

    def test_clipped_to_remaining(self):
        assert clip_to_budget(Decimal("20.00"), Decimal("10.00")) == (Decimal("10.00"), True)

    def test_negative_remaining_clips_to_zero(self):
        assert clip_to_budget(Decimal("3.00"), Decimal("-1.00")) == (Decimal("0.00"), True)


# ===========================================================================
# 3. BUDGET CLIPPING
# ===========================================================================

class TestBudgetClipping:

    def test_single_clip_clipped_to_remaining_budget(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="100", spent="90", payout_rate="10")
        clip = make_clip(campaign)
        observe(clip, 2_000)

        results = calculate_all_campaign_payouts(session)

        assert len(results) == 1
        result = results[0]
        assert len(result.payouts) == 1
        payout = result.payouts[0]
        assert payout.raw_amount == Decimal("20.00")
        assert payout.amount == Decimal("10.00")
        assert payout.budget_limited is True
        assert result.total_spent == Decimal("10.00")
        assert result.remaining_budget == Decimal("0.00")
        assert result.should_complete is True

        session.refresh(campaign)
        assert campaign.spent == Decimal("100.00")
        assert campaign.status == CampaignStatus.COMPLETED

    def test_serial_accumulation_across_clips(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="25", payout_rate="10")
        clips = [make_clip(campaign, user_id=f"creator_{i}") for i in range(4)]
        for clip in clips:
            observe(clip, 1_000)  # $10 each

        result = calculate_all_campaign_payouts(session)[0]

        amounts = [p.amount for p in result.payouts]
        assert amounts == [Decimal("10.00"), Decimal("10.00"), Decimal("5.00")]
        assert [p.budget_limited for p in result.payouts] == [False, False, True]
        # Fourth clip found no budget left → no zero-amount record
        assert {p.clip_id for p in result.payouts} == {c.id for c in clips[:3]}

        session.refresh(campaign)
        assert campaign.spent == Decimal("25.00")

    def test_budget_never_exceeded_across_runs(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="50", payout_rate="10")
        clips = [make_clip(campaign, user_id=f"creator_{i}") for i in range(3)]

        for run in range(1, 8):
            for i, clip in enumerate(clips):
                observe(clip, 700 * run * (i + 1), DAY_1 + timedelta(days=run))

            calculate_all_campaign_payouts(session)

            session.refresh(campaign)
            assert campaign.spent <= campaign.budget
            recorded = sum((r.amount for r in payout_records(session, campaign.id)), Decimal("0"))
            assert recorded == campaign.spent

        assert campaign.status == CampaignStatus.COMPLETED


# ===========================================================================
# 4. CAMPAIGN COMPLETION
# ===========================================================================

class TestCampaignCompletion:

    def test_completed_campaign_is_excluded(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="50", spent="50", status=CampaignStatus.COMPLETED)
        clip = make_clip(campaign)
        observe(clip, 10_000)

        results = calculate_all_campaign_payouts(session)

        assert results == []
        assert payout_records(session) == []

    @pytest.mark.parametrize("status", [
        CampaignStatus.DRAFT,
        CampaignStatus.CANCELLED,
    ])
    def test_non_active_campaigns_are_excluded(self, status, session, make_campaign, make_clip, observe):
        campaign = make_campaign(status=status)
        observe(make_clip(campaign), 5_000)

        assert calculate_all_campaign_payouts(session) == []

    def test_not_completed_while_budget_remains(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="100", payout_rate="10")
        observe(make_clip(campaign), 1_000)

        result = calculate_all_campaign_payouts(session)[0]

        assert result.should_complete is False
        assert result.campaign_status == CampaignStatus.ACTIVE
        session.refresh(campaign)
        assert campaign.status == CampaignStatus.ACTIVE
        assert campaign.completed_at is None

    def test_exact_exhaustion_completes(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="20", payout_rate="10")
        observe(make_clip(campaign), 2_000)

        result = calculate_all_campaign_payouts(session)[0]

        assert result.should_complete is True
        assert result.payouts[0].budget_limited is False
        session.refresh(campaign)
        assert campaign.status == CampaignStatus.COMPLETED
        assert campaign.completed_at is not None
        assert "Budget fully utilized" in campaign.completion_reason

    def test_removed_clips_are_not_paid(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign()
        observe(make_clip(campaign, status=ClipStatus.REMOVED), 5_000)

        result = calculate_all_campaign_payouts(session)[0]

        assert result.payouts == []


# ===========================================================================
# 5. IDEMPOTENCE
# ===========================================================================

class TestIdempotence:

    def test_second_run_without_new_data_pays_nothing(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="1000", payout_rate="10")
        observe(make_clip(campaign), 3_000)

        first = calculate_all_campaign_payouts(session)
        session.refresh(campaign)
        spent_after_first = campaign.spent

        second = calculate_all_campaign_payouts(session)

        assert len(first[0].payouts) == 1
        assert second[0].payouts == []
        assert second[0].total_spent == Decimal("0.00")
        session.refresh(campaign)
        assert campaign.spent == spent_after_first == Decimal("30.00")
        assert len(payout_records(session)) == 1

    def test_only_the_increment_is_paid(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="1000", payout_rate="10")
        clip = make_clip(campaign, initial_views=200)
        observe(clip, 1_200, DAY_1)
        calculate_all_campaign_payouts(session)

        observe(clip, 1_700, DAY_2)
        result = calculate_all_campaign_payouts(session)[0]

        payout = result.payouts[0]
        assert payout.baseline_views == 1_200
        assert payout.views_through == 1_700
        assert payout.period_views == 500
        assert payout.amount == Decimal("5.00")
        assert payout.observed_on == DAY_2

    def test_drop_then_recovery_is_measured_from_paid_point(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="1000", payout_rate="10")
        clip = make_clip(campaign)
        observe(clip, 10_000, DAY_1)
        calculate_all_campaign_payouts(session)

        observe(clip, 9_500, DAY_2)
        dropped = calculate_all_campaign_payouts(session)[0]
        assert dropped.payouts == []

        observe(clip, 10_500, DAY_3)
        recovered = calculate_all_campaign_payouts(session)[0]
        assert recovered.payouts[0].period_views == 500

    def test_clip_without_observations_pays_nothing(self, session, make_campaign, make_clip):
        campaign = make_campaign()
        make_clip(campaign, initial_views=1_000)

        result = calculate_all_campaign_payouts(session)[0]

        assert result.payouts == []

    def test_sub_cent_growth_accumulates_until_payable(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="1000", payout_rate="1")
        clip = make_clip(campaign)
        observe(clip, 4, DAY_1)  # $0.004 → rounds to 0, no record
        assert calculate_all_campaign_payouts(session)[0].payouts == []

        observe(clip, 10, DAY_2)  # measured from initial 0 again
        payout = calculate_all_campaign_payouts(session)[0].payouts[0]
        assert payout.period_views == 10
        assert payout.amount == Decimal("0.01")


# ===========================================================================
# 6. FAILURE ISOLATION
# ===========================================================================

class TestFailureIsolation:

    def test_view_supplier_failure_skips_only_that_clip(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="1000", payout_rate="10")
        broken = make_clip(campaign, user_id="creator_broken")
        healthy = make_clip(campaign, user_id="creator_ok")
        observe(broken, 1_000)
        observe(healthy, 1_000)

        source = FailingViewSource(session, failing_clip_ids=[broken.id])
        result = calculate_all_campaign_payouts(session, view_source=source)[0]

        assert [p.clip_id for p in result.payouts] == [healthy.id]

        # Next run with a working source picks the skipped clip up
        retry = calculate_all_campaign_payouts(session)[0]
        assert [p.clip_id for p in retry.payouts] == [broken.id]

    def test_timeout_is_treated_as_skip(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign()
        clip = make_clip(campaign)
        observe(clip, 1_000)

        source = FailingViewSource(session, [clip.id], error=TimeoutError("took too long"))
        results = calculate_all_campaign_payouts(session, view_source=source)

        assert len(results) == 1
        assert results[0].payouts == []

    def test_failing_campaign_does_not_stop_others(self, session, make_campaign, make_clip, observe):
        bad = make_campaign(title="Bad", budget="100", spent="10")
        good = make_campaign(title="Good", budget="100")
        observe(make_clip(bad), 1_000)
        observe(make_clip(good), 1_000)

        def flaky_load(db, campaign):
            if campaign.id == bad.id:
                raise RuntimeError("clip lookup exploded")
            return load_active_clips(db, campaign)

        with patch("services.payout.load_active_clips", side_effect=flaky_load):
            results = calculate_all_campaign_payouts(session)

        assert [r.campaign_id for r in results] == [good.id]
        assert payout_records(session, bad.id) == []
        assert len(payout_records(session, good.id)) == 1

        session.refresh(bad)
        assert bad.spent == Decimal("10.00")
        assert bad.status == CampaignStatus.ACTIVE

    def test_unexpected_per_clip_error_fails_whole_campaign(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="100")
        first = make_clip(campaign, user_id="creator_a")
        second = make_clip(campaign, user_id="creator_b")
        observe(first, 1_000)
        observe(second, 1_000)

        source = FailingViewSource(session, [second.id], error=ValueError("corrupt row"))
        results = calculate_all_campaign_payouts(session, view_source=source)

        # First clip's record was staged but must be rolled back with the campaign
        assert results == []
        assert payout_records(session) == []
        session.refresh(campaign)
        assert campaign.spent == Decimal("0.00")

    def test_concurrent_run_makes_stale_campaign_roll_back(
        self, session, session_factory, make_campaign, make_clip, observe,
    ):
        campaign = make_campaign(budget="100", payout_rate="10")
        observe(make_clip(campaign), 1_000)
        campaign_id = campaign.id

        class InterferingSource:
            """Another run bumps spent after this run has read the campaign."""

            def __init__(self):
                self.ledger = ViewLedger(session)
                self.interfered = False

            def get_latest_observations(self, clip):
                if not self.interfered:
                    other = session_factory()
                    row = other.get(Campaign, campaign_id)
                    row.spent = row.spent + Decimal("7.00")
                    other.commit()
                    other.close()
                    self.interfered = True
                return self.ledger.get_latest_observations(clip)

        results = calculate_all_campaign_payouts(session, view_source=InterferingSource())

        assert results == []
        assert payout_records(session) == []
        session.refresh(campaign)
        assert campaign.spent == Decimal("7.00")

        # The next run starts from the committed state and pays normally
        retry = calculate_all_campaign_payouts(session)[0]
        assert retry.total_spent == Decimal("10.00")
        session.refresh(campaign)
        assert campaign.spent == Decimal("17.00")

    def test_campaign_list_failure_propagates(self, session):
        with patch("services.payout.load_active_campaigns", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError, match="db down"):
                calculate_all_campaign_payouts(session)


# ===========================================================================
# 7. CREATOR TOTALS
# ===========================================================================

class TestCreatorTotals:

    def test_totals_grouped_per_creator(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="1000", payout_rate="10")
        observe(make_clip(campaign, user_id="alice"), 1_000)
        observe(make_clip(campaign, user_id="alice"), 2_000)
        observe(make_clip(campaign, user_id="bob"), 500)

        result = calculate_all_campaign_payouts(session)[0]
        totals = {t.user_id: t for t in result.creator_totals}

        assert list(totals) == ["alice", "bob"]
        assert totals["alice"].clip_count == 2
        assert totals["alice"].total_views == 3_000
        assert totals["alice"].total_amount == Decimal("30.00")
        assert totals["bob"].total_amount == Decimal("5.00")

    def test_budget_limited_count(self):
        payouts = [
            PayoutRecordOut(
                id=i, campaign_id=1, clip_id=i, user_id="carol",
                period_views=1_000, baseline_views=0, views_through=1_000,
                raw_amount=Decimal("10.00"), amount=Decimal(amount),
                budget_limited=limited, status=PayoutStatus.PENDING,
            )
            for i, (amount, limited) in enumerate([("10.00", False), ("4.00", True)], start=1)
        ]

        totals = build_creator_totals(payouts)

        assert len(totals) == 1
        assert totals[0].total_amount == Decimal("14.00")
        assert totals[0].budget_limited_count == 1

    def test_empty(self):
        assert build_creator_totals([]) == []


# ===========================================================================
# 8. PENDING PAYOUTS
# ===========================================================================

class TestProcessPendingPayouts:

    @pytest.fixture
    def pending(self, session, make_campaign, make_clip, observe):
        campaign = make_campaign(budget="1000", payout_rate="10")
        for name in ("alice", "bob", "carol"):
            observe(make_clip(campaign, user_id=name), 1_000)
        calculate_all_campaign_payouts(session)
        return payout_records(session)

    def test_confirmed_records_become_paid(self, session, pending):
        sink = RecordingSink()

        result = process_pending_payouts(session, sink, min_age_minutes=0)

        assert result is None
        assert sink.disbursed == [r.id for r in pending]
        for record in payout_records(session):
            assert record.status == PayoutStatus.PAID
            assert record.paid_at is not None

    def test_sink_failure_leaves_record_pending(self, session, pending):
        failing_id = pending[1].id
        sink = RecordingSink(fail_ids=[failing_id])

        process_pending_payouts(session, sink, min_age_minutes=0)

        statuses = {r.id: r.status for r in payout_records(session)}
        assert statuses[failing_id] == PayoutStatus.PENDING
        assert [s for rid, s in statuses.items() if rid != failing_id] == [PayoutStatus.PAID] * 2

    def test_unconfirmed_record_stays_pending(self, session, pending):
        sink = RecordingSink(refuse_ids=[pending[0].id])

        process_pending_payouts(session, sink, min_age_minutes=0)

        session.refresh(pending[0])
        assert pending[0].status == PayoutStatus.PENDING

    def test_paid_records_are_not_sent_again(self, session, pending):
        sink = RecordingSink()
        process_pending_payouts(session, sink, min_age_minutes=0)
        process_pending_payouts(session, sink, min_age_minutes=0)

        assert len(sink.disbursed) == len(pending)

    def test_respects_minimum_age(self, session, pending):
        sink = RecordingSink()

        process_pending_payouts(session, sink, min_age_minutes=60)

        assert sink.disbursed == []

    def test_old_enough_records_are_picked_up(self, session, pending):
        sink = RecordingSink()

        process_pending_payouts(
            session, sink, min_age_minutes=60, now=utcnow() + timedelta(hours=2),
        )

        assert len(sink.disbursed) == len(pending)

    def test_batch_size_limits_hand_off(self, session, pending):
        sink = RecordingSink()

        process_pending_payouts(session, sink, min_age_minutes=0, batch_size=2)

        assert sink.disbursed == [r.id for r in pending[:2]]

    def test_no_sink_changes_nothing(self, session, pending):
        process_pending_payouts(session, None)

        assert all(r.status == PayoutStatus.PENDING for r in payout_records(session))
