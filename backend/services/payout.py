"""
Payout calculation and campaign-completion engine.

CRITICAL: Spend is accumulated PER CLIP, serially, inside one campaign.
Each clip's budget check depends on what earlier clips in the same run
already consumed, so clips are never processed in parallel.

Pipeline (per run):
  1. load_active_campaigns() → every campaign with status ACTIVE
  2. For each campaign, in its own transaction:
       a. load_active_clips() in creation order
       b. view_source.get_latest_observations(clip) → {previous, latest}
       c. period_views = max(0, latest - (previous ?? initial_views))
       d. raw_amount   = round_half_up(period_views * payout_rate / 1000, 2)
       e. amount       = min(raw_amount, budget - spent - queued_this_run)
       f. amount > 0   → PayoutRecord (flagged budget_limited if clipped)
       g. spent + queued >= budget → status COMPLETED, same UPDATE as the spend
  3. Commit per campaign. Any exception rolls back that campaign only and
     it is left out of the results.

Failure handling:
  - ViewSupplierError / TimeoutError for one clip → clip skipped, zero delta
  - Anything else inside a campaign (bad data, StaleDataError from a
    concurrent run, commit failure) → campaign rolled back and omitted
  - Failure to load the campaign list → propagates to the caller

Rounding: Decimal arithmetic, quantized to cents with ROUND_HALF_UP.
  333 views at $7.50 per 1,000 → 2.4975 → $2.50
"""

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Protocol

from sqlalchemy.orm import Session

import config
from db.models import Campaign, CampaignStatus, Clip
from models.schemas import (
    CampaignPayoutResult,
    CreatorTotal,
    ObservationPair,
    PayoutRecordOut,
)
from services.disbursement import DisbursementError, DisbursementSink
from services.payout_ledger import (
    apply_campaign_spend,
    create_payout_record,
    load_active_campaigns,
    load_active_clips,
    load_pending_payouts,
    mark_paid,
    to_money,
    utcnow,
)
from services.view_ledger import ViewLedger
from services.view_supplier import ViewSupplierError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

# Per-clip errors that mean "no usable count right now", not "campaign is broken"
CLIP_SKIP_ERRORS = (ViewSupplierError, TimeoutError)


class ViewSource(Protocol):
    def get_latest_observations(self, clip: Clip) -> ObservationPair:
        ...


# ===========================================================================
# Pure calculations
# ===========================================================================

def calculate_period_views(
    latest: Optional[int],
    previous: Optional[int],
    initial_views: int,
) -> int:
    """
    Views gained since the last paid point.

    previous is None for a clip that was never paid, in which case the
    approval-time baseline (initial_views) is used. A drop in the reported
    count (takedown, platform recount) clamps to 0 instead of going negative.
    """
    if latest is None:
        return 0
    baseline = previous if previous is not None else (initial_views or 0)
    return max(0, latest - baseline)


def calculate_payout_amount(
    period_views: int,
    payout_rate,
    rate_unit: Optional[int] = None,
) -> Decimal:
    """
    Dollar amount for period_views at payout_rate per rate_unit views.

    Returns a Decimal rounded half-up to cents; never negative.
    """
    if rate_unit is None:
        rate_unit = config.PAYOUT_RATE_UNIT
    if period_views <= 0:
        return ZERO

    raw = Decimal(period_views) * Decimal(str(payout_rate)) / Decimal(rate_unit)
    return raw.quantize(CENTS, rounding=ROUND_HALF_UP)


def clip_to_budget(amount: Decimal, remaining: Decimal) -> tuple[Decimal, bool]:
    """Returns (amount actually payable, whether it was reduced by the budget)."""
    if amount > remaining:
        return max(remaining, ZERO), True
    return amount, False


# ===========================================================================
# Per-campaign calculation
# ===========================================================================

def calculate_campaign_payouts(
    session: Session,
    campaign: Campaign,
    view_source: Optional[ViewSource] = None,
) -> CampaignPayoutResult:
    """
    Compute and stage payouts for one campaign. Does NOT commit.

    Adds PayoutRecord rows and the campaign spend/status update to the
    session and flushes them; the caller commits or rolls back as a unit.
    """
    if view_source is None:
        view_source = ViewLedger(session)

    budget = to_money(campaign.budget)
    spent_before = to_money(campaign.spent)
    payout_rate = Decimal(str(campaign.payout_rate))

    clips = load_active_clips(session, campaign)
    logger.info(
        f"Campaign {campaign.id}: {len(clips)} active clips, "
        f"budget=${budget:,.2f}, spent=${spent_before:,.2f}, rate=${payout_rate}/1K"
    )

    records = []
    queued = ZERO
    skipped_count = 0
    limited_count = 0

    for clip in clips:
        # ------------------------------------------------------------------
        # Fetch {previous, latest}; a single bad clip doesn't sink the campaign
        # ------------------------------------------------------------------
        try:
            pair = view_source.get_latest_observations(clip)
        except CLIP_SKIP_ERRORS as e:
            skipped_count += 1
            logger.warning(f"  Clip {clip.id}: view lookup failed, skipping this run ({e})")
            continue

        baseline = pair.previous if pair.previous is not None else (clip.initial_views or 0)
        period_views = calculate_period_views(pair.latest, pair.previous, clip.initial_views)

        if pair.latest is not None and pair.latest < baseline:
            logger.debug(
                f"  Clip {clip.id}: views dropped {baseline:,} → {pair.latest:,}, delta clamped to 0"
            )

        raw_amount = calculate_payout_amount(period_views, payout_rate)

        # ------------------------------------------------------------------
        # Budget cap: remaining = budget - spent - queued this run
        # ------------------------------------------------------------------
        remaining = budget - spent_before - queued
        amount, budget_limited = clip_to_budget(raw_amount, remaining)

        if amount <= ZERO:
            continue

        if budget_limited:
            limited_count += 1
            logger.info(
                f"  Clip {clip.id}: payout ${raw_amount:,.2f} clipped to "
                f"remaining budget ${amount:,.2f}"
            )

        record = create_payout_record(
            session,
            campaign=campaign,
            clip=clip,
            period_views=period_views,
            baseline_views=baseline,
            views_through=pair.latest,
            observed_on=pair.latest_date,
            raw_amount=raw_amount,
            amount=amount,
            budget_limited=budget_limited,
        )
        records.append(record)
        queued += amount

        logger.debug(
            f"  [{clip.user_id}] clip {clip.id}: "
            f"{baseline:,} → {pair.latest:,} (+{period_views:,}) → ${amount:,.2f}"
        )

    # ----------------------------------------------------------------------
    # Completion decision, applied in the same UPDATE as the spend
    # ----------------------------------------------------------------------
    spent_after = spent_before + queued
    should_complete = spent_after >= budget
    reason = None
    if should_complete:
        utilization = (spent_after / budget * 100) if budget > 0 else Decimal(100)
        reason = f"Budget fully utilized ({utilization:.1f}%)"

    apply_campaign_spend(session, campaign, queued, should_complete, reason)

    payouts = [PayoutRecordOut.model_validate(r) for r in records]

    logger.info(
        f"Campaign {campaign.id}: {len(payouts)} payouts, "
        f"${queued:,.2f} spent this run, "
        f"{limited_count} budget-limited, {skipped_count} clips skipped"
        f"{', COMPLETED' if should_complete else ''}"
    )

    return CampaignPayoutResult(
        campaign_id=campaign.id,
        payouts=payouts,
        total_spent=queued,
        remaining_budget=budget - spent_after,
        campaign_status=CampaignStatus.COMPLETED if should_complete else campaign.status,
        should_complete=should_complete,
        creator_totals=build_creator_totals(payouts),
    )


# ===========================================================================
# All campaigns
# ===========================================================================

def calculate_all_campaign_payouts(
    session: Session,
    view_source: Optional[ViewSource] = None,
) -> list[CampaignPayoutResult]:
    """
    Run the per-campaign calculation for every ACTIVE campaign.

    Each campaign commits on its own. A campaign that raises is rolled back,
    logged, and left out of the returned list; the rest still run. A second
    run with no new observations produces no records and no spend.

    Raises:
        Whatever loading the campaign list raises (e.g. database unreachable).
    """
    campaigns = load_active_campaigns(session)
    campaign_ids = [c.id for c in campaigns]
    logger.info(f"Calculating payouts for {len(campaign_ids)} active campaigns")

    results: list[CampaignPayoutResult] = []
    failed: list[int] = []

    for campaign_id in campaign_ids:
        try:
            campaign = session.get(Campaign, campaign_id)
            if campaign is None or campaign.status != CampaignStatus.ACTIVE:
                logger.info(f"Campaign {campaign_id} no longer active, skipping")
                continue

            result = calculate_campaign_payouts(session, campaign, view_source)
            session.commit()
            results.append(result)
        except Exception as e:
            session.rollback()
            failed.append(campaign_id)
            logger.error(
                f"Payout calculation failed for campaign {campaign_id}, "
                f"rolled back: {e}",
                exc_info=True,
            )

    total_spent = sum((r.total_spent for r in results), ZERO)
    logger.info(
        f"Payout run complete: {len(results)} campaigns processed, "
        f"{len(failed)} failed, "
        f"{sum(len(r.payouts) for r in results)} payouts, "
        f"{sum(1 for r in results if r.should_complete)} completed, "
        f"total=${total_spent:,.2f}"
    )

    return results


# ===========================================================================
# Per-creator aggregation
# ===========================================================================

def build_creator_totals(payouts: list[PayoutRecordOut]) -> list[CreatorTotal]:
    """
    Aggregate a campaign's payout records per creator (user_id).

    Each creator gets their own CreatorTotal; sorted by user_id.
    """
    grouped: dict[str, list[PayoutRecordOut]] = {}
    for record in payouts:
        grouped.setdefault(record.user_id, []).append(record)

    totals: list[CreatorTotal] = []
    for user_id in sorted(grouped):
        records = grouped[user_id]
        totals.append(
            CreatorTotal(
                user_id=user_id,
                clip_count=len({r.clip_id for r in records}),
                total_views=sum(r.period_views for r in records),
                total_amount=sum((r.amount for r in records), ZERO),
                budget_limited_count=sum(1 for r in records if r.budget_limited),
            )
        )
    return totals


# ===========================================================================
# Pending payouts → disbursement sink
# ===========================================================================

def process_pending_payouts(
    session: Session,
    sink: Optional[DisbursementSink] = None,
    min_age_minutes: Optional[int] = None,
    batch_size: Optional[int] = None,
    now: Optional[datetime] = None,
) -> None:
    """
    Hand PENDING payout records to the sink and mark confirmed ones PAID.

    Only records at least min_age_minutes old are picked up, oldest first,
    at most batch_size per call. Each confirmed record commits on its own so
    a later failure can't undo an earlier hand-off. Records the sink rejects
    or fails on stay PENDING for the next run.
    """
    if sink is None:
        logger.info("No disbursement sink configured, leaving pending payouts untouched")
        return

    if min_age_minutes is None:
        min_age_minutes = config.PENDING_PAYOUT_MIN_AGE_MINUTES
    if batch_size is None:
        batch_size = config.PENDING_PAYOUT_BATCH_SIZE
    now = now or utcnow()

    pending = load_pending_payouts(
        session,
        older_than=now - timedelta(minutes=min_age_minutes),
        limit=batch_size,
    )
    logger.info(f"Processing {len(pending)} pending payouts")

    paid_count = 0
    paid_total = ZERO
    for record in pending:
        try:
            confirmed = sink.disburse(record)
        except DisbursementError as e:
            logger.warning(f"Payout {record.id} not disbursed, stays PENDING: {e}")
            continue

        if not confirmed:
            logger.warning(f"Sink did not confirm payout {record.id}, stays PENDING")
            continue

        mark_paid(record)
        session.commit()
        paid_count += 1
        paid_total += to_money(record.amount)
        logger.debug(f"  Payout {record.id} → PAID (${record.amount:,.2f} to {record.user_id})")

    logger.info(f"Pending payouts processed: {paid_count} paid, total=${paid_total:,.2f}")
