"""
Payout ledger and campaign store: every read and write the engine makes
against campaigns and payout_records.

Nothing in here commits. The engine owns transaction boundaries so that a
campaign's new payout rows and its spend/status update land together or not
at all.

Campaign updates are compare-and-set on Campaign.version (see db/models.py).
A concurrent writer that got there first makes the flush raise StaleDataError.
"""

import logging
import math
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from db.models import (
    Campaign,
    CampaignStatus,
    Clip,
    ClipStatus,
    PayoutRecord,
    PayoutStatus,
)
from models.schemas import CampaignStats, SpendSyncResult
from services.view_ledger import latest_observation

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
PROJECTION_HORIZON_DAYS = 365  # Don't project completion dates further out than this


class CampaignNotFoundError(LookupError):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS)


# ===========================================================================
# Campaign store
# ===========================================================================

def load_active_campaigns(session: Session) -> list[Campaign]:
    return (
        session.query(Campaign)
        .filter(Campaign.status == CampaignStatus.ACTIVE)
        .order_by(Campaign.id)
        .all()
    )


def load_active_clips(session: Session, campaign: Campaign) -> list[Clip]:
    """Active clips in the order the engine accumulates spend over them."""
    return (
        session.query(Clip)
        .filter(Clip.campaign_id == campaign.id, Clip.status == ClipStatus.ACTIVE)
        .order_by(Clip.created_at, Clip.id)
        .all()
    )


def get_campaign(session: Session, campaign_id: int) -> Campaign:
    campaign = session.get(Campaign, campaign_id)
    if campaign is None:
        raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
    return campaign


def remaining_budget(campaign: Campaign) -> Decimal:
    return to_money(campaign.budget) - to_money(campaign.spent)


def apply_campaign_spend(
    session: Session,
    campaign: Campaign,
    amount: Decimal,
    complete: bool,
    reason: Optional[str] = None,
) -> None:
    """
    Add amount to campaign.spent and, when complete, move it to COMPLETED.

    The UPDATE is only emitted at flush time and is guarded by the version
    column, so a stale campaign raises StaleDataError there.
    """
    if amount:
        campaign.spent = to_money(campaign.spent) + to_money(amount)

    if complete and campaign.status == CampaignStatus.ACTIVE:
        campaign.status = CampaignStatus.COMPLETED
        campaign.completed_at = utcnow()
        campaign.completion_reason = reason

    session.flush()


# ===========================================================================
# Payout records
# ===========================================================================

def create_payout_record(
    session: Session,
    campaign: Campaign,
    clip: Clip,
    period_views: int,
    baseline_views: int,
    views_through: int,
    observed_on: Optional[date],
    raw_amount: Decimal,
    amount: Decimal,
    budget_limited: bool,
) -> PayoutRecord:
    record = PayoutRecord(
        campaign_id=campaign.id,
        clip_id=clip.id,
        user_id=clip.user_id,
        period_views=period_views,
        baseline_views=baseline_views,
        views_through=views_through,
        observed_on=observed_on,
        raw_amount=raw_amount,
        amount=amount,
        budget_limited=budget_limited,
        status=PayoutStatus.PENDING,
        computed_at=utcnow(),
    )
    session.add(record)
    return record


def load_pending_payouts(
    session: Session,
    older_than: datetime,
    limit: int,
) -> list[PayoutRecord]:
    """Oldest PENDING records computed at or before older_than."""
    return (
        session.query(PayoutRecord)
        .filter(
            PayoutRecord.status == PayoutStatus.PENDING,
            PayoutRecord.computed_at <= older_than,
        )
        .order_by(PayoutRecord.computed_at, PayoutRecord.id)
        .limit(limit)
        .all()
    )


def mark_paid(record: PayoutRecord) -> None:
    if record.status == PayoutStatus.PAID:
        return
    record.status = PayoutStatus.PAID
    record.paid_at = utcnow()


def load_payout_records(session: Session, status: Optional[str] = None) -> list[PayoutRecord]:
    query = session.query(PayoutRecord)
    if status:
        query = query.filter(PayoutRecord.status == status)
    return query.order_by(PayoutRecord.user_id, PayoutRecord.computed_at, PayoutRecord.id).all()


# ===========================================================================
# Admin: spend re-sync
# ===========================================================================

def sync_campaign_spend(session: Session, campaign_id: int) -> SpendSyncResult:
    """
    Reset campaign.spent to the sum of its payout record amounts.

    Repairs drift when spent was edited by hand. Caller commits.
    """
    campaign = get_campaign(session, campaign_id)

    total, count = (
        session.query(
            func.coalesce(func.sum(PayoutRecord.amount), 0),
            func.count(PayoutRecord.id),
        )
        .filter(PayoutRecord.campaign_id == campaign_id)
        .one()
    )

    old_spent = to_money(campaign.spent)
    new_spent = to_money(total)
    campaign.spent = new_spent
    session.flush()

    difference = new_spent - old_spent
    logger.info(
        f"Synced campaign {campaign_id} '{campaign.title}': "
        f"${old_spent:,.2f} → ${new_spent:,.2f} (diff: ${difference:,.2f})"
    )

    return SpendSyncResult(
        campaign_id=campaign_id,
        title=campaign.title,
        old_spent=old_spent,
        new_spent=new_spent,
        difference=difference,
        payout_record_count=count,
    )


# ===========================================================================
# Monitoring: campaign stats
# ===========================================================================

def get_campaign_stats(
    session: Session,
    campaign_id: int,
    today: Optional[date] = None,
) -> CampaignStats:
    """
    Budget utilisation and a spend-rate based completion projection.

    projected_completion_date is only set when something has been spent,
    budget remains, and the projection lands within PROJECTION_HORIZON_DAYS.
    """
    campaign = get_campaign(session, campaign_id)
    today = today or utcnow().date()

    total_budget = to_money(campaign.budget)
    total_spent = to_money(campaign.spent)
    remaining = total_budget - total_spent
    utilization = float(total_spent / total_budget * 100) if total_budget > 0 else 0.0

    clips = session.query(Clip).filter(Clip.campaign_id == campaign_id).all()
    active_clips = [c for c in clips if c.status == ClipStatus.ACTIVE]

    total_views = 0
    for clip in active_clips:
        latest = latest_observation(session, clip.id)
        total_views += latest.views if latest else 0

    total_payouts = to_money(
        session.query(func.coalesce(func.sum(PayoutRecord.amount), 0))
        .filter(PayoutRecord.campaign_id == campaign_id)
        .scalar()
    )
    average = to_money(total_payouts / len(active_clips)) if active_clips else Decimal("0.00")

    projected: Optional[date] = None
    if total_spent > 0 and remaining > 0:
        started = campaign.created_at.date() if campaign.created_at else today
        days_since_start = max(1, (today - started).days)
        daily_spend_rate = total_spent / days_since_start
        days_to_completion = remaining / daily_spend_rate
        if 0 < days_to_completion < PROJECTION_HORIZON_DAYS:
            projected = today + timedelta(days=math.ceil(days_to_completion))

    return CampaignStats(
        campaign_id=campaign.id,
        title=campaign.title,
        status=campaign.status,
        total_budget=total_budget,
        total_spent=total_spent,
        remaining_budget=remaining,
        utilization_percentage=utilization,
        total_clips=len(clips),
        active_clips=len(active_clips),
        total_views=total_views,
        total_payouts=total_payouts,
        average_payout_per_clip=average,
        projected_completion_date=projected,
    )


def get_near_completion_campaigns(
    session: Session,
    threshold: float = 80.0,
) -> list[CampaignStats]:
    """Active campaigns whose budget utilisation is at or above threshold percent."""
    near: list[CampaignStats] = []
    for campaign in load_active_campaigns(session):
        stats = get_campaign_stats(session, campaign.id)
        if stats.utilization_percentage >= threshold:
            near.append(stats)
    return near
