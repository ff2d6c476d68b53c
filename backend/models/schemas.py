"""
Pydantic models for the clip campaign payout engine.

Models:
  - ViewSnapshot: One reading from a view supplier (views/likes/shares for a clip)
  - ObservationPair: What the engine needs per clip: views already paid for + latest views
  - PayoutRecordOut: A persisted payout record, as returned to the caller
  - CreatorTotal: Aggregated payouts per creator (user) within one campaign run
  - CampaignPayoutResult: Per-campaign summary of one engine run
  - CampaignStats / SpendSyncResult / ViewTrackingSummary: admin + monitoring payloads
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict


# ---------------------------------------------------------------------------
# ViewSnapshot: one reading from the view supplier
# ---------------------------------------------------------------------------
class ViewSnapshot(BaseModel):
    views: int
    likes: Optional[int] = None
    shares: Optional[int] = None


# ---------------------------------------------------------------------------
# ObservationPair: baseline and latest cumulative views for one clip
#
# previous = views already paid for (None if the clip was never paid;
#            the engine then falls back to the clip's initial_views)
# latest   = most recent observed views (None if never observed)
# ---------------------------------------------------------------------------
class ObservationPair(BaseModel):
    previous: Optional[int] = None
    latest: Optional[int] = None
    latest_date: Optional[date] = None


# ---------------------------------------------------------------------------
# PayoutRecordOut: mirrors db.models.PayoutRecord
# ---------------------------------------------------------------------------
class PayoutRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    campaign_id: int
    clip_id: int
    user_id: str
    period_views: int
    baseline_views: int
    views_through: int
    observed_on: Optional[date] = None
    raw_amount: Decimal
    amount: Decimal
    budget_limited: bool = False
    status: str
    computed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# CreatorTotal: per-creator aggregation of one campaign's payouts
# ---------------------------------------------------------------------------
class CreatorTotal(BaseModel):
    user_id: str
    clip_count: int = 0
    total_views: int = 0
    total_amount: Decimal = Decimal("0.00")
    budget_limited_count: int = 0


class CampaignPayoutResult(BaseModel):
    campaign_id: int
    payouts: list[PayoutRecordOut] = []
    total_spent: Decimal = Decimal("0.00")   # spent during this run only
    remaining_budget: Decimal = Decimal("0.00")
    campaign_status: str
    should_complete: bool = False
    creator_totals: list[CreatorTotal] = []


# ---------------------------------------------------------------------------
# Admin / monitoring payloads
# ---------------------------------------------------------------------------
class CampaignStats(BaseModel):
    campaign_id: int
    title: str
    status: str
    total_budget: Decimal
    total_spent: Decimal
    remaining_budget: Decimal
    utilization_percentage: float
    total_clips: int
    active_clips: int
    total_views: int
    total_payouts: Decimal
    average_payout_per_clip: Decimal
    projected_completion_date: Optional[date] = None


class SpendSyncResult(BaseModel):
    campaign_id: int
    title: str
    old_spent: Decimal
    new_spent: Decimal
    difference: Decimal
    payout_record_count: int


class ViewTrackingSummary(BaseModel):
    processed: int = 0
    recorded: int = 0
    failed: int = 0
    skipped: int = 0
