"""
Daily view tracking: pull current counts from a view supplier into the ledger.

For every ACTIVE clip of every ACTIVE campaign:
  - skip clips on platforms the campaign doesn't target (empty = all)
  - supplier.fetch_snapshot(platform, url) → upsert today's ViewObservation
  - commit per clip, so one failure only loses that clip's reading

This job is the only writer of view_observations; the payout engine reads them.
"""

import logging
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from db.models import Campaign
from models.schemas import ViewTrackingSummary
from services.payout_ledger import load_active_campaigns, load_active_clips
from services.view_ledger import record_observation, utc_today
from services.view_supplier import ViewSupplier, ViewSupplierError

logger = logging.getLogger(__name__)


def _targets_platform(campaign: Campaign, platform: str) -> bool:
    targets = {p.lower() for p in (campaign.target_platforms or [])}
    return not targets or platform.lower() in targets


def run_view_tracking(
    session: Session,
    supplier: ViewSupplier,
    on_date: Optional[date] = None,
) -> ViewTrackingSummary:
    on_date = on_date or utc_today()
    summary = ViewTrackingSummary()

    campaigns = load_active_campaigns(session)
    logger.info(f"View tracking for {len(campaigns)} active campaigns on {on_date}")

    for campaign in campaigns:
        for clip in load_active_clips(session, campaign):
            summary.processed += 1

            if not _targets_platform(campaign, clip.platform):
                summary.skipped += 1
                logger.debug(f"  Clip {clip.id}: platform {clip.platform} not targeted, skipped")
                continue

            try:
                snapshot = supplier.fetch_snapshot(clip.platform, clip.url)
                record_observation(session, clip, snapshot, on_date)
                session.commit()
            except (ViewSupplierError, TimeoutError) as e:
                session.rollback()
                summary.failed += 1
                logger.warning(f"  Clip {clip.id}: view fetch failed: {e}")
                continue

            summary.recorded += 1
            logger.debug(f"  Clip {clip.id}: {snapshot.views:,} views on {on_date}")

    logger.info(
        f"View tracking complete: {summary.recorded} recorded, "
        f"{summary.failed} failed, {summary.skipped} skipped"
    )
    return summary
