"""
View ledger: one ViewObservation row per (clip, date).

Observations are append-only per day. Re-observing a clip on the same date
overwrites that day's row instead of adding a second one.

The engine asks the ledger for an ObservationPair per clip:
  latest   = views on the most recent observation (None if never observed)
  previous = views_through of the clip's most recent payout record, i.e. the
             cumulative count already paid for (None if never paid)

Measuring against what was already paid, rather than against the second-latest
observation, means a run with no new observations yields a zero delta.
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from db.models import Clip, PayoutRecord, ViewObservation
from models.schemas import ObservationPair, ViewSnapshot

logger = logging.getLogger(__name__)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def record_observation(
    session: Session,
    clip: Clip,
    snapshot: ViewSnapshot,
    on_date: Optional[date] = None,
) -> ViewObservation:
    """Upsert the observation for (clip, on_date). Caller commits."""
    on_date = on_date or utc_today()

    observation = (
        session.query(ViewObservation)
        .filter(ViewObservation.clip_id == clip.id, ViewObservation.date == on_date)
        .one_or_none()
    )

    if observation is None:
        observation = ViewObservation(clip_id=clip.id, date=on_date, platform=clip.platform)
        session.add(observation)
    elif snapshot.views < observation.views:
        logger.warning(
            f"Clip {clip.id}: same-day view count dropped "
            f"{observation.views:,} → {snapshot.views:,} on {on_date}"
        )

    observation.views = snapshot.views
    observation.likes = snapshot.likes
    observation.shares = snapshot.shares
    session.flush()
    return observation


def latest_observation(session: Session, clip_id: int) -> Optional[ViewObservation]:
    return (
        session.query(ViewObservation)
        .filter(ViewObservation.clip_id == clip_id)
        .order_by(ViewObservation.date.desc())
        .first()
    )


def views_as_of(session: Session, clip_id: int, on_date: date) -> Optional[int]:
    """Cumulative views on the most recent observation at or before on_date."""
    observation = (
        session.query(ViewObservation)
        .filter(ViewObservation.clip_id == clip_id, ViewObservation.date <= on_date)
        .order_by(ViewObservation.date.desc())
        .first()
    )
    return observation.views if observation else None


def paid_through_views(session: Session, clip_id: int) -> Optional[int]:
    last_payout = (
        session.query(PayoutRecord)
        .filter(PayoutRecord.clip_id == clip_id)
        .order_by(PayoutRecord.id.desc())
        .first()
    )
    return last_payout.views_through if last_payout else None


def get_latest_observations(session: Session, clip: Clip) -> ObservationPair:
    """Never raises for a clip without history; both fields may be None."""
    latest = latest_observation(session, clip.id)
    return ObservationPair(
        previous=paid_through_views(session, clip.id),
        latest=latest.views if latest else None,
        latest_date=latest.date if latest else None,
    )


class ViewLedger:
    """Default view source for the payout engine, bound to one session."""

    def __init__(self, session: Session):
        self.session = session

    def get_latest_observations(self, clip: Clip) -> ObservationPair:
        return get_latest_observations(self.session, clip)
