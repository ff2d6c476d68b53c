"""
Shared test fixtures for the payout engine test suite.

Every test gets its own SQLite database file under tmp_path, so sessions
opened from `session_factory` behave like separate connections (needed for
the concurrent-update tests). Factory fixtures build campaigns, clips and
view observations with sensible defaults.
"""

import sys
import os
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from db.database import init_db, make_engine
from db.models import Campaign, CampaignStatus, Clip, ClipStatus, ViewObservation

DAY_1 = date(2026, 3, 1)
DAY_2 = date(2026, 3, 2)
DAY_3 = date(2026, 3, 3)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'payouts_test.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def make_campaign(session):
    def _make(
        budget="100.00",
        spent="0.00",
        payout_rate="10",
        status=CampaignStatus.ACTIVE,
        title="Test Campaign",
        target_platforms=None,
    ) -> Campaign:
        campaign = Campaign(
            title=title,
            budget=Decimal(budget),
            spent=Decimal(spent),
            payout_rate=Decimal(payout_rate),
            status=status,
            target_platforms=target_platforms or [],
        )
        session.add(campaign)
        session.commit()
        return campaign

    return _make


@pytest.fixture
def make_clip(session):
    def _make(
        campaign: Campaign,
        user_id="creator_a",
        initial_views=0,
        platform="tiktok",
        status=ClipStatus.ACTIVE,
        url=None,
    ) -> Clip:
        clip = Clip(
            campaign_id=campaign.id,
            user_id=user_id,
            url=url or f"https://{platform}.com/@{user_id}/video/{campaign.id}",
            platform=platform,
            status=status,
            initial_views=initial_views,
        )
        session.add(clip)
        session.commit()
        return clip

    return _make


@pytest.fixture
def observe(session):
    """Write (or overwrite) the observation for a clip on a given day."""

    def _observe(clip: Clip, views: int, on_date: date = DAY_1) -> ViewObservation:
        observation = (
            session.query(ViewObservation)
            .filter(ViewObservation.clip_id == clip.id, ViewObservation.date == on_date)
            .one_or_none()
        )
        if observation is None:
            observation = ViewObservation(clip_id=clip.id, date=on_date, platform=clip.platform)
            session.add(observation)
        observation.views = views
        session.commit()
        return observation

    return _observe
