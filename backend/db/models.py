"""
SQLAlchemy models for campaigns, clips, view observations and payout records.

Money columns are Numeric(12, 2) and surface as Decimal; payout_rate keeps four
decimal places so sub-cent CPM rates survive. Campaign rows carry a
version counter: every UPDATE is issued as
    UPDATE campaigns SET ... WHERE id = :id AND version = :old_version
so two overlapping payout runs cannot both apply spend from the same baseline.
The loser's flush raises sqlalchemy.orm.exc.StaleDataError.
"""

from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.database import Base


class CampaignStatus:
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ClipStatus:
    ACTIVE = "ACTIVE"
    REMOVED = "REMOVED"


class PayoutStatus:
    PENDING = "PENDING"
    PAID = "PAID"


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    budget = Column(Numeric(12, 2), nullable=False)
    spent = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    payout_rate = Column(Numeric(12, 4), nullable=False)  # per 1,000 views
    status = Column(String(20), nullable=False, default=CampaignStatus.DRAFT, index=True)
    target_platforms = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime)
    completion_reason = Column(Text)
    version = Column(Integer, nullable=False)

    clips = relationship("Clip", back_populates="campaign")
    payout_records = relationship("PayoutRecord", back_populates="campaign")

    __mapper_args__ = {"version_id_col": version}


class Clip(Base):
    __tablename__ = "clips"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    url = Column(Text, nullable=False)
    platform = Column(String(50), nullable=False)  # tiktok, instagram, youtube, twitter
    status = Column(String(20), nullable=False, default=ClipStatus.ACTIVE)
    initial_views = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, default=func.now())

    campaign = relationship("Campaign", back_populates="clips")
    observations = relationship("ViewObservation", back_populates="clip")


class ViewObservation(Base):
    __tablename__ = "view_observations"
    __table_args__ = (UniqueConstraint("clip_id", "date", name="uq_view_observation_clip_date"),)

    id = Column(Integer, primary_key=True, index=True)
    clip_id = Column(Integer, ForeignKey("clips.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    views = Column(BigInteger, nullable=False, default=0)
    likes = Column(BigInteger, default=0)
    shares = Column(BigInteger, default=0)
    platform = Column(String(50), nullable=False)
    observed_at = Column(DateTime, default=func.now(), onupdate=func.now())

    clip = relationship("Clip", back_populates="observations")


class PayoutRecord(Base):
    __tablename__ = "payout_records"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False, index=True)
    clip_id = Column(Integer, ForeignKey("clips.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    period_views = Column(BigInteger, nullable=False)
    baseline_views = Column(BigInteger, nullable=False)
    views_through = Column(BigInteger, nullable=False)  # cumulative views paid up to
    observed_on = Column(Date)
    raw_amount = Column(Numeric(12, 2), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    budget_limited = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=PayoutStatus.PENDING, index=True)
    computed_at = Column(DateTime, default=func.now())
    paid_at = Column(DateTime)

    campaign = relationship("Campaign", back_populates="payout_records")
