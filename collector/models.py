"""
SQLAlchemy models for tracking runs, their results and recurring schedules.
Timestamps are stored as naive UTC.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime,
    Boolean, ForeignKey, UniqueConstraint, Index, JSON
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TrackedKeyword(Base):
    """A keyword monitored for a subject (domain)."""
    __tablename__ = "tracked_keywords"

    id = Column(String(32), primary_key=True, default=_new_id)
    subject = Column(String(255), nullable=False)
    keyword = Column(String(300), nullable=False)
    search_volume = Column(Integer)
    cpc = Column(Float)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("subject", "keyword", name="uq_tracked_keyword"),
        Index("ix_tracked_keywords_subject", "subject"),
    )


class TrackingRun(Base):
    """One execution of the collection pipeline for a subject."""
    __tablename__ = "tracking_runs"

    id = Column(String(32), primary_key=True, default=_new_id)
    subject = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")   # PENDING, RUNNING, COMPLETED, FAILED
    progress = Column(Integer, nullable=False, default=0)             # 0..100
    current_step = Column(String(100))
    step_warnings = Column(JSON)                                      # step name -> classified error
    attempts = Column(Integer, nullable=False, default=0)
    trigger = Column(String(20), default="manual")                    # scheduled, manual
    config = Column(JSON)
    metrics = Column(JSON)
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    step_results = relationship("RunStepResult", back_populates="run", cascade="all, delete-orphan")
    keyword_results = relationship("KeywordResult", back_populates="run", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_tracking_runs_subject_status", "subject", "status"),
        Index("ix_tracking_runs_created", "created_at"),
    )

    def __repr__(self):
        return f"<TrackingRun {self.id} {self.subject} {self.status} {self.progress}%>"


class RunStepResult(Base):
    """Persisted output of one pipeline step."""
    __tablename__ = "run_step_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(32), ForeignKey("tracking_runs.id", ondelete="CASCADE"), nullable=False)
    step_name = Column(String(100), nullable=False)
    result = Column(JSON)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    run = relationship("TrackingRun", back_populates="step_results")

    __table_args__ = (
        UniqueConstraint("run_id", "step_name", name="uq_run_step_result"),
    )


class KeywordResult(Base):
    """SERP position of one keyword in one run."""
    __tablename__ = "keyword_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(32), ForeignKey("tracking_runs.id", ondelete="CASCADE"), nullable=False)
    keyword = Column(String(300), nullable=False)
    position = Column(Integer)                      # None = not ranking
    previous_position = Column(Integer)
    position_change = Column(Integer)               # positive = improvement
    search_volume = Column(Integer)
    volume_date = Column(String(7))                 # YYYY-MM
    cpc = Column(Float)
    keyword_difficulty = Column(Float)
    ranking_url = Column(String(1000))
    serp_features = Column(JSON)
    local_pack_position = Column(Integer)
    local_pack_rating = Column(Float)
    local_pack_reviews = Column(Integer)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    run = relationship("TrackingRun", back_populates="keyword_results")

    __table_args__ = (
        UniqueConstraint("run_id", "keyword", name="uq_keyword_result"),
        Index("ix_keyword_results_run", "run_id"),
    )


class TrackingSchedule(Base):
    """Recurring collection cadence for a subject (one per subject)."""
    __tablename__ = "tracking_schedules"

    id = Column(String(32), primary_key=True, default=_new_id)
    subject = Column(String(255), nullable=False, unique=True)
    frequency = Column(String(20), nullable=False)          # weekly, biweekly, monthly
    day_of_week = Column(Integer)                           # 0 = Sunday .. 6 = Saturday
    day_of_month = Column(Integer)                          # 1..31
    time_of_day = Column(String(5), nullable=False, default="06:00")
    location_name = Column(String(120), default="United States")
    language_code = Column(String(10), default="en")
    is_enabled = Column(Boolean, default=True, nullable=False)
    next_run_at = Column(DateTime)
    last_run_at = Column(DateTime)
    last_run_id = Column(String(32))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_tracking_schedules_due", "is_enabled", "next_run_at"),
    )

    def __repr__(self):
        return f"<TrackingSchedule {self.subject} ({self.frequency}) next={self.next_run_at}>"
