"""
SQLAlchemy ORM models for the persistence layer.
Step configs, trigger configs and log snapshots are stored as JSON; their
shape is owned by the pydantic models and checked on the way out.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC (SQLite drops tzinfo)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; pass an aware UTC datetime")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AutomationModel(Base):
    __tablename__ = "automations"

    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False, index=True)
    edition_id = Column(String, nullable=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    trigger_type = Column(String, nullable=False, index=True)
    # Trigger config stored as JSON, e.g. {"tag_ids": ["vip"]}
    trigger_config = Column(JSON, default=dict, nullable=False)

    status = Column(String, nullable=False, default="draft", index=True)
    start_step_id = Column(String, nullable=True)
    enrollment_count = Column(Integer, nullable=False, default=0)
    completed_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    created_by = Column(String, nullable=True)

    created_at = Column(UTCDateTime, default=_now, nullable=False)
    updated_at = Column(UTCDateTime, default=_now, onupdate=_now, nullable=False)

    def __repr__(self) -> str:
        return f"<AutomationModel(id={self.id}, name={self.name}, status={self.status})>"


class StepModel(Base):
    __tablename__ = "automation_steps"

    id = Column(String, primary_key=True)
    automation_id = Column(String, ForeignKey("automations.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String, nullable=False)
    name = Column(String, nullable=True)
    # Kind-specific config stored as JSON; condition branches live in here too.
    config = Column(JSON, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    next_step_id = Column(String, nullable=True)

    created_at = Column(UTCDateTime, default=_now, nullable=False)
    updated_at = Column(UTCDateTime, default=_now, onupdate=_now, nullable=False)

    def __repr__(self) -> str:
        return f"<StepModel(id={self.id}, type={self.type})>"


class EnrollmentModel(Base):
    __tablename__ = "automation_enrollments"
    __table_args__ = (
        UniqueConstraint("automation_id", "contact_id", name="uq_enrollment_automation_contact"),
        Index("ix_enrollments_runnable", "status", "wait_until"),
    )

    id = Column(String, primary_key=True)
    automation_id = Column(String, ForeignKey("automations.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(String, nullable=False, index=True)
    current_step_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")
    started_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    exited_at = Column(UTCDateTime, nullable=True)
    exit_reason = Column(Text, nullable=True)
    wait_until = Column(UTCDateTime, nullable=True)
    lease_owner = Column(String, nullable=True)
    lease_expires_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, default=_now, nullable=False)

    def __repr__(self) -> str:
        return f"<EnrollmentModel(id={self.id}, status={self.status})>"


class LogEntryModel(Base):
    __tablename__ = "automation_logs"
    __table_args__ = (Index("ix_logs_enrollment_step", "enrollment_id", "step_id", "status"),)

    id = Column(String, primary_key=True)
    automation_id = Column(String, nullable=False, index=True)
    enrollment_id = Column(String, nullable=False)
    contact_id = Column(String, nullable=False, index=True)
    step_id = Column(String, nullable=False)
    step_type = Column(String, nullable=False)
    status = Column(String, nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    input = Column(JSON, nullable=True)
    output = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    executed_at = Column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<LogEntryModel(step_id={self.step_id}, status={self.status}, attempt={self.attempt})>"
