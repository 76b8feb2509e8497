"""
SQLAlchemy-backed repository. Leases are taken with a conditional UPDATE so
that several scheduler processes can share one database.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List

from sqlalchemy import create_engine, delete, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from errors import LeaseError, NotFoundError
from models import (
    Automation,
    AutomationStatus,
    Enrollment,
    EnrollmentStatus,
    LogEntry,
    Step,
    StepExecutionStatus,
    TriggerType,
    utcnow,
)

from .converters import (
    db_to_pydantic_automation,
    db_to_pydantic_enrollment,
    db_to_pydantic_log_entry,
    db_to_pydantic_step,
    enrollment_columns,
    pydantic_to_db_automation,
    pydantic_to_db_enrollment,
    pydantic_to_db_log_entry,
    pydantic_to_db_step,
)
from .models import AutomationModel, Base, EnrollmentModel, LogEntryModel, StepModel
from .repository import AutomationRepository, check_automation_changes

logger = logging.getLogger(__name__)


def create_sql_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees its own empty database.
        return create_engine(
            database_url, echo=echo, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class SqlAutomationRepository(AutomationRepository):
    def __init__(self, engine: Engine, create_schema: bool = True) -> None:
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlAutomationRepository":
        return cls(create_sql_engine(database_url))

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._sessions() as session:
            with session.begin():
                yield session

    def _bump_version(self, session: Session, automation_id: str) -> None:
        result = session.execute(
            update(AutomationModel)
            .where(AutomationModel.id == automation_id)
            .values(version=AutomationModel.version + 1, updated_at=utcnow())
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Automation {automation_id} not found")

    # Automations

    def save(self, automation: Automation) -> str:
        with self._transaction() as session:
            session.merge(pydantic_to_db_automation(automation))
        return automation.id

    def get(self, record_id: str) -> Automation | None:
        with self._sessions() as session:
            row = session.get(AutomationModel, record_id)
            return db_to_pydantic_automation(row) if row else None

    def list_automations(
        self,
        event_id: str | None = None,
        status: AutomationStatus | None = None,
        trigger_type: TriggerType | None = None,
    ) -> List[Automation]:
        stmt = select(AutomationModel).order_by(AutomationModel.created_at.desc())
        if event_id is not None:
            stmt = stmt.where(AutomationModel.event_id == event_id)
        if status is not None:
            stmt = stmt.where(AutomationModel.status == AutomationStatus(status).value)
        if trigger_type is not None:
            stmt = stmt.where(AutomationModel.trigger_type == TriggerType(trigger_type).value)
        with self._sessions() as session:
            return [db_to_pydantic_automation(row) for row in session.scalars(stmt)]

    def delete(self, record_id: str) -> None:
        with self._transaction() as session:
            session.execute(delete(StepModel).where(StepModel.automation_id == record_id))
            session.execute(delete(EnrollmentModel).where(EnrollmentModel.automation_id == record_id))
            session.execute(delete(AutomationModel).where(AutomationModel.id == record_id))

    def update_automation(
        self, automation_id: str, changes: Dict[str, Any], bump_version: bool = False
    ) -> Automation:
        check_automation_changes(changes)
        values = {key: getattr(value, "value", value) for key, value in changes.items()}
        if bump_version:
            values["version"] = AutomationModel.version + 1
        with self._transaction() as session:
            result = session.execute(
                update(AutomationModel)
                .where(AutomationModel.id == automation_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Automation {automation_id} not found")
            row = session.get(AutomationModel, automation_id, populate_existing=True)
            return db_to_pydantic_automation(row)

    # Steps

    def save_step(self, step: Step) -> str:
        with self._transaction() as session:
            self._bump_version(session, step.automation_id)
            session.merge(pydantic_to_db_step(step))
        return step.id

    def get_step(self, step_id: str) -> Step | None:
        with self._sessions() as session:
            row = session.get(StepModel, step_id)
            return db_to_pydantic_step(row) if row else None

    def list_steps(self, automation_id: str) -> List[Step]:
        stmt = (
            select(StepModel)
            .where(StepModel.automation_id == automation_id)
            .order_by(StepModel.position, StepModel.created_at)
        )
        with self._sessions() as session:
            return [db_to_pydantic_step(row) for row in session.scalars(stmt)]

    def delete_step(self, step_id: str) -> None:
        with self._transaction() as session:
            row = session.get(StepModel, step_id)
            if row is None:
                return
            self._bump_version(session, row.automation_id)
            session.delete(row)

    # Enrollments

    def create_enrollment(self, enrollment: Enrollment) -> Enrollment | None:
        try:
            with self._transaction() as session:
                session.add(pydantic_to_db_enrollment(enrollment))
                session.flush()
                result = session.execute(
                    update(AutomationModel)
                    .where(AutomationModel.id == enrollment.automation_id)
                    .values(enrollment_count=AutomationModel.enrollment_count + 1)
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"Automation {enrollment.automation_id} not found")
        except IntegrityError:
            logger.debug(
                "Contact %s already enrolled in automation %s", enrollment.contact_id, enrollment.automation_id
            )
            return None
        return enrollment

    def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        with self._sessions() as session:
            row = session.get(EnrollmentModel, enrollment_id)
            return db_to_pydantic_enrollment(row) if row else None

    def list_enrollments(
        self, automation_id: str | None = None, contact_id: str | None = None
    ) -> List[Enrollment]:
        stmt = select(EnrollmentModel).order_by(EnrollmentModel.started_at.desc())
        if automation_id is not None:
            stmt = stmt.where(EnrollmentModel.automation_id == automation_id)
        if contact_id is not None:
            stmt = stmt.where(EnrollmentModel.contact_id == contact_id)
        with self._sessions() as session:
            return [db_to_pydantic_enrollment(row) for row in session.scalars(stmt)]

    def find_runnable(self, now: datetime, limit: int) -> List[str]:
        stmt = (
            select(EnrollmentModel.id)
            .join(AutomationModel, AutomationModel.id == EnrollmentModel.automation_id)
            .where(
                EnrollmentModel.status == EnrollmentStatus.ACTIVE.value,
                AutomationModel.status == AutomationStatus.ACTIVE.value,
                or_(EnrollmentModel.wait_until.is_(None), EnrollmentModel.wait_until <= now),
                or_(EnrollmentModel.lease_owner.is_(None), EnrollmentModel.lease_expires_at <= now),
            )
            .order_by(EnrollmentModel.started_at)
            .limit(limit)
        )
        with self._sessions() as session:
            return list(session.scalars(stmt))

    def claim(self, enrollment_id: str, owner: str, now: datetime, ttl: timedelta) -> Enrollment | None:
        with self._transaction() as session:
            result = session.execute(
                update(EnrollmentModel)
                .where(
                    EnrollmentModel.id == enrollment_id,
                    EnrollmentModel.status == EnrollmentStatus.ACTIVE.value,
                    or_(
                        EnrollmentModel.lease_owner.is_(None),
                        EnrollmentModel.lease_owner == owner,
                        EnrollmentModel.lease_expires_at <= now,
                    ),
                )
                .values(lease_owner=owner, lease_expires_at=now + ttl)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            row = session.get(EnrollmentModel, enrollment_id, populate_existing=True)
            return db_to_pydantic_enrollment(row)

    def release(self, enrollment_id: str, owner: str) -> None:
        with self._transaction() as session:
            session.execute(
                update(EnrollmentModel)
                .where(EnrollmentModel.id == enrollment_id, EnrollmentModel.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )

    def commit_transition(
        self, enrollment: Enrollment, owner: str, entries: Iterable[LogEntry] = ()
    ) -> Enrollment:
        stored = enrollment.model_copy(update={"lease_owner": None, "lease_expires_at": None, "updated_at": utcnow()})
        values = enrollment_columns(stored)
        values.pop("id")
        with self._transaction() as session:
            previous = session.execute(
                select(EnrollmentModel.status, EnrollmentModel.lease_owner).where(EnrollmentModel.id == enrollment.id)
            ).one_or_none()
            if previous is None:
                raise NotFoundError(f"Enrollment {enrollment.id} not found")
            result = session.execute(
                update(EnrollmentModel)
                .where(EnrollmentModel.id == enrollment.id, EnrollmentModel.lease_owner == owner)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise LeaseError(f"Lease on enrollment {enrollment.id} is not held by {owner}")
            if stored.status == EnrollmentStatus.COMPLETED and previous.status != EnrollmentStatus.COMPLETED.value:
                session.execute(
                    update(AutomationModel)
                    .where(AutomationModel.id == stored.automation_id)
                    .values(completed_count=AutomationModel.completed_count + 1)
                )
            session.add_all(pydantic_to_db_log_entry(entry) for entry in entries)
        return stored

    # Execution log

    def append_log(self, entry: LogEntry) -> None:
        with self._transaction() as session:
            session.add(pydantic_to_db_log_entry(entry))

    def query_logs(
        self,
        automation_id: str | None = None,
        enrollment_id: str | None = None,
        contact_id: str | None = None,
        step_id: str | None = None,
        status: StepExecutionStatus | None = None,
        limit: int | None = None,
    ) -> List[LogEntry]:
        stmt = select(LogEntryModel).order_by(LogEntryModel.executed_at.desc())
        if automation_id is not None:
            stmt = stmt.where(LogEntryModel.automation_id == automation_id)
        if enrollment_id is not None:
            stmt = stmt.where(LogEntryModel.enrollment_id == enrollment_id)
        if contact_id is not None:
            stmt = stmt.where(LogEntryModel.contact_id == contact_id)
        if step_id is not None:
            stmt = stmt.where(LogEntryModel.step_id == step_id)
        if status is not None:
            stmt = stmt.where(LogEntryModel.status == StepExecutionStatus(status).value)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._sessions() as session:
            return [db_to_pydantic_log_entry(row) for row in session.scalars(stmt)]
