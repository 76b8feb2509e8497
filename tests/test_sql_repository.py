"""Tests for the SQLAlchemy repository against SQLite."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from conftest import EVENT_ID
from db import SqlAutomationRepository, create_sql_engine
from engine import TriggerEvaluator
from errors import LeaseError, NotFoundError
from main import build_engine
from models import (
    Automation,
    AutomationStatus,
    ConditionConfig,
    ConditionStep,
    DomainEvent,
    Enrollment,
    EnrollmentStatus,
    LogEntry,
    SendEmailConfig,
    SendEmailStep,
    StepExecutionStatus,
    TriggerType,
    WaitConfig,
    WaitStep,
)

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def sql_repository(tmp_path):
    return SqlAutomationRepository.from_url(f"sqlite:///{tmp_path / 'automations.db'}")


@pytest.fixture
def active_automation(sql_repository):
    automation = Automation(
        event_id=EVENT_ID,
        name="SQL flow",
        trigger_type=TriggerType.TAG_ADDED,
        trigger_config={"tag_ids": ["vip"]},
        status=AutomationStatus.ACTIVE,
    )
    sql_repository.save(automation)
    return automation


def enrollment_for(automation, contact_id="c1", **kwargs):
    return Enrollment(automation_id=automation.id, contact_id=contact_id, started_at=NOW, **kwargs)


class TestAutomationsAndSteps:
    """Round trips through the ORM."""

    def test_automation_round_trip(self, sql_repository, active_automation):
        loaded = sql_repository.get(active_automation.id)

        assert loaded == active_automation
        assert loaded.created_at.tzinfo is not None

    def test_list_filters(self, sql_repository, active_automation):
        sql_repository.save(Automation(event_id="other", name="x", trigger_type=TriggerType.CHECKED_IN))

        assert [a.id for a in sql_repository.list_automations(event_id=EVENT_ID)] == [active_automation.id]
        assert sql_repository.list_automations(event_id=EVENT_ID, status=AutomationStatus.PAUSED) == []
        assert len(sql_repository.list_automations(trigger_type=TriggerType.CHECKED_IN)) == 1

    def test_update_automation_leaves_counters(self, sql_repository, active_automation):
        sql_repository.create_enrollment(enrollment_for(active_automation))

        updated = sql_repository.update_automation(
            active_automation.id, {"status": AutomationStatus.PAUSED, "name": "Renamed"}, bump_version=True
        )

        assert updated.status == AutomationStatus.PAUSED
        assert updated.name == "Renamed"
        assert updated.enrollment_count == 1
        assert updated.version == active_automation.version + 1
        assert sql_repository.get(active_automation.id) == updated

    def test_update_automation_rejects_counters(self, sql_repository, active_automation):
        with pytest.raises(ValueError, match="completed_count"):
            sql_repository.update_automation(active_automation.id, {"completed_count": 5})
        with pytest.raises(NotFoundError):
            sql_repository.update_automation("missing", {"name": "x"})

    def test_step_round_trip_keeps_variant(self, sql_repository, active_automation):
        wait = WaitStep(automation_id=active_automation.id, config=WaitConfig(duration=3, unit="days"), position=1)
        branch = ConditionStep(
            automation_id=active_automation.id,
            config=ConditionConfig(operator="has_tag", value="vip", on_true=wait.id),
        )
        sql_repository.save_step(branch)
        sql_repository.save_step(wait)

        steps = sql_repository.list_steps(active_automation.id)

        assert steps == [branch, wait]
        assert isinstance(steps[0], ConditionStep)
        assert steps[0].config.on_true == wait.id
        assert sql_repository.get(active_automation.id).version == 2

    def test_delete_step_bumps_version(self, sql_repository, active_automation):
        step = SendEmailStep(automation_id=active_automation.id, config=SendEmailConfig(template_id="t"))
        sql_repository.save_step(step)

        sql_repository.delete_step(step.id)

        assert sql_repository.get_step(step.id) is None
        assert sql_repository.get(active_automation.id).version == 2

    def test_delete_automation_cascades(self, sql_repository, active_automation):
        sql_repository.save_step(
            SendEmailStep(automation_id=active_automation.id, config=SendEmailConfig(template_id="t"))
        )
        sql_repository.create_enrollment(enrollment_for(active_automation))

        sql_repository.delete(active_automation.id)

        assert sql_repository.get(active_automation.id) is None
        assert sql_repository.list_steps(active_automation.id) == []
        assert sql_repository.list_enrollments(automation_id=active_automation.id) == []


class TestEnrollments:
    """Enrollment uniqueness, leases and transitions."""

    def test_unique_per_contact(self, sql_repository, active_automation):
        first = sql_repository.create_enrollment(enrollment_for(active_automation))
        second = sql_repository.create_enrollment(enrollment_for(active_automation))

        assert first is not None
        assert second is None
        assert sql_repository.get(active_automation.id).enrollment_count == 1

    def test_concurrent_trigger_handling(self, sql_repository, active_automation):
        evaluator = TriggerEvaluator(sql_repository)
        event = DomainEvent(type=TriggerType.TAG_ADDED, event_id=EVENT_ID, contact_id="c1", payload={"tag_id": "vip"})

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: evaluator.handle(event), range(8)))

        assert sum(len(r) for r in results) == 1
        assert sql_repository.get(active_automation.id).enrollment_count == 1

    def test_find_runnable(self, sql_repository, active_automation):
        ready = sql_repository.create_enrollment(enrollment_for(active_automation, "c1"))
        parked = sql_repository.create_enrollment(
            enrollment_for(active_automation, "c2", wait_until=NOW + timedelta(hours=1))
        )
        sql_repository.create_enrollment(enrollment_for(active_automation, "c3", status=EnrollmentStatus.COMPLETED))

        assert sql_repository.find_runnable(NOW, 10) == [ready.id]
        assert set(sql_repository.find_runnable(NOW + timedelta(hours=1), 10)) == {ready.id, parked.id}

    def test_paused_automation_is_not_runnable(self, sql_repository, active_automation):
        sql_repository.create_enrollment(enrollment_for(active_automation))
        sql_repository.update_automation(active_automation.id, {"status": AutomationStatus.PAUSED})

        assert sql_repository.find_runnable(NOW, 10) == []

    def test_lease_contention(self, sql_repository, active_automation):
        enrollment = sql_repository.create_enrollment(enrollment_for(active_automation))
        ttl = timedelta(minutes=5)

        assert sql_repository.claim(enrollment.id, "w1", NOW, ttl) is not None
        assert sql_repository.claim(enrollment.id, "w2", NOW, ttl) is None
        assert sql_repository.find_runnable(NOW, 10) == []
        assert sql_repository.claim(enrollment.id, "w2", NOW + timedelta(minutes=6), ttl) is not None

    def test_release(self, sql_repository, active_automation):
        enrollment = sql_repository.create_enrollment(enrollment_for(active_automation))
        sql_repository.claim(enrollment.id, "w1", NOW, timedelta(minutes=5))

        sql_repository.release(enrollment.id, "w2")
        assert sql_repository.claim(enrollment.id, "w2", NOW, timedelta(minutes=5)) is None

        sql_repository.release(enrollment.id, "w1")
        assert sql_repository.claim(enrollment.id, "w2", NOW, timedelta(minutes=5)) is not None

    def test_commit_transition_requires_lease(self, sql_repository, active_automation):
        enrollment = sql_repository.create_enrollment(enrollment_for(active_automation))

        with pytest.raises(LeaseError):
            sql_repository.commit_transition(enrollment.model_copy(update={"current_step_id": "x"}), "w1")

    def test_commit_transition_writes_state_and_log(self, sql_repository, active_automation):
        enrollment = sql_repository.create_enrollment(enrollment_for(active_automation))
        claimed = sql_repository.claim(enrollment.id, "w1", NOW, timedelta(minutes=5))
        entry = LogEntry(
            automation_id=active_automation.id,
            enrollment_id=enrollment.id,
            contact_id="c1",
            step_id="s1",
            step_type="send_email",
            status=StepExecutionStatus.COMPLETED,
            output={"to": "ada@example.com"},
            executed_at=NOW,
        )

        sql_repository.commit_transition(
            claimed.model_copy(update={"status": EnrollmentStatus.COMPLETED, "completed_at": NOW}), "w1", [entry]
        )

        stored = sql_repository.get_enrollment(enrollment.id)
        assert stored.status == EnrollmentStatus.COMPLETED
        assert stored.lease_owner is None
        assert stored.completed_at == NOW
        assert sql_repository.get(active_automation.id).completed_count == 1
        assert sql_repository.query_logs(enrollment_id=enrollment.id) == [entry]


class TestLogs:
    """Log queries."""

    def test_query_filters_newest_first(self, sql_repository, active_automation):
        for minute, (contact_id, status) in enumerate(
            [("c1", StepExecutionStatus.FAILED), ("c1", StepExecutionStatus.COMPLETED), ("c2", StepExecutionStatus.FAILED)]
        ):
            sql_repository.append_log(
                LogEntry(
                    automation_id=active_automation.id,
                    enrollment_id=f"e-{contact_id}",
                    contact_id=contact_id,
                    step_id="s1",
                    step_type="webhook",
                    status=status,
                    attempt=minute + 1,
                    executed_at=NOW + timedelta(minutes=minute),
                )
            )

        everything = sql_repository.query_logs(automation_id=active_automation.id)
        assert [e.attempt for e in everything] == [3, 2, 1]
        assert [e.attempt for e in sql_repository.query_logs(contact_id="c1")] == [2, 1]
        assert len(sql_repository.query_logs(status=StepExecutionStatus.FAILED)) == 2
        assert len(sql_repository.query_logs(limit=1)) == 1


def test_in_memory_url_shares_one_database():
    """Test every session of an in-memory SQLite engine sees the same schema and rows."""
    repository = SqlAutomationRepository(create_sql_engine("sqlite://"))
    automation = Automation(event_id=EVENT_ID, name="mem", trigger_type=TriggerType.CHECKED_IN)
    repository.save(automation)

    assert repository.get(automation.id) == automation


def test_welcome_flow_on_sql(tmp_path, settings, contacts, email, webhooks, clock):
    """Test the whole pipeline against the SQL backend."""
    repository = SqlAutomationRepository.from_url(f"sqlite:///{tmp_path / 'flow.db'}")
    engine = build_engine(
        settings, contacts, email, webhooks, repository=repository, clock=clock, sleep=lambda seconds: None
    )
    try:
        automation = engine.service.create({"event_id": EVENT_ID, "name": "SQL", "trigger_type": "checked_in"})
        welcome = engine.service.add_step(automation.id, {"type": "send_email", "config": {"template_id": "hi"}})
        pause = engine.service.add_step(automation.id, {"type": "wait", "config": {"duration": 1, "unit": "days"}})
        engine.service.update_step(welcome.id, {"next_step_id": pause.id})
        engine.service.activate(automation.id)
        contacts.add("c1", "ada@example.com")

        enrollment = engine.triggers.handle(
            DomainEvent(type=TriggerType.CHECKED_IN, event_id=EVENT_ID, contact_id="c1")
        )[0]
        engine.scheduler.run_until_idle()
        clock.advance(days=1)
        engine.scheduler.run_until_idle()

        finished = engine.service.get_enrollment(enrollment.id)
        assert finished.status == EnrollmentStatus.COMPLETED
        assert len(email.sent) == 1
        assert engine.service.get(automation.id).completed_count == 1
        assert len(engine.service.enrollment_history(enrollment.id)) == 3
    finally:
        engine.shutdown()
