"""Tests for RetryPolicy and RetryCoordinator."""

import pytest

from db import InMemoryAutomationRepository
from engine import ExecutionLog, RetryCoordinator, RetryPolicy, build_entry
from errors import PermanentError, TransientError
from models import (
    Advance,
    Enrollment,
    Fail,
    SendEmailConfig,
    SendEmailStep,
    StepExecutionStatus,
)


@pytest.fixture
def log():
    return ExecutionLog(InMemoryAutomationRepository())


@pytest.fixture
def enrollment():
    return Enrollment(automation_id="auto-1", contact_id="c1")


@pytest.fixture
def step():
    return SendEmailStep(id="s1", automation_id="auto-1", config=SendEmailConfig(template_id="tpl"), next_step_id="s2")


def scripted(*results):
    """Action that raises or returns the given results in order, recording attempt numbers."""
    queue = list(results)
    attempts = []

    def action(attempt):
        attempts.append(attempt)
        result = queue.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    action.attempts = attempts
    return action


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_default_values(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.max_attempts == 4
        assert policy.base_delay == 1.0
        assert policy.max_delay == 30.0
        assert policy.exponential_base == 2.0
        assert policy.jitter is True

    def test_calculate_delay_exponential(self):
        """Test delays double per attempt."""
        policy = RetryPolicy(jitter=False)

        assert policy.calculate_delay(1) == 1.0
        assert policy.calculate_delay(2) == 2.0
        assert policy.calculate_delay(3) == 4.0

    def test_calculate_delay_max_cap(self):
        policy = RetryPolicy(max_delay=5.0, jitter=False)

        assert policy.calculate_delay(10) == 5.0

    def test_calculate_delay_with_jitter(self):
        """Test jitter stays within 25% either way."""
        policy = RetryPolicy(base_delay=10.0)

        delays = [policy.calculate_delay(1) for _ in range(100)]

        assert all(7.5 <= d <= 12.5 for d in delays)
        assert len(set(delays)) > 1


class TestRetryCoordinator:
    """Tests for RetryCoordinator.run."""

    def test_success_first_attempt(self, log, enrollment, step):
        coordinator = RetryCoordinator(log, sleep=lambda s: None)
        action = scripted({"ok": True})

        result = coordinator.run(enrollment, step, action)

        assert result.outcome == Advance("s2")
        assert result.entry.status == StepExecutionStatus.COMPLETED
        assert result.entry.attempt == 1
        assert result.entry.output == {"ok": True}
        assert log.for_enrollment(enrollment.id) == []

    def test_transient_failures_then_success(self, log, enrollment, step):
        """Test each failed attempt is logged before the next one starts."""
        sleeps = []
        coordinator = RetryCoordinator(log, RetryPolicy(jitter=False), sleep=sleeps.append)
        action = scripted(TransientError("503"), TransientError("503"), {"ok": True})

        result = coordinator.run(enrollment, step, action)

        assert result.outcome == Advance("s2")
        assert result.entry.attempt == 3
        assert action.attempts == [1, 2, 3]
        assert sleeps == [1.0, 2.0]
        failed = log.for_enrollment(enrollment.id)
        assert sorted(e.attempt for e in failed) == [1, 2]
        assert all(e.status == StepExecutionStatus.FAILED and e.error == "503" for e in failed)

    def test_exhaustion_fails(self, log, enrollment, step):
        """Test the final failure is returned, not appended."""
        coordinator = RetryCoordinator(log, RetryPolicy(max_retries=2), sleep=lambda s: None)
        action = scripted(*[ConnectionError("refused")] * 3)

        result = coordinator.run(enrollment, step, action)

        assert isinstance(result.outcome, Fail)
        assert "after 3 attempts" in result.outcome.error
        assert result.entry.status == StepExecutionStatus.FAILED
        assert result.entry.attempt == 3
        assert len(log.for_enrollment(enrollment.id)) == 2

    def test_permanent_error_is_not_retried(self, log, enrollment, step):
        coordinator = RetryCoordinator(log, sleep=lambda s: None)
        action = scripted(PermanentError("no such template"))

        result = coordinator.run(enrollment, step, action)

        assert result.outcome == Fail("no such template")
        assert action.attempts == [1]

    def test_unexpected_exception_propagates(self, log, enrollment, step):
        """Test programming errors are not mistaken for transient failures."""
        coordinator = RetryCoordinator(log, sleep=lambda s: None)

        with pytest.raises(KeyError):
            coordinator.run(enrollment, step, scripted(KeyError("boom")))

    def test_completed_step_is_skipped(self, log, enrollment, step):
        """Test a prior completed entry short-circuits the side effect."""
        log.append(build_entry(enrollment, step, StepExecutionStatus.COMPLETED, enrollment.started_at))
        coordinator = RetryCoordinator(log, sleep=lambda s: None)
        action = scripted({"ok": True})

        result = coordinator.run(enrollment, step, action)

        assert result.outcome == Advance("s2")
        assert result.entry.status == StepExecutionStatus.SKIPPED
        assert action.attempts == []

    def test_resumes_attempt_numbering(self, log, enrollment, step):
        """Test attempts already logged count against the budget after a restart."""
        for attempt in (1, 2):
            log.append(
                build_entry(
                    enrollment, step, StepExecutionStatus.FAILED, enrollment.started_at, attempt, error="timeout"
                )
            )
        coordinator = RetryCoordinator(log, sleep=lambda s: None)
        action = scripted(TransientError("timeout"), TransientError("timeout"))

        result = coordinator.run(enrollment, step, action)

        assert action.attempts == [3, 4]
        assert isinstance(result.outcome, Fail)
        assert result.entry.attempt == 4

    def test_spent_budget_fails_without_calling(self, log, enrollment, step):
        for attempt in range(1, 5):
            log.append(
                build_entry(enrollment, step, StepExecutionStatus.FAILED, enrollment.started_at, attempt, error="x")
            )
        coordinator = RetryCoordinator(log, sleep=lambda s: None)
        action = scripted({"ok": True})

        result = coordinator.run(enrollment, step, action)

        assert isinstance(result.outcome, Fail)
        assert action.attempts == []
