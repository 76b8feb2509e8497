"""Bounded retries with exponential backoff for steps with network side effects.

Every failed attempt is written to the execution log as its own row
(enrollment, step, attempt number) before the next attempt starts, so a
scheduler that crashes and resumes picks up the attempt count where it left
off. A `completed` row for the same (enrollment, step) means the side effect
already happened and the step is skipped instead of repeated.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict

from errors import PermanentError, TransientError
from models import Advance, Enrollment, Fail, LogEntry, Outcome, Step, StepExecutionStatus, utcnow

from .log import ExecutionLog, build_entry

logger = logging.getLogger(__name__)

# Exceptions from transports that did not wrap their errors are still treated as transient.
TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (TransientError, ConnectionError, TimeoutError, OSError)

# Called before every retry; raising (e.g. LeaseError) abandons the remaining attempts.
Heartbeat = Callable[[], None]


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_retries: int = 3  # retries after the first attempt
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay after the given attempt number (1-indexed)."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)
        if self.jitter:
            # Add up to 25% jitter
            delay = delay * (0.75 + random.random() * 0.5)
        return delay

    def worst_case_seconds(self, attempt_timeout: float) -> float:
        """Longest a step can spend in retries: every attempt times out, every backoff is maximal."""
        backoff = sum(
            min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
            for attempt in range(1, self.max_attempts)
        )
        if self.jitter:
            backoff *= 1.25
        return self.max_attempts * attempt_timeout + backoff


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step plus the log entry to commit with its transition."""

    outcome: Outcome
    entry: LogEntry


class RetryCoordinator:
    def __init__(
        self,
        log: ExecutionLog,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.log = log
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock

    def run(
        self,
        enrollment: Enrollment,
        step: Step,
        action: Callable[[int], Dict[str, Any]],
        input: Dict[str, Any] | None = None,
        heartbeat: Heartbeat | None = None,
    ) -> StepResult:
        """Run `action(attempt)` until it succeeds, fails permanently, or the budget is spent.

        `action` returns the output snapshot to log on success. `heartbeat`
        runs after each backoff, before the next attempt.
        """
        context = {"automation_id": enrollment.automation_id, "enrollment_id": enrollment.id, "step_id": step.id}
        if self.log.has_completed(enrollment.id, step.id):
            logger.info(
                "Step %s already completed for enrollment %s, not repeating it", step.id, enrollment.id, extra=context
            )
            entry = build_entry(
                enrollment,
                step,
                StepExecutionStatus.SKIPPED,
                self._clock(),
                input=input,
                output={"reason": "already completed"},
            )
            return StepResult(Advance(step.next_step_id), entry)

        first_attempt = self.log.failed_attempts(enrollment.id, step.id) + 1
        if first_attempt > self.policy.max_attempts:
            error = f"Retry budget of {self.policy.max_attempts} attempts already spent"
            entry = build_entry(
                enrollment, step, StepExecutionStatus.FAILED, self._clock(), first_attempt, input=input, error=error
            )
            return StepResult(Fail(error), entry)

        for attempt in range(first_attempt, self.policy.max_attempts + 1):
            try:
                output = action(attempt)
            except PermanentError as exc:
                logger.warning(
                    "Step %s failed permanently for enrollment %s: %s", step.id, enrollment.id, exc, extra=context
                )
                entry = build_entry(
                    enrollment, step, StepExecutionStatus.FAILED, self._clock(), attempt, input=input, error=str(exc)
                )
                return StepResult(Fail(str(exc)), entry)
            except TRANSIENT_EXCEPTIONS as exc:
                entry = build_entry(
                    enrollment, step, StepExecutionStatus.FAILED, self._clock(), attempt, input=input, error=str(exc)
                )
                if attempt >= self.policy.max_attempts:
                    logger.warning(
                        "Max retries (%d) exhausted for step %s of enrollment %s: %s",
                        self.policy.max_retries,
                        step.id,
                        enrollment.id,
                        exc,
                        extra=context,
                    )
                    return StepResult(Fail(f"Failed after {attempt} attempts: {exc}"), entry)

                self.log.append(entry)
                delay = self.policy.calculate_delay(attempt)
                logger.info(
                    "Retry %d/%d for step %s of enrollment %s after %.2fs: %s",
                    attempt,
                    self.policy.max_retries,
                    step.id,
                    enrollment.id,
                    delay,
                    exc,
                    extra=context,
                )
                self._sleep(delay)
                if heartbeat is not None:
                    heartbeat()
            else:
                entry = build_entry(
                    enrollment, step, StepExecutionStatus.COMPLETED, self._clock(), attempt, input=input, output=output
                )
                return StepResult(Advance(step.next_step_id), entry)

        raise RuntimeError(f"Unexpected state in retry loop for step {step.id}")
