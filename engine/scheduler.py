"""Enrollment scheduler: the state machine that moves contacts through steps.

Each pass selects runnable enrollments (active, not parked or parked with an
elapsed `wait_until`, belonging to an active automation), executes exactly
one step per enrollment on a fixed worker pool, and commits the resulting
state together with its log entry. Parked enrollments hold nothing but a
row; the wait is data, not a blocked thread.

Exclusivity: within a process an enrollment is never in flight twice, and
across processes a time-bounded lease on the enrollment row guards each
step. A crashed worker's lease expires and the enrollment becomes claimable
again.
"""

import logging
import os
import socket
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List

from db import AutomationRepository
from errors import GraphValidationError, LeaseError
from models import (
    Advance,
    Enrollment,
    EnrollmentStatus,
    Exit,
    Fail,
    LogEntry,
    Outcome,
    Step,
    StepExecutionStatus,
    Wait,
    utcnow,
)
from validations import GraphCache

from .executor import StepExecutor
from .log import build_entry
from .retry import StepResult

logger = logging.getLogger(__name__)


class TickStatus(str, Enum):
    ADVANCED = "advanced"
    RESUMED = "resumed"
    WAITING = "waiting"
    COMPLETED = "completed"
    EXITED = "exited"
    FAILED = "failed"
    SKIPPED = "skipped"
    CONTENDED = "contended"
    ERROR = "error"


@dataclass(frozen=True)
class TickResult:
    enrollment_id: str
    status: TickStatus
    step_id: str | None = None
    detail: str | None = None

    @property
    def continues(self) -> bool:
        """The enrollment has another step ready to run right now."""
        return self.status in (TickStatus.ADVANCED, TickStatus.RESUMED)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class EnrollmentScheduler:
    def __init__(
        self,
        repository: AutomationRepository,
        executor: StepExecutor,
        graphs: GraphCache | None = None,
        worker_count: int = 4,
        batch_size: int = 100,
        lease_ttl: timedelta = timedelta(minutes=5),
        poll_interval: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
        worker_id: str | None = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.graphs = graphs or GraphCache()
        self.batch_size = batch_size
        self.lease_ttl = lease_ttl
        self.poll_interval = poll_interval
        self.worker_id = worker_id or default_worker_id()
        self._clock = clock
        self._pool = ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="enrollment-worker")
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # Single-step processing

    def process(self, enrollment_id: str) -> TickResult:
        """Execute at most one step for one enrollment. Never raises."""
        now = self._clock()
        enrollment = self.repository.claim(enrollment_id, self.worker_id, now, self.lease_ttl)
        if enrollment is None:
            current = self.repository.get_enrollment(enrollment_id)
            if current is None or current.is_terminal:
                return TickResult(enrollment_id, TickStatus.SKIPPED, detail="not active")
            logger.debug("Enrollment %s is leased by another worker", enrollment_id)
            return TickResult(enrollment_id, TickStatus.CONTENDED)

        try:
            return self._step(enrollment, now)
        except LeaseError as exc:
            logger.warning("Lost lease on enrollment %s: %s", enrollment_id, exc, extra=self._log_context(enrollment))
            return TickResult(enrollment_id, TickStatus.CONTENDED, detail=str(exc))
        except Exception as exc:
            logger.exception(
                "Unexpected error while processing enrollment %s", enrollment_id, extra=self._log_context(enrollment)
            )
            return TickResult(enrollment_id, TickStatus.ERROR, detail=str(exc))
        finally:
            self.repository.release(enrollment_id, self.worker_id)

    def _step(self, enrollment: Enrollment, now: datetime) -> TickResult:
        automation = self.repository.get(enrollment.automation_id)
        if automation is None or not automation.is_active:
            # Paused or draft automations freeze their enrollments in place.
            return TickResult(enrollment.id, TickStatus.SKIPPED, enrollment.current_step_id, "automation not active")
        if not enrollment.is_runnable(now):
            return TickResult(enrollment.id, TickStatus.SKIPPED, enrollment.current_step_id, "waiting")

        try:
            graph = self.graphs.get(automation, self.repository.list_steps)
        except GraphValidationError as exc:
            logger.error(
                "Automation %s has an invalid graph, leaving enrollment %s in place: %s",
                automation.id,
                enrollment.id,
                exc,
                extra=self._log_context(enrollment),
            )
            return TickResult(enrollment.id, TickStatus.ERROR, enrollment.current_step_id, str(exc))

        if enrollment.current_step_id is None:
            step = graph.entry_step()
        else:
            step = graph.step(enrollment.current_step_id)
        if step is None:
            reason = f"Step {enrollment.current_step_id} no longer exists"
            updated = self._transition(enrollment, Exit(reason), None, now)
            self.repository.commit_transition(updated, self.worker_id)
            logger.warning("Enrollment %s exited: %s", enrollment.id, reason, extra=self._log_context(enrollment))
            return TickResult(enrollment.id, TickStatus.EXITED, enrollment.current_step_id, reason)

        if enrollment.wait_until is not None:
            # The wait has elapsed: move past the wait step without re-running anything.
            entry = build_entry(
                enrollment,
                step,
                StepExecutionStatus.COMPLETED,
                now,
                output={"waited_until": enrollment.wait_until.isoformat(), "resumed_at": now.isoformat()},
            )
            return self._commit(enrollment, step, StepResult(Advance(step.next_step_id), entry), now, resumed=True)

        try:
            result = self.executor.execute(enrollment, step, heartbeat=lambda: self._renew_lease(enrollment.id))
        except LeaseError:
            raise
        except Exception as exc:
            logger.exception(
                "Step %s raised for enrollment %s", step.id, enrollment.id, extra=self._log_context(enrollment, step)
            )
            entry = build_entry(
                enrollment, step, StepExecutionStatus.FAILED, self._clock(), error=f"{type(exc).__name__}: {exc}"
            )
            result = StepResult(Fail(f"Unexpected error: {exc}"), entry)
        return self._commit(enrollment, step, result, now)

    def _renew_lease(self, enrollment_id: str) -> None:
        if self.repository.claim(enrollment_id, self.worker_id, self._clock(), self.lease_ttl) is None:
            raise LeaseError(f"Lease on enrollment {enrollment_id} was taken over before the next attempt")

    def _log_context(self, enrollment: Enrollment, step: Step | None = None) -> Dict[str, Any]:
        return {
            "automation_id": enrollment.automation_id,
            "enrollment_id": enrollment.id,
            "step_id": step.id if step is not None else enrollment.current_step_id,
            "worker_id": self.worker_id,
        }

    def _transition(self, enrollment: Enrollment, outcome: Outcome, step: Step | None, now: datetime) -> Enrollment:
        if isinstance(outcome, Advance):
            if outcome.next_step_id is None:
                changes = {"status": EnrollmentStatus.COMPLETED, "completed_at": now, "current_step_id": None}
            else:
                changes = {"current_step_id": outcome.next_step_id}
            changes["wait_until"] = None
        elif isinstance(outcome, Wait):
            changes = {"current_step_id": step.id, "wait_until": outcome.until}
        elif isinstance(outcome, Exit):
            changes = {
                "status": EnrollmentStatus.EXITED,
                "exited_at": now,
                "exit_reason": outcome.reason,
                "wait_until": None,
            }
        elif isinstance(outcome, Fail):
            changes = {
                "status": EnrollmentStatus.FAILED,
                "exited_at": now,
                "exit_reason": outcome.error,
                "wait_until": None,
            }
        else:
            raise TypeError(f"Unknown step outcome: {outcome!r}")
        return enrollment.model_copy(update=changes)

    def _commit(
        self, enrollment: Enrollment, step: Step, result: StepResult, now: datetime, resumed: bool = False
    ) -> TickResult:
        updated = self._transition(enrollment, result.outcome, step, now)
        entries: List[LogEntry] = [result.entry]
        context = self._log_context(enrollment, step)
        try:
            self.repository.commit_transition(updated, self.worker_id, entries)
        except LeaseError:
            # The step ran; keep its record so the next owner sees it as done.
            for entry in entries:
                self.repository.append_log(entry)
            logger.warning(
                "Lease on enrollment %s lost during step %s; logged %s without moving the enrollment",
                enrollment.id,
                step.id,
                result.entry.status.value,
                extra=context,
            )
            raise

        outcome = result.outcome
        if isinstance(outcome, Advance):
            if outcome.next_step_id is None:
                logger.info("Enrollment %s completed at step %s", enrollment.id, step.id, extra=context)
                return TickResult(enrollment.id, TickStatus.COMPLETED, step.id)
            status = TickStatus.RESUMED if resumed else TickStatus.ADVANCED
            return TickResult(enrollment.id, status, step.id, outcome.next_step_id)
        if isinstance(outcome, Wait):
            logger.debug(
                "Enrollment %s parked on step %s until %s", enrollment.id, step.id, outcome.until, extra=context
            )
            return TickResult(enrollment.id, TickStatus.WAITING, step.id, outcome.until.isoformat())
        if isinstance(outcome, Exit):
            logger.info("Enrollment %s exited at step %s: %s", enrollment.id, step.id, outcome.reason, extra=context)
            return TickResult(enrollment.id, TickStatus.EXITED, step.id, outcome.reason)
        logger.warning("Enrollment %s failed at step %s: %s", enrollment.id, step.id, outcome.error, extra=context)
        return TickResult(enrollment.id, TickStatus.FAILED, step.id, outcome.error)

    # Polling

    def _claim_in_flight(self, enrollment_id: str) -> bool:
        with self._in_flight_lock:
            if enrollment_id in self._in_flight:
                return False
            self._in_flight.add(enrollment_id)
            return True

    def _release_in_flight(self, enrollment_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(enrollment_id)

    def _process_once(self, enrollment_id: str) -> TickResult:
        try:
            return self.process(enrollment_id)
        finally:
            self._release_in_flight(enrollment_id)

    def tick(self) -> List[TickResult]:
        """Run one scheduling pass: one step for each runnable enrollment."""
        ids = [
            enrollment_id
            for enrollment_id in self.repository.find_runnable(self._clock(), self.batch_size)
            if self._claim_in_flight(enrollment_id)
        ]
        futures = [self._pool.submit(self._process_once, enrollment_id) for enrollment_id in ids]
        results = [future.result() for future in futures]
        if results:
            logger.debug("Tick processed %d enrollments", len(results))
        return results

    def run_until_idle(self, max_ticks: int = 1000) -> List[TickResult]:
        """Tick until nothing is runnable; parked enrollments stay parked."""
        results: List[TickResult] = []
        for _ in range(max_ticks):
            batch = self.tick()
            if not batch:
                break
            results.extend(batch)
        return results

    # Background mode

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def enqueue(self, enrollment_id: str) -> None:
        """Hand a freshly created or advanced enrollment to the pool without waiting for the next poll."""
        if self.running:
            self._dispatch(enrollment_id)

    def _dispatch(self, enrollment_id: str) -> None:
        if self._stop.is_set() or not self._claim_in_flight(enrollment_id):
            return
        self._pool.submit(self._run_chain, enrollment_id)

    def _run_chain(self, enrollment_id: str) -> None:
        result = self._process_once(enrollment_id)
        if result.continues:
            self._dispatch(enrollment_id)

    def _loop(self) -> None:
        logger.info("Scheduler %s polling every %.1fs", self.worker_id, self.poll_interval)
        while not self._stop.is_set():
            try:
                for enrollment_id in self.repository.find_runnable(self._clock(), self.batch_size):
                    self._dispatch(enrollment_id)
            except Exception:
                logger.exception("Scheduler poll failed")
            self._stop.wait(self.poll_interval)
        logger.info("Scheduler %s stopped", self.worker_id)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="enrollment-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop polling. Steps already executing run to completion."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def shutdown(self) -> None:
        self.stop()
        self._pool.shutdown(wait=True)

    def __enter__(self) -> "EnrollmentScheduler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.shutdown()
        return False
