"""Results a step execution can produce.

Exactly one of these is returned per executed step; the scheduler maps each
onto an enrollment state transition.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Union


@dataclass(frozen=True)
class Advance:
    """Move to `next_step_id`; None completes the enrollment."""

    next_step_id: str | None


@dataclass(frozen=True)
class Wait:
    until: datetime


@dataclass(frozen=True)
class Exit:
    reason: str


@dataclass(frozen=True)
class Fail:
    error: str


Outcome = Union[Advance, Wait, Exit, Fail]
