"""
Job status state machine and the update variants that drive it.

Every mutation of a job after creation is expressed as one of three
updates. Each variant targets exactly one status and owns exactly one set
of columns, so a completion can never carry a failure detail and vice
versa:

    ProcessingUpdate()            -> PROCESSING, no extra fields
    CompletedUpdate(output_ref)   -> COMPLETED, output_ref
    FailedUpdate(detail)          -> FAILED, failure_detail

Transition table:

    PENDING     -> PROCESSING | FAILED
    PROCESSING  -> COMPLETED | FAILED
    COMPLETED   -> (terminal)
    FAILED      -> (terminal)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Union

from .errors import InvalidTransitionError
from .models import JobStatus

TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS[current]


def allowed_sources(target: JobStatus) -> FrozenSet[JobStatus]:
    """Statuses from which ``target`` may be entered."""
    return frozenset(source for source, targets in TRANSITIONS.items() if target in targets)


@dataclass(frozen=True)
class ProcessingUpdate:
    target = JobStatus.PROCESSING

    def fields(self) -> Dict[str, str]:
        return {}


@dataclass(frozen=True)
class CompletedUpdate:
    output_ref: str
    target = JobStatus.COMPLETED

    def __post_init__(self) -> None:
        if not self.output_ref or not self.output_ref.strip():
            raise InvalidTransitionError("COMPLETED requires a non-empty output_ref")

    def fields(self) -> Dict[str, str]:
        return {"output_ref": self.output_ref}


@dataclass(frozen=True)
class FailedUpdate:
    detail: str
    target = JobStatus.FAILED

    def __post_init__(self) -> None:
        if not self.detail or not self.detail.strip():
            raise InvalidTransitionError("FAILED requires a non-empty failure detail")

    def fields(self) -> Dict[str, str]:
        return {"failure_detail": self.detail}


JobUpdate = Union[ProcessingUpdate, CompletedUpdate, FailedUpdate]
