"""
State transition validation for transcription jobs.

Job lifecycle:
    PENDING → STAGING → SUBMITTED → RUNNING → SUCCEEDED
    RUNNING → STAGING on a retryable backend failure
    any non-terminal state → FAILED | TIMED_OUT | CANCELLED

Terminal states are immutable. Once a job enters one, no transition is
allowed, so late backend callbacks can never regress it.
"""

from typing import FrozenSet, Set, Tuple

from .errors import InvalidStateTransitionError
from .models import JobState


TERMINAL_JOB_STATES: FrozenSet[JobState] = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.TIMED_OUT,
    JobState.CANCELLED,
})

ACTIVE_JOB_STATES: FrozenSet[JobState] = frozenset(JobState) - TERMINAL_JOB_STATES


def is_job_terminal(state: JobState) -> bool:
    return state in TERMINAL_JOB_STATES


_JOB_TRANSITIONS: Set[Tuple[JobState, JobState]] = {
    (JobState.PENDING, JobState.STAGING),
    (JobState.STAGING, JobState.SUBMITTED),
    (JobState.SUBMITTED, JobState.RUNNING),
    (JobState.RUNNING, JobState.SUCCEEDED),

    # Retry after a retryable backend failure
    (JobState.RUNNING, JobState.STAGING),
}

for _state in ACTIVE_JOB_STATES:
    _JOB_TRANSITIONS.add((_state, JobState.FAILED))
    _JOB_TRANSITIONS.add((_state, JobState.TIMED_OUT))
    _JOB_TRANSITIONS.add((_state, JobState.CANCELLED))


def can_transition_job(current: JobState, target: JobState) -> bool:
    return (current, target) in _JOB_TRANSITIONS


def validate_job_transition(current: JobState, target: JobState) -> None:
    """
    Raise InvalidStateTransitionError if current → target is not an edge
    of the lifecycle graph.
    """
    if not can_transition_job(current, target):
        raise InvalidStateTransitionError(current.value, target.value)
