"""State transition validation for jobs.

Every status write goes through `validate_transition`; the scheduler and the
admin service never compare status strings on their own.

PROCESSING and DELETE_PROCESSING are transient: after a restart the recovery
sweep moves them to FAILED / DELETE_FAILED. Nothing reaches PROCESSING except
from REQUEST.
"""

from typing import Dict, FrozenSet, Optional

from postflow_server.errors import InvalidStateTransitionError

from .types import JobStatus

S = JobStatus

_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    S.PENDING: frozenset({S.REQUEST}),
    S.REQUEST: frozenset({S.PENDING, S.PROCESSING}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED}),
    S.FAILED: frozenset({S.REQUEST}),
    S.COMPLETED: frozenset({S.REQUEST, S.DELETE_REQUEST, S.DELETE_PROCESSING}),
    S.DELETE_REQUEST: frozenset({S.DELETE_PROCESSING}),
    S.DELETE_PROCESSING: frozenset({S.DELETE_COMPLETED, S.DELETE_FAILED}),
    S.DELETE_FAILED: frozenset({S.DELETE_REQUEST}),
    S.DELETE_COMPLETED: frozenset(),
}

TRANSIENT_STATES: FrozenSet[JobStatus] = frozenset({S.PROCESSING, S.DELETE_PROCESSING})

# Where the recovery sweep sends each transient state.
RECOVERY_TARGETS: Dict[JobStatus, JobStatus] = {
    S.PROCESSING: S.FAILED,
    S.DELETE_PROCESSING: S.DELETE_FAILED,
}

# States an admin "retry" re-runs from.
RETRYABLE_STATES: FrozenSet[JobStatus] = frozenset({S.FAILED, S.COMPLETED})


def allowed_targets(status: JobStatus | str) -> FrozenSet[JobStatus]:
    return _TRANSITIONS[JobStatus(status)]


def can_transition(from_status: JobStatus | str, to_status: JobStatus | str) -> bool:
    return JobStatus(to_status) in _TRANSITIONS[JobStatus(from_status)]


def validate_transition(
    from_status: JobStatus | str,
    to_status: JobStatus | str,
    job_id: Optional[int] = None,
) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidStateTransitionError(job_id, JobStatus(from_status).value, JobStatus(to_status).value)


def is_transient(status: JobStatus | str) -> bool:
    return JobStatus(status) in TRANSIENT_STATES
