import pytest

from postflow_server.errors import InvalidStateTransitionError
from postflow_server.jobs.state import (
    RECOVERY_TARGETS,
    TRANSIENT_STATES,
    allowed_targets,
    can_transition,
    is_transient,
    validate_transition,
)
from postflow_server.jobs.types import JobStatus


def test_every_status_has_an_entry() -> None:
    for status in JobStatus:
        allowed_targets(status)


def test_processing_only_reachable_from_request() -> None:
    for status in JobStatus:
        if can_transition(status, JobStatus.PROCESSING):
            assert status == JobStatus.REQUEST


@pytest.mark.parametrize("terminal", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DELETE_COMPLETED])
def test_terminal_states_never_go_straight_to_processing(terminal: JobStatus) -> None:
    with pytest.raises(InvalidStateTransitionError):
        validate_transition(terminal, JobStatus.PROCESSING, job_id=1)


def test_retry_paths() -> None:
    assert can_transition("failed", "request")
    assert can_transition("completed", "request")
    assert can_transition("delete_failed", "delete_request")
    assert not can_transition("processing", "request")
    assert not can_transition("pending", "processing")


def test_recovery_targets_cover_transient_states() -> None:
    assert set(RECOVERY_TARGETS) == set(TRANSIENT_STATES)
    for source, target in RECOVERY_TARGETS.items():
        assert can_transition(source, target)
    assert is_transient("processing")
    assert not is_transient("request")


def test_unknown_status_rejected() -> None:
    with pytest.raises(ValueError):
        can_transition("archived", "request")


def test_error_carries_both_states() -> None:
    with pytest.raises(InvalidStateTransitionError) as exc_info:
        validate_transition("delete_completed", "request", job_id=7)
    assert exc_info.value.job_id == 7
    assert exc_info.value.current == "delete_completed"
    assert exc_info.value.target == "request"
