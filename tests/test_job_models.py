import pytest

from reportq.v1.jobs.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    Job,
    JobStatus,
    can_transition,
)


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {JobStatus.COMPLETED, JobStatus.FAILED}


@pytest.mark.parametrize(
    "current,target",
    [
        (JobStatus.PENDING, JobStatus.PROCESSING),
        (JobStatus.PROCESSING, JobStatus.COMPLETED),
        (JobStatus.PROCESSING, JobStatus.PENDING),
        (JobStatus.PROCESSING, JobStatus.FAILED),
        (JobStatus.PROCESSING, JobStatus.PROCESSING),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (JobStatus.PENDING, JobStatus.COMPLETED),
        (JobStatus.PENDING, JobStatus.FAILED),
        (JobStatus.COMPLETED, JobStatus.PENDING),
        (JobStatus.COMPLETED, JobStatus.PROCESSING),
        (JobStatus.FAILED, JobStatus.PENDING),
        (JobStatus.FAILED, JobStatus.COMPLETED),
    ],
)
def test_forbidden_transitions(current, target):
    assert not can_transition(current, target)


def test_terminal_states_have_no_exits():
    for status in TERMINAL_STATUSES:
        assert ALLOWED_TRANSITIONS[status] == frozenset()


def test_transitions_accept_string_values():
    assert can_transition("pending", "processing")
    assert not can_transition("completed", "processing")


def test_job_helpers():
    job = Job(job_type="x", payload={}, status=JobStatus.COMPLETED.value, retry_count=0)

    assert job.is_terminal()
    assert not job.can_transition_to(JobStatus.PROCESSING)

    job.status = JobStatus.PROCESSING.value
    assert not job.is_terminal()
    assert job.can_transition_to(JobStatus.COMPLETED)
