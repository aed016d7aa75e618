import pytest

from reportq.v1.core.exceptions import PermanentFailure, TransientError
from reportq.v1.jobs.retry import (
    RetryDecision,
    RetryPolicy,
    backoff_delay,
    decide,
    describe_error,
)


@pytest.mark.parametrize(
    "retry_count,max_retries,expected",
    [
        (0, 3, RetryDecision.RETRY),
        (2, 3, RetryDecision.RETRY),
        (3, 3, RetryDecision.EXHAUSTED),
        (0, 0, RetryDecision.EXHAUSTED),
    ],
)
def test_decide(retry_count, max_retries, expected):
    assert decide(retry_count, max_retries) is expected


def test_decide_rejects_negative_values():
    with pytest.raises(ValueError):
        decide(-1, 3)
    with pytest.raises(ValueError):
        decide(0, -1)


def test_only_transient_errors_are_retried():
    policy = RetryPolicy(max_retries=3)

    assert policy.evaluate(0, TransientError("boom")) is RetryDecision.RETRY
    assert policy.evaluate(0, PermanentFailure("boom")) is RetryDecision.EXHAUSTED
    assert policy.evaluate(0, RuntimeError("boom")) is RetryDecision.EXHAUSTED
    assert policy.evaluate(3, TransientError("boom")) is RetryDecision.EXHAUSTED


def test_failure_reason_names_the_cause():
    policy = RetryPolicy()

    assert policy.failure_reason(TransientError("db timeout")) == "exhausted retries: db timeout"
    assert policy.failure_reason(KeyError("region")) == "permanent failure: 'region'"


def test_describe_error_falls_back_to_class_name():
    assert describe_error(TransientError()) == "TransientError"
    assert describe_error(ValueError("bad")) == "bad"


def test_default_max_retries():
    assert RetryPolicy().max_retries == 3


@pytest.mark.parametrize("attempt", range(1, 10))
def test_backoff_delay_is_bounded(attempt):
    delay = backoff_delay(attempt, base_delay_s=1.0, max_delay_s=8.0)

    expected = min(8.0, 2 ** (attempt - 1))
    assert 0.0 <= delay <= 8.0
    assert expected * 0.75 <= delay <= min(8.0, expected * 1.25)


def test_backoff_delay_without_jitter_doubles():
    delays = [backoff_delay(n, 0.5, 100.0, jitter=0) for n in range(1, 5)]

    assert delays == [0.5, 1.0, 2.0, 4.0]
