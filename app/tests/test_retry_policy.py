import threading

import pytest

from habitsync.errors import RemoteConflictError, RemoteFatalError, RemoteTransientError
from habitsync.models import RemoteRecord
from habitsync.sync.retry import RetryPolicy


class _Flaky:
    def __init__(self, failures: int, error: Exception | None = None):
        self.failures = failures
        self.error = error or RemoteTransientError("zone_busy")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


def test_transient_errors_are_retried_with_doubling_delays(retry, sleeps):
    op = _Flaky(failures=2)

    assert retry.execute(op, label="save") == "ok"
    assert op.calls == 3
    assert sleeps == [1.0, 2.0]


def test_retry_bound_is_three_attempts_then_last_error_raised(retry, sleeps):
    op = _Flaky(failures=10)

    with pytest.raises(RemoteTransientError):
        retry.execute(op)

    assert op.calls == 3
    assert sleeps == [1.0, 2.0]


def test_conflict_is_not_retried(retry, sleeps):
    server = RemoteRecord(record_type="Activity", record_id="Activity-1", zone="HabitsZone")
    op = _Flaky(failures=1, error=RemoteConflictError(server))

    with pytest.raises(RemoteConflictError) as exc:
        retry.execute(op)

    assert exc.value.server_record.record_id == "Activity-1"
    assert op.calls == 1
    assert sleeps == []


def test_fatal_error_is_not_retried(retry, sleeps):
    op = _Flaky(failures=1, error=RemoteFatalError("bad_request"))

    with pytest.raises(RemoteFatalError):
        retry.execute(op)

    assert op.calls == 1
    assert sleeps == []


def test_exhaustion_is_logged(sleeps, log_func, log_records):
    policy = RetryPolicy(max_attempts=2, base_delay_sec=0.5, sleep=sleeps.append, log_func=log_func)

    with pytest.raises(RemoteTransientError):
        policy.execute(_Flaky(failures=5), label="query_all")

    messages = [r[2] for r in log_records]
    assert messages == ["transient_error_retrying", "retry_exhausted"]
    assert sleeps == [0.5]


def test_call_timeout_counts_as_transient_failure():
    release = threading.Event()
    policy = RetryPolicy(max_attempts=1, call_timeout_sec=0.05, sleep=lambda _s: None)

    try:
        with pytest.raises(RemoteTransientError, match="remote_call_timeout"):
            policy.execute(lambda: release.wait(5))
    finally:
        release.set()


def test_delay_schedule_and_validation():
    policy = RetryPolicy(base_delay_sec=1.0)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
