import pytest

from repo_triage.retry import RetryPolicy, call_with_retry


class Flaky(Exception):
    pass


def test_delay_doubles_with_bounded_jitter(monkeypatch):
    monkeypatch.setattr("repo_triage.retry.random.random", lambda: 1.0)
    policy = RetryPolicy(initial_backoff_ms=500, max_backoff_ms=30_000)

    assert policy.delay_seconds(1) == pytest.approx(0.625)
    assert policy.delay_seconds(2) == pytest.approx(1.25)
    assert policy.delay_seconds(10) == 30.0


def test_retries_transient_errors_until_success(no_sleep):
    calls = []

    def func():
        calls.append(1)
        if len(calls) < 3:
            raise Flaky("busy")
        return "ok"

    result = call_with_retry(func, RetryPolicy(max_attempts=3), lambda exc: isinstance(exc, Flaky))

    assert result == "ok"
    assert len(calls) == 3
    assert len(no_sleep) == 2


def test_gives_up_after_max_attempts(no_sleep):
    def func():
        raise Flaky("still busy")

    with pytest.raises(Flaky):
        call_with_retry(func, RetryPolicy(max_attempts=2), lambda exc: True)

    assert len(no_sleep) == 1


def test_non_transient_error_is_not_retried(no_sleep):
    calls = []

    def func():
        calls.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        call_with_retry(func, RetryPolicy(max_attempts=5), lambda exc: isinstance(exc, Flaky))

    assert calls == [1]
    assert no_sleep == []


def test_policy_from_config_section():
    policy = RetryPolicy.from_config({"max_retries": 4, "initial_backoff_ms": 100, "max_backoff_ms": 800})

    assert policy == RetryPolicy(max_attempts=4, initial_backoff_ms=100, max_backoff_ms=800)
