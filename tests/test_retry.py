"""Tests for retry with backoff and the circuit breaker."""

from __future__ import annotations

from typing import Callable, List

import pytest

from wiggumizer.config import RetryConfig
from wiggumizer.providers import ModelError, ModelErrorKind
from wiggumizer.retry import CircuitOpenError, RetryPolicy


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _policy(**kwargs) -> RetryPolicy:
    sleeps: List[float] = []
    policy = RetryPolicy(sleep=sleeps.append, jitter=lambda: 0.0, **kwargs)
    policy.sleeps = sleeps  # type: ignore[attr-defined]
    return policy


def _failing(times: int, kind: ModelErrorKind, result: str = "ok") -> Callable[[], str]:
    calls = {"n": 0}

    def fn() -> str:
        calls["n"] += 1
        if calls["n"] <= times:
            raise ModelError(f"failure {calls['n']}", kind=kind)
        return result

    fn.calls = calls  # type: ignore[attr-defined]
    return fn


def test_success_first_try() -> None:
    policy = _policy()
    assert policy.call(lambda: "ok") == "ok"
    assert policy.sleeps == []


def test_transient_retried_with_exponential_backoff() -> None:
    policy = _policy(max_retries=3, base_delay_seconds=1.0)
    assert policy.call(_failing(2, ModelErrorKind.TRANSIENT)) == "ok"
    assert policy.sleeps == [1.0, 2.0]


def test_rate_limited_waits_longer() -> None:
    policy = _policy(max_retries=3, base_delay_seconds=1.0)
    policy.call(_failing(2, ModelErrorKind.RATE_LIMITED))
    assert policy.sleeps == [2.0, 4.0]


def test_backoff_capped() -> None:
    policy = _policy(base_delay_seconds=10.0, max_delay_seconds=15.0)
    assert policy.backoff(5, ModelErrorKind.TRANSIENT) == 15.0


def test_jitter_added() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, jitter=lambda: 1.0)
    assert policy.backoff(1, ModelErrorKind.TRANSIENT) == pytest.approx(1.1)


def test_fatal_not_retried() -> None:
    policy = _policy()
    fn = _failing(1, ModelErrorKind.FATAL)
    with pytest.raises(ModelError):
        policy.call(fn)
    assert fn.calls["n"] == 1
    assert policy.sleeps == []


def test_exhausted_retries_raise() -> None:
    policy = _policy(max_retries=2)
    fn = _failing(10, ModelErrorKind.TRANSIENT)
    with pytest.raises(ModelError):
        policy.call(fn)
    assert fn.calls["n"] == 3
    assert policy.consecutive_failures == 1


def test_plain_exceptions_classified() -> None:
    policy = _policy(max_retries=1)

    def fn() -> str:
        raise ConnectionError("connection reset")

    with pytest.raises(ModelError) as excinfo:
        policy.call(fn)
    assert excinfo.value.kind is ModelErrorKind.TRANSIENT


def test_circuit_breaker_opens_and_resets() -> None:
    clock = FakeClock()
    policy = _policy(max_retries=0, circuit_breaker_threshold=2, circuit_reset_seconds=60, clock=clock)
    for _ in range(2):
        with pytest.raises(ModelError):
            policy.call(_failing(1, ModelErrorKind.TRANSIENT))
    assert policy.circuit_open

    never_called = _failing(0, ModelErrorKind.TRANSIENT)
    with pytest.raises(CircuitOpenError):
        policy.call(never_called)
    assert never_called.calls["n"] == 0

    clock.now = 61
    assert policy.call(lambda: "ok") == "ok"
    assert not policy.circuit_open
    assert policy.consecutive_failures == 0


def test_from_config() -> None:
    policy = RetryPolicy.from_config(RetryConfig(max_retries=7, base_delay_seconds=0.5))
    assert policy.max_retries == 7
    assert policy.base_delay_seconds == 0.5
