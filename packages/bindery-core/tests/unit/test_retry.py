"""Unit tests for bounded retries."""

from __future__ import annotations

import pytest

from bindery_core.config import RetryConfig
from bindery_core.errors import ConfigurationError, TransientNetworkError
from bindery_core.retry import call_with_retry, with_retry

FAST = RetryConfig(max_attempts=3, initial_wait_seconds=0, max_wait_seconds=0, jitter_seconds=0)


class Flaky:
    """Callable failing a fixed number of times before succeeding."""

    def __init__(self, failures: int, exc: Exception | None = None) -> None:
        self.failures = failures
        self.calls = 0
        self.exc = exc or TransientNetworkError("connection reset")

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


class TestCallWithRetry:
    def test_success_first_try(self) -> None:
        func = Flaky(0)
        assert call_with_retry(func, FAST) == "ok"
        assert func.calls == 1

    def test_recovers_after_transient_failures(self) -> None:
        func = Flaky(2)
        assert call_with_retry(func, FAST) == "ok"
        assert func.calls == 3

    def test_exhausted_reraises_last_error(self) -> None:
        func = Flaky(5)
        with pytest.raises(TransientNetworkError, match="connection reset"):
            call_with_retry(func, FAST)
        assert func.calls == 3

    def test_non_retryable_raised_immediately(self) -> None:
        func = Flaky(1, exc=ConfigurationError("bad"))
        with pytest.raises(ConfigurationError):
            call_with_retry(func, FAST)
        assert func.calls == 1

    def test_custom_retry_exceptions(self) -> None:
        func = Flaky(1, exc=OSError("busy"))
        assert call_with_retry(func, FAST, retry_exceptions=(OSError,)) == "ok"
        assert func.calls == 2

    def test_single_attempt(self) -> None:
        func = Flaky(1)
        with pytest.raises(TransientNetworkError):
            call_with_retry(func, RetryConfig(max_attempts=1, initial_wait_seconds=0, max_wait_seconds=0))
        assert func.calls == 1


class TestWithRetry:
    def test_decorator(self) -> None:
        flaky = Flaky(1)

        @with_retry(FAST)
        def upload(name: str) -> str:
            return f"{name}:{flaky()}"

        assert upload("bdk") == "bdk:ok"
        assert flaky.calls == 2
