"""Bounded retry policies with tenacity.

This module provides:
- call_with_retry: run a callable under a RetryConfig
- with_retry: decorator form

Every retry is bounded by ``RetryConfig.max_attempts``; once the budget is
spent the last exception is re-raised so the caller can escalate it.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

import structlog
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from bindery_core.config import RetryConfig
from bindery_core.errors import TransientNetworkError

P = ParamSpec("P")
R = TypeVar("R")

logger = structlog.get_logger(__name__)

DEFAULT_RETRY_EXCEPTIONS: tuple[type[Exception], ...] = (TransientNetworkError,)


def call_with_retry(
    func: Callable[[], R],
    config: RetryConfig,
    *,
    retry_exceptions: tuple[type[Exception], ...] | None = None,
    operation: str = "operation",
) -> R:
    """Call ``func`` until it succeeds or the attempt budget is spent.

    Args:
        func: Zero-argument callable.
        config: Retry policy.
        retry_exceptions: Exception types that trigger a retry.
        operation: Name used in retry log events.

    Returns:
        The callable's return value.

    Raises:
        The last retryable exception once attempts are exhausted, or any
        non-retryable exception immediately.

    Example:
        >>> call_with_retry(lambda: 42, RetryConfig(max_attempts=1))
        42
    """
    exceptions = retry_exceptions or DEFAULT_RETRY_EXCEPTIONS
    last_exception: Exception | None = None

    try:
        for attempt_state in Retrying(
            retry=retry_if_exception_type(exceptions),
            stop=stop_after_attempt(config.max_attempts),
            wait=wait_exponential_jitter(
                initial=config.initial_wait_seconds,
                max=config.max_wait_seconds,
                jitter=config.jitter_seconds,
            ),
            reraise=False,
        ):
            with attempt_state:
                attempt = attempt_state.retry_state.attempt_number
                try:
                    return func()
                except exceptions as exc:
                    last_exception = exc
                    if attempt < config.max_attempts:
                        logger.warning(
                            "operation_retry",
                            operation=operation,
                            attempt=attempt,
                            max_attempts=config.max_attempts,
                            error=str(exc),
                        )
                    raise
    except RetryError:
        logger.error(
            "operation_retries_exhausted",
            operation=operation,
            max_attempts=config.max_attempts,
        )
        if last_exception is not None:
            raise last_exception from None
        raise

    raise RuntimeError("Unexpected retry state")  # pragma: no cover


def with_retry(
    config: RetryConfig | None = None,
    *,
    retry_exceptions: tuple[type[Exception], ...] | None = None,
    operation: str | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator form of call_with_retry.

    Example:
        >>> @with_retry(RetryConfig(max_attempts=5))
        ... def upload():
        ...     return registry.put(archive)
    """
    cfg = config or RetryConfig()

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        op_name = operation or func.__name__

        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            return call_with_retry(
                lambda: func(*args, **kwargs),
                cfg,
                retry_exceptions=retry_exceptions,
                operation=op_name,
            )

        return wrapper

    return decorator
