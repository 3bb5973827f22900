"""Retry logic and decorators using tenacity.

This module provides retry decorators for Rally and Azure DevOps API calls
with exponential backoff and jitter, plus the wait strategy the batch
orchestrator uses when it retries a whole record.
"""

import asyncio
from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from workitem_bridge.client.exceptions import NetworkError, RateLimitError, ServerError
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def retry_with_backoff(
    max_attempts: int = 5,
    min_wait: int = 2,
    max_wait: int = 60,
    retry_on_exceptions: tuple = (NetworkError, ServerError, RateLimitError),
) -> Callable[[F], F]:
    """General retry decorator with exponential backoff and jitter.

    Args:
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        retry_on_exceptions: Tuple of exception types to retry on

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            async for attempt_obj in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_random_exponential(multiplier=1, min=min_wait, max=max_wait),
                retry=retry_if_exception_type(retry_on_exceptions),
                reraise=True,
            ):
                with attempt_obj:
                    attempt = attempt_obj.retry_state.attempt_number
                    if attempt > 1:
                        logger.info(
                            "retry_attempt",
                            function=func.__name__,
                            attempt=attempt,
                            max_attempts=max_attempts,
                        )
                    return await func(*args, **kwargs)

        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            @retry(
                stop=stop_after_attempt(max_attempts),
                wait=wait_random_exponential(multiplier=1, min=min_wait, max=max_wait),
                retry=retry_if_exception_type(retry_on_exceptions),
                reraise=True,
            )
            def _inner() -> Any:
                return func(*args, **kwargs)

            return _inner()

        if asyncio.iscoroutinefunction(func):
            return async_wrapper  # type: ignore
        else:
            return sync_wrapper  # type: ignore

    return decorator


def record_retry_wait(
    retry_delay: float, connection_retry_delay: float
) -> Callable[[RetryCallState], float]:
    """Build a tenacity wait strategy for whole-record retries.

    Connection failures wait a fixed ``connection_retry_delay``; every other
    retryable error waits ``retry_delay * attempt`` so the pause grows with
    each attempt.

    Args:
        retry_delay: Base delay in seconds, multiplied by the attempt number
        connection_retry_delay: Fixed delay in seconds after a NetworkError

    Returns:
        Callable usable as ``wait=`` for AsyncRetrying
    """

    def _wait(retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and isinstance(outcome.exception(), NetworkError):
            return connection_retry_delay
        return retry_delay * retry_state.attempt_number

    return _wait


# Pre-configured decorators for common use cases
retry_api_call = retry_with_backoff(max_attempts=5, min_wait=2, max_wait=60)
retry_api_call_short = retry_with_backoff(max_attempts=3, min_wait=1, max_wait=10)
