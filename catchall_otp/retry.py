"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

from tenacity import (
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    non_retryable_exceptions: tuple[type[BaseException], ...] = (),
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    *non_retryable_exceptions* carves subclasses out of
    *retryable_exceptions* (an ``AuthenticationError`` is a
    ``MailboxConnectionError`` that must not be retried).

    Usage::

        @with_retry(config.retry, retryable_exceptions=(MailboxConnectionError,))
        async def open_session() -> None: ...
    """
    condition = retry_if_exception_type(retryable_exceptions)
    if non_retryable_exceptions:
        condition = condition & retry_if_not_exception_type(non_retryable_exceptions)

    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=condition,
        reraise=True,
    )
