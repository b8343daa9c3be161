"""Retry builders and utilities."""
import logging
from typing import Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.exceptions import PermanentIngestionError
from ..core.logging import logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        min_wait: float = 1.0,
        max_wait: float = 60.0,
        backoff_multiplier: float = 2.0,
        retry_exceptions: Optional[tuple] = None,
        no_retry_exceptions: Optional[tuple] = None,
    ):
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.backoff_multiplier = backoff_multiplier
        self.retry_exceptions = retry_exceptions or (Exception,)
        self.no_retry_exceptions = no_retry_exceptions or (PermanentIngestionError,)

    @classmethod
    def from_delay_ms(
        cls,
        max_retries: int,
        retry_delay_ms: float,
        max_delay_ms: float,
    ) -> "RetryConfig":
        """
        Build a config from the millisecond knobs used by the batch options.

        ``max_retries`` counts extra attempts, so the first try plus
        ``max_retries`` retries gives ``max_retries + 1`` attempts. Waits start
        at ``retry_delay_ms`` and double up to ``max_delay_ms``.
        """
        delay = retry_delay_ms / 1000
        return cls(
            max_attempts=max_retries + 1,
            min_wait=delay,
            max_wait=max(delay, max_delay_ms / 1000),
            backoff_multiplier=delay,
        )


def _tenacity_kwargs(config: RetryConfig, on_retry: Optional[Callable[[RetryCallState], None]]):
    log_before_sleep = before_sleep_log(logger, logging.WARNING)

    def before_sleep(retry_state: RetryCallState):
        if on_retry is not None:
            on_retry(retry_state)
        log_before_sleep(retry_state)

    return dict(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.backoff_multiplier,
            min=config.min_wait,
            max=config.max_wait,
        ),
        # CancelledError is a BaseException and is never retried
        retry=(
            retry_if_exception_type(config.retry_exceptions)
            & retry_if_not_exception_type(config.no_retry_exceptions)
        ),
        before_sleep=before_sleep,
        reraise=True,
    )


def build_async_retrying(
    config: RetryConfig,
    on_retry: Optional[Callable[[RetryCallState], None]] = None,
) -> AsyncRetrying:
    """
    Create a tenacity AsyncRetrying for ``async for attempt in ...`` loops.

    Args:
        config: Retry configuration
        on_retry: Called before each backoff sleep (e.g. to count retries)
    """
    return AsyncRetrying(**_tenacity_kwargs(config, on_retry))


def build_retrying(
    config: RetryConfig,
    on_retry: Optional[Callable[[RetryCallState], None]] = None,
) -> Retrying:
    """Synchronous counterpart of build_async_retrying."""
    return Retrying(**_tenacity_kwargs(config, on_retry))
