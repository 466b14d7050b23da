# ==============================================================================
# Retry Configuration
# ==============================================================================
"""
Shared retry configuration for backend connection checks.

Storage operations never retry: failures propagate to the caller as
StorageUnavailable. The only retried step is the connectivity check a
backend runs inside initialize(), where a service that is still starting
up should not abort the whole process.

Light retry: 3 attempts over ~7 seconds
"""

import logging
from typing import Tuple, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

# ==============================================================================
# Retry Constants
# ==============================================================================

# Light retry configuration: 3 retries over ~7 seconds
# Exponential backoff: 1s, 2s, 4s = ~7s total
RETRY_ATTEMPTS_LIGHT = 3
RETRY_WAIT_MIN = 1  # seconds
RETRY_WAIT_MAX = 8  # seconds (cap for exponential backoff)

# Valkey retry configuration (used by redis-py client)
VALKEY_RETRIES = 3


# ==============================================================================
# Logging Callbacks
# ==============================================================================


def log_retry_attempt_light(logger: logging.Logger):
    """
    Create a callback that logs retry attempts for light retry.

    Args:
        logger: Logger instance to use for logging

    Returns:
        Callback function for tenacity's before_sleep parameter
    """

    def _log_retry(retry_state: RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retry attempt %d/%d after error: %s",
            retry_state.attempt_number,
            RETRY_ATTEMPTS_LIGHT,
            exception,
        )

    return _log_retry


# ==============================================================================
# Retry Controllers
# ==============================================================================


def retry_light_async(
    exception_types: Tuple[Type[Exception], ...],
    logger: logging.Logger,
    attempts: int = RETRY_ATTEMPTS_LIGHT,
    wait_min: float = RETRY_WAIT_MIN,
) -> AsyncRetrying:
    """
    Create a light async retry controller (3 attempts, ~7 seconds).

    Use this for connectivity checks during backend initialization.

    Args:
        exception_types: Tuple of exception types to retry on
        logger: Logger instance for retry logging
        attempts: Maximum number of attempts
        wait_min: Minimum backoff in seconds (tests pass 0)

    Returns:
        Tenacity AsyncRetrying controller

    Example:
        async for attempt in retry_light_async((ConnectionError,), logger):
            with attempt:
                await client.info()
    """
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=wait_min, min=wait_min, max=RETRY_WAIT_MAX),
        retry=retry_if_exception_type(exception_types),
        before_sleep=log_retry_attempt_light(logger),
        reraise=True,
    )
