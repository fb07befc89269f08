"""
Retry helper for remote credits calls

- Per-attempt timeout (CREDITS_API_TIMEOUT_SECONDS)
- Exponential backoff between attempts (CREDITS_API_RETRY_DELAY_SECONDS)
- Bounded attempts (CREDITS_API_MAX_RETRIES)
- Authentication and precondition failures propagate immediately

A timed-out call may still have been applied server-side; callers recover
with a refresh, never with a local reversal.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional, TypeVar

from . import config
from .errors import CreditsApiError, to_api_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_api_call(
    api_call: Callable[[], Coroutine[Any, Any, T]],
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    timeout_seconds: Optional[float] = None,
    operation: str = "credits_api",
) -> T:
    """
    Run an async remote call with timeout, retry and backoff.

    Args:
        api_call: Zero-argument coroutine factory (called once per attempt)
        max_retries: Retries after the first attempt (default: CREDITS_API_MAX_RETRIES)
        base_delay: First backoff delay in seconds, doubled per attempt
        timeout_seconds: Per-attempt timeout; 0 or negative disables it
        operation: Name used in log lines

    Returns:
        The call's result

    Raises:
        CreditsApiError: converted from the last failure
    """
    retries = config.CREDITS_API_MAX_RETRIES if max_retries is None else max_retries
    delay = config.CREDITS_API_RETRY_DELAY_SECONDS if base_delay is None else base_delay
    timeout = config.CREDITS_API_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds

    last_error: Optional[CreditsApiError] = None

    for attempt in range(retries + 1):
        try:
            if timeout and timeout > 0:
                return await asyncio.wait_for(api_call(), timeout=timeout)
            return await api_call()
        except Exception as e:
            error = to_api_error(e)
            last_error = error

            if not error.retryable:
                if error is e:
                    raise
                raise error from e

            if attempt >= retries:
                break

            wait_time = (2 ** attempt) * delay
            logger.warning(
                f"RETRY | op={operation} | attempt={attempt + 1}/{retries} | "
                f"code={error.code} | wait={wait_time}s | error={str(error)[:100]}"
            )
            if wait_time > 0:
                await asyncio.sleep(wait_time)

    logger.error(f"RETRY_EXHAUSTED | op={operation} | attempts={retries + 1} | code={last_error.code}")
    raise last_error
