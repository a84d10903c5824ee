"""
Bounded retry wrapper built on tenacity.

Wraps one fallible coroutine call. Transient failures are retried up to
the attempt budget; anything derived from FatalError propagates at once.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_fixed,
    wait_none,
)

from datapump.core.errors import DataPumpError, FatalError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(DataPumpError):
    """All attempts failed and no final-failure callback was given."""

    def __init__(self, message: str, attempts: int, last_error: BaseException):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def _log_retry(label: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(f"{label} failed (attempt {state.attempt_number}): {error}")

    return before_sleep


async def with_retry(
    max_attempts: int,
    operation: Callable[[], Awaitable[T]],
    on_final_failure: Callable[[BaseException], Any] | None = None,
    *,
    delay: float = 0.0,
    label: str = "operation",
) -> T | Any:
    """Await ``operation()`` with a bounded number of attempts.

    Args:
        max_attempts: Attempt budget. 0 means a single unretried attempt.
        operation: Zero-argument coroutine function to invoke
        on_final_failure: Called once with the last error after the
            budget is spent; its (awaited) return value is returned
        delay: Fixed pause between attempts in seconds
        label: Name used in log messages

    Returns:
        The operation's result, or the final-failure callback's result

    Raises:
        FatalError: Immediately, without retrying
        RetryExhaustedError: If all attempts fail and no callback is given
    """
    attempts = max(1, max_attempts)

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(delay) if delay > 0 else wait_none(),
            retry=retry_if_not_exception_type(FatalError),
            before_sleep=_log_retry(label),
            reraise=True,
        ):
            with attempt:
                return await operation()
    except FatalError:
        raise
    except Exception as e:
        logger.debug(f"{label} gave up after {attempts} attempt(s): {e}")
        if on_final_failure is None:
            raise RetryExhaustedError(
                f"{label} failed after {attempts} attempt(s): {e}",
                attempts=attempts,
                last_error=e,
            ) from e
        result = on_final_failure(e)
        if inspect.isawaitable(result):
            result = await result
        return result
