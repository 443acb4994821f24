from __future__ import annotations

import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Coroutine, Optional, ParamSpec, TypeVar, cast

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import TransientError
from .logging_utils import log_event

P = ParamSpec("P")
T = TypeVar("T")


def _log_before_sleep(
    logger: logging.Logger, operation: str
) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        outcome = state.outcome
        next_action = state.next_action
        log_event(
            logger,
            logging.WARNING,
            "retry.scheduled",
            operation=operation,
            attempt=state.attempt_number,
            delay_seconds=next_action.sleep if next_action is not None else None,
            exc=outcome.exception() if outcome is not None else None,
        )

    return _before_sleep


def retry_transient(
    max_attempts: int = 3,
    base_wait: float = 1.0,
    max_wait: float = 10.0,
    *,
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, T]]], Callable[P, Coroutine[Any, Any, T]]
]:
    """
    Decorator for retrying transient errors with exponential backoff.

    Args:
        max_attempts: Total attempts including the first call (default: 3)
        base_wait: Base wait in seconds before exponential backoff (default: 1.0)
        max_wait: Maximum wait in seconds between attempts (default: 10.0)
        logger: Receives one ``retry.scheduled`` event per retry
        sleep: Awaitable sleep used between attempts

    Raises:
        The last TransientError once all attempts are exhausted. Other
        exceptions propagate on the first failure.
    """
    retry_logger = logger or logging.getLogger(__name__)

    def decorator(
        func: Callable[P, Coroutine[Any, Any, T]],
    ) -> Callable[P, Coroutine[Any, Any, T]]:
        @wraps(func)
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_wait, max=max_wait, exp_base=2),
            retry=retry_if_exception_type(TransientError),
            before_sleep=_log_before_sleep(retry_logger, func.__name__),
            sleep=sleep,
            reraise=True,
        )
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return cast(T, await func(*args, **kwargs))

        return wrapper

    return decorator
