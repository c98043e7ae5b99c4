"""
Exponential backoff for upstream calls.

The first attempt runs immediately. After each failure the caller sleeps
for the current delay and doubles it; once the delay would exceed the
configured maximum the last error is raised.
"""

import asyncio
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

import structlog

from reward_tracker.core.config import settings


logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    retry_on: Tuple[Type[BaseException], ...],
    initial_delay: float = None,
    max_delay: float = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the backoff budget is spent."""
    delay = settings.retry_initial_delay if initial_delay is None else initial_delay
    max_delay = settings.retry_max_delay if max_delay is None else max_delay
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as e:
            if delay > max_delay:
                logger.error(
                    "Upstream call failed, giving up",
                    call=description,
                    attempts=attempt,
                    error=str(e)
                )
                raise

            logger.warning(
                "Upstream call failed, retrying",
                call=description,
                attempt=attempt,
                retry_in=delay,
                error=str(e)
            )
            await sleep(delay)
            delay *= 2
