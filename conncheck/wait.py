"""
Bounded polling.

``poll_until`` is the single retry loop every convergence check is built on:
it paces attempts, stops at a deadline, and reports the last failure when it
gives up. Cancellation of the calling task is never converted into a timeout.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import WaitTimeoutError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Deadline:
    """Absolute point in event-loop time shared by one or more waits.

    A deadline with ``at=None`` never expires.
    """

    def __init__(self, at: Optional[float]):
        self.at = at

    @classmethod
    def after(cls, seconds: float) -> 'Deadline':
        return cls(asyncio.get_running_loop().time() + seconds)

    @classmethod
    def never(cls) -> 'Deadline':
        return cls(None)

    def remaining(self) -> Optional[float]:
        if self.at is None:
            return None
        return max(0.0, self.at - asyncio.get_running_loop().time())

    def expired(self) -> bool:
        return self.at is not None and asyncio.get_running_loop().time() >= self.at


async def poll_until(probe: Callable[[], Awaitable[T]], *, interval: float, deadline: Deadline,
                     description: str) -> T:
    """Call ``probe`` until it returns, at most once per ``interval`` seconds.

    The probe always runs at least once, even against an expired deadline.
    A retryable failure is retried until ``deadline``; then WaitTimeoutError
    is raised wrapping the last failure. An attempt cut off by the deadline
    does not replace the failure reported by the attempt before it. Any
    other exception propagates immediately.
    """
    loop = asyncio.get_running_loop()
    last_error: Optional[BaseException] = None
    attempted = False

    while True:
        pace = loop.time() + interval
        timeout = deadline.remaining()
        if timeout is not None and not attempted:
            timeout = max(timeout, interval)
        attempted = True

        try:
            return await asyncio.wait_for(probe(), timeout=timeout)
        except asyncio.TimeoutError as e:
            # a cut-off attempt carries no message of its own
            if last_error is None or str(e):
                last_error = e
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e

        logger.debug(f"Waiting for {description}: {last_error!r}, retrying...")

        if deadline.expired():
            raise WaitTimeoutError(description, last_error) from last_error

        delay = pace - loop.time()
        remaining = deadline.remaining()
        if remaining is not None:
            delay = min(delay, remaining)
        if delay > 0:
            await asyncio.sleep(delay)
