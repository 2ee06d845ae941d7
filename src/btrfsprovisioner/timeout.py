"""Deadlines for groups of Kubernetes API calls."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from safir.datetime import current_datetime

from .exceptions import ControllerTimeoutError

__all__ = ["Timeout"]


class Timeout:
    """Deadline shared by the API calls made for one unit of work.

    Handling one watch event, or running one phase of a provisioner job,
    makes several Kubernetes API calls. Each call is passed the time left
    until the deadline as its request timeout and runs inside `enforce`, so
    that the unit of work as a whole cannot outlast the deadline.

    Parameters
    ----------
    operation
        Description of the unit of work, used in error messages.
    duration
        Time allowed, starting now.
    """

    def __init__(self, operation: str, duration: timedelta) -> None:
        self._operation = operation
        self._started = current_datetime(microseconds=True)
        self._deadline = self._started + duration

    @asynccontextmanager
    async def enforce(self) -> AsyncIterator[None]:
        """Cancel the enclosed block when the deadline passes.

        Raises
        ------
        ControllerTimeoutError
            Raised if the deadline passed before or during the block.
        """
        delay = self.left()
        try:
            async with asyncio.timeout(delay):
                yield
        except TimeoutError as e:
            raise self._expired(current_datetime(microseconds=True)) from e

    def left(self) -> float:
        """Seconds remaining until the deadline.

        Raises
        ------
        ControllerTimeoutError
            Raised if the deadline has already passed.
        """
        now = current_datetime(microseconds=True)
        if now >= self._deadline:
            raise self._expired(now)
        return (self._deadline - now).total_seconds()

    def _expired(self, now: datetime) -> ControllerTimeoutError:
        return ControllerTimeoutError(
            self._operation, started_at=self._started, failed_at=now
        )
