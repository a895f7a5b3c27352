"""
Shared cancellation object for the keeper's loops.

Once stopped, a Lifecycle cannot be restarted. Signal handlers only call
request_stop(); every loop checks is_stopping at its iteration boundary,
and interval sleeps wake as soon as a stop is requested.
"""
import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Optional, TypeVar

from keeper.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

EXIT_OK = 0
EXIT_FAILURE = 1


class Lifecycle:
    """Latched stop flag plus the process exit status."""

    def __init__(self):
        self._stop_event = asyncio.Event()
        self.stop_reason: Optional[str] = None
        self.stopped_at: Optional[datetime] = None
        self.fatal_error: Optional[BaseException] = None

    @property
    def is_stopping(self) -> bool:
        return self._stop_event.is_set()

    @property
    def exit_code(self) -> int:
        return EXIT_FAILURE if self.fatal_error is not None else EXIT_OK

    def request_stop(self, reason: str) -> None:
        """Latch the stop flag. Only the first reason is kept."""
        if self._stop_event.is_set():
            return
        self.stop_reason = reason
        self.stopped_at = datetime.now(timezone.utc)
        self._stop_event.set()
        logger.info("SHUTDOWN_REQUESTED", reason=reason)

    def fail(self, error: BaseException, reason: str) -> None:
        """Record a fatal error and stop. The process will exit non-zero."""
        if self.fatal_error is None:
            self.fatal_error = error
        logger.critical("FATAL_ERROR", reason=reason, error=str(error), error_type=type(error).__name__)
        self.request_stop(reason)

    async def wait_stopped(self) -> None:
        await self._stop_event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`, waking early on stop.

        Returns:
            True if the full interval elapsed, False if a stop was requested.
        """
        if self.is_stopping:
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def interruptible(self, awaitable: Awaitable[T]) -> Optional[T]:
        """
        Await `awaitable` unless a stop is requested first.

        Returns None (and cancels the awaitable) when the stop wins.
        """
        task = asyncio.ensure_future(awaitable)
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            stopper.cancel()
        if task in done:
            return task.result()
        task.cancel()
        return None
