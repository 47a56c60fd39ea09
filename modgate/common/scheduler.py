"""
Re-armable Timers

Provides the Timeout class used for connection retries and register
polling. A Timeout fires its async callback once per arming; the callback
(or anyone holding the handle) re-arms it with modify().

Unlike a `while True: await asyncio.sleep(interval)` loop, a Timeout:
- Has at most one pending deadline (modify() replaces it)
- Can be removed from inside or outside its own callback
- Never lets a callback exception escape to the event loop

Usage:
    async def on_expired(timeout):
        # Do work...
        timeout.modify_ms(1000)

    timeout = Timeout(0, on_expired, name="poll")  # Fire now

    # Later:
    timeout.remove()
"""

import asyncio
from typing import Callable, Awaitable

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")


class Timeout:
    """
    Cancellable, re-armable one-shot timer bound to the running loop.

    Attributes:
        name: Name for logging/identification
        fire_count: Number of times the deadline expired and dispatched
        skipped_count: Deadlines dropped because the callback was still running
    """

    def __init__(
        self,
        delay_seconds: float,
        callback: Callable[["Timeout"], Awaitable[None]],
        name: str = "unnamed",
    ):
        """
        Create and arm a timer.

        Args:
            delay_seconds: Delay before the first expiry (0 = next loop pass)
            callback: Async function called with this Timeout on expiry
            name: Name for logging/identification
        """
        self.name = name
        self._callback = callback
        self._loop = asyncio.get_running_loop()

        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._removed = False

        # Observability metrics
        self._fire_count = 0
        self._skipped_count = 0

        self.modify(delay_seconds)

    @property
    def armed(self) -> bool:
        """A deadline is pending."""
        return self._handle is not None

    @property
    def running(self) -> bool:
        """The callback is executing."""
        return self._task is not None and not self._task.done()

    @property
    def removed(self) -> bool:
        return self._removed

    @property
    def fire_count(self) -> int:
        return self._fire_count

    @property
    def skipped_count(self) -> int:
        return self._skipped_count

    def modify(self, delay_seconds: float) -> None:
        """Replace the pending deadline (if any) with a new one."""
        if self._removed:
            return

        if self._handle is not None:
            self._handle.cancel()

        self._handle = self._loop.call_later(max(0.0, delay_seconds), self._expire)

    def modify_ms(self, delay_ms: int) -> None:
        self.modify(delay_ms / 1000.0)

    def remove(self) -> None:
        """Cancel the pending deadline and any in-flight callback."""
        if self._removed:
            return

        self._removed = True

        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

        task = self._task
        self._task = None
        if task is not None and not task.done():
            # Removing from inside the callback must not cancel the caller
            if task is not asyncio.current_task():
                task.cancel()

    def _expire(self) -> None:
        self._handle = None

        if self._removed:
            return

        if self.running:
            # Running callback re-arms when it is done
            self._skipped_count += 1
            logger.debug(f"Timeout '{self.name}' expired while callback running")
            return

        self._fire_count += 1
        self._task = self._loop.create_task(
            self._run(), name=f"timeout:{self.name}"
        )

    async def _run(self) -> None:
        try:
            await self._callback(self)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Timeout '{self.name}' callback error: {e}")

    def get_stats(self) -> dict:
        """Get timer statistics for observability."""
        return {
            "name": self.name,
            "armed": self.armed,
            "running": self.running,
            "fire_count": self._fire_count,
            "skipped_count": self._skipped_count,
        }
