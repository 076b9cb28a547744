"""
Scheduler
Interval jobs with an explicit skip-if-busy overlap policy
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger


class IntervalJob:
    """
    Runs an async callable every `interval` seconds.

    Overlap policy: a tick that arrives while the previous run is still in
    flight is skipped, not queued. stop() cancels the timer only; a run that
    is already in flight finishes on its own.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
    ):
        """
        Initialize interval job.

        Args:
            name: Job name for logging
            interval: Seconds between ticks
            func: Zero-argument coroutine function run on every tick
        """
        if interval <= 0:
            raise ValueError(f"Interval for job '{name}' must be positive")

        self.name = name
        self.interval = interval
        self.func = func

        self._ticker: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None

        self.runs = 0
        self.skipped = 0
        self.failures = 0

    @property
    def is_armed(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    @property
    def in_flight(self) -> bool:
        return self._current is not None and not self._current.done()

    def start(self) -> None:
        if self.is_armed:
            return
        self._ticker = asyncio.create_task(self._tick_loop(), name=f"job:{self.name}")
        logger.info(f"Job '{self.name}' armed every {self.interval:.0f}s")

    def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
            logger.info(f"Job '{self.name}' stopped")

    def reschedule(self, interval: float) -> None:
        """Tear down and re-arm the timer with a new interval."""
        if interval <= 0:
            raise ValueError(f"Interval for job '{self.name}' must be positive")
        was_armed = self.is_armed
        self.stop()
        self.interval = interval
        if was_armed:
            self.start()

    def trigger(self) -> bool:
        """
        Start a run now unless one is already in flight.

        Returns:
            True if a run was started
        """
        if self.in_flight:
            self.skipped += 1
            logger.debug(f"Job '{self.name}' still running, tick skipped")
            return False
        self._current = asyncio.create_task(self._run(), name=f"run:{self.name}")
        return True

    async def wait_idle(self) -> None:
        """Wait for the in-flight run, if any, to finish."""
        if self._current is not None:
            await asyncio.gather(self._current, return_exceptions=True)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.trigger()

    async def _run(self) -> None:
        self.runs += 1
        try:
            await self.func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # the next tick tries again
            self.failures += 1
            logger.exception(f"Job '{self.name}' failed: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "interval_seconds": self.interval,
            "armed": self.is_armed,
            "in_flight": self.in_flight,
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
        }
