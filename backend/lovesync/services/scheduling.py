"""
Timing primitives for the sync engine: an injectable clock, a cancellable
periodic timer and a bounded retry policy.

All sleeping goes through a ``Clock`` so tests can drive timers and retries
with a virtual clock instead of real time.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time and real event-loop sleeps."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with optional exponential back-off.

    ``max_attempts=None`` retries without limit; ``multiplier=1.0`` gives a
    fixed delay.
    """
    max_attempts: Optional[int] = 3
    base_delay: float = 3.0
    max_delay: Optional[float] = None
    multiplier: float = 1.0

    def allows(self, attempt: int) -> bool:
        """Whether retry number ``attempt`` (1-based) may run."""
        return self.max_attempts is None or attempt <= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay * (self.multiplier ** max(attempt - 1, 0))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


class PeriodicTimer:
    """Runs ``callback`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[object]],
        clock: Optional[Clock] = None,
        name: str = "periodic-timer",
    ):
        self.interval = interval
        self.callback = callback
        self.clock = clock or SystemClock()
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug("Started %s (every %ss)", self.name, self.interval)

    def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        logger.debug("Stopped %s", self.name)

    async def _run(self) -> None:
        while True:
            await self.clock.sleep(self.interval)
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s tick failed", self.name)
