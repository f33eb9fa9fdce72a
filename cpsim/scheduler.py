import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .errors import SchedulerRunning


class PeriodicTask:
    """A cancellable, restartable periodic producer.

    Each fire awaits ``action``. A fire that has already started is shielded
    from ``stop()`` and runs to completion; fires belonging to an older
    generation are never started.
    """

    def __init__(self, name: str, action: Callable[[], Awaitable[None]], fire_immediately: bool = False):
        self.name = name
        self._action = action
        self._fire_immediately = fire_immediately
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self.period: float = 0
        self.repeat: int = 0
        self.fired: int = 0

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self, period: float, repeat: int = 0) -> None:
        if self.running:
            raise SchedulerRunning(f"{self.name} already running, use restart()")
        if period <= 0:
            raise ValueError(f"{self.name}: period must be positive, got {period}")
        self.period = period
        self.repeat = max(0, int(repeat))
        self.fired = 0
        self._generation += 1
        self._task = asyncio.create_task(self._run(self._generation), name=f"periodic-{self.name}")
        logging.info(f"{self.name} scheduled every {period}s (repeat={self.repeat or 'unlimited'})")

    def stop(self) -> None:
        if self._task is None:
            return
        self._generation += 1
        task, self._task = self._task, None
        if task is not asyncio.current_task():
            task.cancel()
        logging.info(f"{self.name} stopped after {self.fired} fire(s)")

    def restart(self, period: float, repeat: int = 0) -> None:
        self.stop()
        self.start(period, repeat)

    async def _run(self, generation: int) -> None:
        try:
            if self._fire_immediately and not await self._fire(generation):
                return
            while True:
                await asyncio.sleep(self.period)
                if not await self._fire(generation):
                    return
        except asyncio.CancelledError:
            pass

    async def _fire(self, generation: int) -> bool:
        if generation != self._generation:
            return False
        self.fired += 1
        try:
            await asyncio.shield(self._action())
        except asyncio.CancelledError:
            raise
        except Exception:
            logging.exception(f"{self.name} fire #{self.fired} failed")
        if self.repeat and self.fired >= self.repeat and generation == self._generation:
            logging.info(f"{self.name} completed {self.fired} fire(s)")
            self._task = None
            self._generation += 1
            return False
        return generation == self._generation
