"""
Scheduler module for the mode resolver.

One-shot timers measured against the wall clock. The event loop's own clock
is monotonic and may not advance while the process is suspended, so each
timer records an absolute deadline and polls ``time.time()`` in short ticks
until it is due; a timer whose deadline passed during a suspension fires on
the first tick after resume.
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

TimerCallback = Callable[[], Union[None, Awaitable[None]]]


@dataclass
class ScheduledTask:
    """A pending one-shot timer."""

    name: str
    deadline: float  # unix seconds
    callback: TimerCallback
    fired: bool = False
    cancelled: bool = False
    _task: Optional[asyncio.Task] = field(default=None, repr=False)

    def cancel(self) -> bool:
        """Cancel the timer. Returns False if it already fired."""
        if self.fired or self.cancelled:
            return False
        self.cancelled = True
        if self._task is not None:
            self._task.cancel()
        return True

    @property
    def pending(self) -> bool:
        return not (self.fired or self.cancelled)


class Scheduler:
    """Wall-clock one-shot timer scheduler bound to the running event loop."""

    def __init__(
        self,
        tick_seconds: float = 0.25,
        wall_clock: Optional[Callable[[], float]] = None,
    ) -> None:
        """
        Args:
            tick_seconds: Maximum time between deadline checks
            wall_clock: Source of unix time (defaults to time.time)
        """
        self._tick_seconds = tick_seconds
        self._wall_clock = wall_clock or time.time
        self._tasks: dict[str, ScheduledTask] = {}
        self._counter = itertools.count(1)

    def call_later(
        self,
        delay_seconds: float,
        callback: TimerCallback,
        name: Optional[str] = None,
    ) -> ScheduledTask:
        """
        Run ``callback`` once ``delay_seconds`` of wall-clock time have passed.

        Must be called from within a running event loop. Scheduling a name
        that is already pending replaces the earlier timer.
        """
        if delay_seconds < 0:
            raise ValueError("Delay must not be negative")

        name = name or f"timer-{next(self._counter)}"
        previous = self._tasks.get(name)
        if previous is not None:
            previous.cancel()

        scheduled = ScheduledTask(
            name=name,
            deadline=self._wall_clock() + delay_seconds,
            callback=callback,
        )
        scheduled._task = asyncio.get_running_loop().create_task(self._run(scheduled))
        self._tasks[name] = scheduled
        return scheduled

    async def _run(self, scheduled: ScheduledTask) -> None:
        try:
            while True:
                remaining = scheduled.deadline - self._wall_clock()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(remaining, self._tick_seconds))
        except asyncio.CancelledError:
            self._forget(scheduled)
            return

        self._forget(scheduled)
        if scheduled.cancelled:
            return
        scheduled.fired = True
        result = scheduled.callback()
        if asyncio.iscoroutine(result):
            await result

    def _forget(self, scheduled: ScheduledTask) -> None:
        if self._tasks.get(scheduled.name) is scheduled:
            del self._tasks[scheduled.name]

    def cancel(self, name: str) -> bool:
        """Cancel a pending timer by name."""
        scheduled = self._tasks.pop(name, None)
        if scheduled is None:
            return False
        return scheduled.cancel()

    def cancel_all(self) -> None:
        for scheduled in list(self._tasks.values()):
            scheduled.cancel()
        self._tasks.clear()

    def get_task(self, name: str) -> Optional[ScheduledTask]:
        return self._tasks.get(name)

    def list_tasks(self) -> list[ScheduledTask]:
        return [task for task in self._tasks.values() if task.pending]
