"""Named repeating timers ("impulse generator").

:class:`PollingScheduler` knows nothing about accounts or devices: it
fires ``on_tick(name)`` for every configured :class:`TimerSpec`, first
immediately and then at a fixed rate.

Guarantees:

* One loop per timer, so ticks of the same name never overlap.  A
  callback that overruns its interval skips the missed slots rather than
  firing them back-to-back.
* Deadlines are computed from a monotonic clock (fixed rate, no drift
  from callback duration).
* A failing callback is logged and handed to ``on_error``; the timer
  keeps running.
* ``stop()`` prevents any further tick and waits for in-flight
  callbacks to finish.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeAlias

from melsync._clock import ClockPort, SystemClock

logger = logging.getLogger(__name__)

TickCallback: TypeAlias = Callable[[str], Awaitable[None]]
TickErrorHandler: TypeAlias = Callable[[str, Exception], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class TimerSpec:
    """A recurring task: fire ``name`` every ``interval_ms`` milliseconds."""

    name: str
    interval_ms: int

    def __post_init__(self) -> None:
        if not self.name:
            msg = "Timer name must not be empty"
            raise ValueError(msg)
        if self.interval_ms <= 0:
            msg = f"Timer interval must be positive, got {self.interval_ms}"
            raise ValueError(msg)

    @property
    def interval(self) -> float:
        """Interval in seconds."""
        return self.interval_ms / 1000


class PollingScheduler:
    """Fires named ticks at configured intervals.

    Args:
        on_tick: Awaited with the timer name on every tick.
        on_error: Awaited with ``(name, exception)`` when ``on_tick``
            raises.
        clock: Monotonic clock for deadlines.
        name: Label used in logs and task names.
    """

    def __init__(
        self,
        on_tick: TickCallback,
        *,
        on_error: TickErrorHandler | None = None,
        clock: ClockPort | None = None,
        name: str = "scheduler",
    ) -> None:
        self._on_tick = on_tick
        self._on_error = on_error
        self._clock = clock if clock is not None else SystemClock()
        self._name = name
        self._timers: tuple[TimerSpec, ...] = ()
        self._tasks: list[asyncio.Task[None]] = []
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def timers(self) -> tuple[TimerSpec, ...]:
        return self._timers

    def start(self, timers: Sequence[TimerSpec]) -> None:
        """Begin firing every timer in *timers*.

        Raises:
            RuntimeError: If the scheduler is already running.
            ValueError: If two timers share a name.
        """
        if self._tasks:
            msg = f"Scheduler '{self._name}' is already started"
            raise RuntimeError(msg)
        if not timers:
            return
        names = [timer.name for timer in timers]
        if len(set(names)) != len(names):
            msg = f"Duplicate timer names: {names}"
            raise ValueError(msg)

        self._stop_event = asyncio.Event()
        self._timers = tuple(timers)
        self._tasks = [
            asyncio.create_task(self._run(timer), name=f"{self._name}:{timer.name}")
            for timer in self._timers
        ]
        logger.debug(
            "Scheduler '%s' started: %s",
            self._name,
            ", ".join(f"{t.name}={t.interval_ms}ms" for t in self._timers),
        )

    async def stop(self) -> None:
        """Stop all timers; in-flight callbacks run to completion."""
        if not self._tasks:
            return
        self._stop_event.set()
        tasks, self._tasks = self._tasks, []
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers = ()
        logger.debug("Scheduler '%s' stopped", self._name)

    async def _run(self, timer: TimerSpec) -> None:
        interval = timer.interval
        next_due = self._clock.now()
        while not self._stop_event.is_set():
            await self._fire(timer.name)
            next_due += interval
            now = self._clock.now()
            if next_due < now:
                skipped = math.ceil((now - next_due) / interval)
                logger.debug(
                    "Timer '%s' overran, skipping %d tick(s)",
                    timer.name,
                    skipped,
                )
                next_due += skipped * interval
            if await self._wait_for_stop(next_due - now):
                return

    async def _wait_for_stop(self, delay: float) -> bool:
        """Sleep up to *delay* seconds; True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(delay, 0))
        except TimeoutError:
            return False
        return True

    async def _fire(self, name: str) -> None:
        try:
            await self._on_tick(name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Tick '%s' of scheduler '%s' failed", name, self._name)
            if self._on_error is not None:
                try:
                    await self._on_error(name, exc)
                except Exception:
                    logger.exception("Tick error handler for '%s' failed", name)
