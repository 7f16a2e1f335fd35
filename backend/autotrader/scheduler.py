"""
AutoTrader - Periodic Jobs

asyncio replacement for a beat scheduler: one timer loop per component.

A tick that fires while the previous cycle is still running is skipped and
logged, so a component never runs two cycles at once. ``stop`` cancels the
timer only; a cycle already in flight runs to completion.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

log = structlog.get_logger(__name__)


class PeriodicJob:
    """Run ``func`` every ``interval`` seconds on the running event loop.

    Usage:
        job = PeriodicJob("pattern_detector", 120, detector.run_cycle)
        job.start()
        ...
        await job.stop()
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[object]],
        run_immediately: bool = True,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._func = func
        self._run_immediately = run_immediately
        self._timer: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None
        self.cycles_run = 0
        self.cycles_skipped = 0
        self.cycles_failed = 0

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.done()

    def start(self) -> None:
        if self.running:
            return
        self._timer = asyncio.create_task(self._loop(), name=f"job:{self.name}")
        log.info("scheduler.job_started", job=self.name, interval=self.interval)

    async def stop(self, wait: bool = True) -> None:
        """Cancel the timer. With ``wait``, also wait for an in-flight cycle."""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
            log.info("scheduler.job_stopped", job=self.name)
        if wait and self._current is not None:
            await asyncio.shield(self._current)

    async def _loop(self) -> None:
        if self._run_immediately:
            self.tick()
        while True:
            await asyncio.sleep(self.interval)
            self.tick()

    def tick(self) -> Optional[asyncio.Task]:
        """Start a cycle unless one is already running. Returns the cycle task."""
        if self.busy:
            self.cycles_skipped += 1
            log.warning("scheduler.cycle_skipped", job=self.name, skipped=self.cycles_skipped)
            return None
        self._current = asyncio.create_task(self._run_cycle(), name=f"cycle:{self.name}")
        return self._current

    async def run_once(self) -> bool:
        """Run one cycle now and wait for it. False when a cycle was already running."""
        task = self.tick()
        if task is None:
            return False
        await task
        return True

    async def _run_cycle(self) -> None:
        started = time.monotonic()
        try:
            await self._func()
        except Exception as exc:
            self.cycles_failed += 1
            log.error("scheduler.cycle_failed", job=self.name, error=str(exc))
        else:
            self.cycles_run += 1
            log.debug(
                "scheduler.cycle_complete",
                job=self.name,
                duration_ms=round((time.monotonic() - started) * 1000, 1),
            )
