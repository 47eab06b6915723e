"""Detached best-effort tasks and the interval scheduler driving the sweep."""

import asyncio
from typing import Any, Awaitable, Callable, Coroutine, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from brawlsync.utils.logger import get_logger

log = get_logger(__name__)

_pending: Set[asyncio.Task] = set()


def fire_and_forget(coro: Coroutine[Any, Any, Any], *, label: str = "background task") -> asyncio.Task:
    """
    Run ``coro`` without awaiting it.

    The caller never sees its result or its error; failures are logged at DEBUG.
    A reference is kept until the task finishes so it is not garbage collected.
    """
    task = asyncio.get_running_loop().create_task(coro)
    _pending.add(task)

    def _done(finished: asyncio.Task) -> None:
        _pending.discard(finished)
        if finished.cancelled():
            return
        exc = finished.exception()
        if exc is not None:
            log.debug(f"{label} failed: {exc}")

    task.add_done_callback(_done)
    return task


def pending_count() -> int:
    return len(_pending)


class SweepTimer:
    """
    Runs the sweep tick on a fixed interval.

    A tick still running when the next one is due is not started twice; missed
    runs collapse into one. :meth:`stop` waits for a tick already in progress,
    and a tick queued before the stop does not start afterwards.
    """

    def __init__(self, tick: Callable[[], Awaitable[Any]], interval: float) -> None:
        self.tick = tick
        self.interval = interval
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._current: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    def start(self) -> None:
        """Initialize and start the background scheduler."""
        if self.running:
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._run,
            IntervalTrigger(seconds=self.interval),
            id="sweep_tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        log.info(f"Sweep timer started (every {self.interval:.0f}s)")

    async def _run(self) -> None:
        if not self.running:
            return
        # shutdown cancels the job task, never the tick it started
        self._current = asyncio.get_running_loop().create_task(self.tick())
        await asyncio.shield(self._current)

    async def stop(self) -> None:
        """Shut down the scheduler and wait for the tick in progress, if any."""
        if self._scheduler and self._scheduler.running:
            self._scheduler.pause()
            self._scheduler.shutdown(wait=False)
            log.info("Sweep timer stopped")
        self._scheduler = None

        current = self._current
        if current is not None and not current.done():
            log.info("Waiting for the running sweep tick to finish")
            await asyncio.gather(current, return_exceptions=True)


__all__ = ["fire_and_forget", "pending_count", "SweepTimer"]
