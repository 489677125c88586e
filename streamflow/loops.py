"""Background loops driven by APScheduler interval jobs."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil.tz import tzutc

from .models import utcnow

logger = logging.getLogger(__name__)


class IntervalLoop:
    """Runs ``tick()`` every ``interval`` seconds on the running event loop.

    ``stop()`` refuses further ticks and returns only after the in-flight
    tick, if any, has completed.
    """

    job_id = "interval-loop"

    def __init__(self, interval: float, clock: Callable[[], dt.datetime] = utcnow):
        self.interval = interval
        self.clock = clock
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._accepting = False
        self._tick_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._accepting

    def start(self) -> None:
        self._accepting = True
        self.scheduler = AsyncIOScheduler(timezone=tzutc())
        self.scheduler.add_job(
            self._run_tick,
            trigger="interval",
            seconds=self.interval,
            id=self.job_id,
            max_instances=1,
            coalesce=True,
            next_run_time=dt.datetime.now(tzutc()),
        )
        self.scheduler.start()
        logger.info("%s running every %ss", self.job_id, self.interval)

    async def stop(self) -> None:
        self._accepting = False
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        async with self._tick_lock:
            pass
        logger.info("%s stopped", self.job_id)

    async def _run_tick(self) -> None:
        if not self._accepting:
            return
        async with self._tick_lock:
            if not self._accepting:
                return
            try:
                await self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("%s tick failed", self.job_id)

    async def tick(self, now: Optional[dt.datetime] = None) -> Any:
        raise NotImplementedError
