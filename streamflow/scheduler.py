"""Periodic sweep that starts scheduled streams and stops expired ones."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .config import OrchestratorConfig
from .errors import AlreadyLive
from .loops import IntervalLoop
from .models import Stream, StreamStatus, utcnow
from .notifier import Notifier
from .store import Store
from .stream_manager import StreamProcessManager

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    started: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)
    retrying: List[str] = field(default_factory=list)
    abandoned: List[str] = field(default_factory=list)


class SchedulerLoop(IntervalLoop):
    """Starts due scheduled streams and stops live streams past their end.

    Streams are handled concurrently within a tick, so one slow spawn or one
    broken stream never holds up the others.
    """

    job_id = "stream-scheduler"

    def __init__(
        self,
        store: Store,
        manager: StreamProcessManager,
        config: Optional[OrchestratorConfig] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.config = config or OrchestratorConfig()
        super().__init__(self.config.scheduler_interval, clock)
        self.store = store
        self.manager = manager
        self.notifier = notifier

    async def tick(self, now: Optional[dt.datetime] = None) -> TickReport:
        now = now or self.clock()
        report = TickReport()
        due = self.store.find_streams(status=StreamStatus.SCHEDULED, due_before=now)
        ending = self.store.find_streams(status=StreamStatus.LIVE, ending_before=now)

        jobs = [self._start_due(stream, now, report) for stream in due]
        jobs += [self._stop_ended(stream, report) for stream in ending]
        results = await asyncio.gather(*jobs, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Scheduler job failed: %s", result)
        return report

    async def _start_due(self, stream: Stream, now: dt.datetime, report: TickReport) -> None:
        if stream.end_time is not None and stream.end_time <= now:
            logger.warning("Stream %s missed its whole window; marking offline", stream.id)
            self.store.update_stream_status(
                stream.id, StreamStatus.OFFLINE, last_error="Scheduled window ended before the stream could start"
            )
            report.abandoned.append(stream.id)
            return

        logger.info("Starting scheduled stream %s", stream.id)
        try:
            await self.manager.start_stream(stream.id)
        except AlreadyLive:
            return
        except Exception as exc:  # noqa: BLE001
            await self._record_failure(stream, now, exc, report)
            return
        report.started.append(stream.id)

    async def _record_failure(self, stream: Stream, now: dt.datetime, exc: Exception, report: TickReport) -> None:
        reason = getattr(exc, "message", None) or str(exc)
        failures = stream.start_failures + 1
        overdue = (now - stream.schedule_time).total_seconds() if stream.schedule_time else 0.0
        if overdue > self.config.schedule_retry_window:
            logger.error(
                "Giving up on scheduled stream %s after %d attempt(s): %s", stream.id, failures, reason
            )
            self.store.update_stream_status(
                stream.id, StreamStatus.OFFLINE, start_failures=failures, last_error=reason
            )
            report.abandoned.append(stream.id)
            if self.notifier is not None and self.notifier.enabled:
                await asyncio.to_thread(self.notifier.notify, f"Stream {stream.title} failed to start", reason)
            return

        logger.warning("Scheduled stream %s failed to start (attempt %d): %s", stream.id, failures, reason)
        self.store.update_stream_status(
            stream.id, StreamStatus.SCHEDULED, start_failures=failures, last_error=reason
        )
        report.retrying.append(stream.id)

    async def _stop_ended(self, stream: Stream, report: TickReport) -> None:
        logger.info("Stream %s reached its end time", stream.id)
        await self.manager.stop_stream(stream.id)
        report.stopped.append(stream.id)
