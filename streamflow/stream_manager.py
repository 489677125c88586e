"""Map streams to encoder processes and keep persisted status honest."""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
import os
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import OrchestratorConfig
from .destinations import DestinationResolver
from .encoder import build_command, redact_command
from .errors import AlreadyLive, CrashDetected, NoContent, NotFound, PersistenceError
from .models import (
    EncoderSpec,
    ExitEvent,
    ExitReason,
    ResolvedDestination,
    Rotation,
    RotationItem,
    StreamStatus,
    utcnow,
)
from .notifier import Notifier
from .process_handle import ProcessHandle, Spawner
from .store import Store

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    handle: ProcessHandle
    resolved: ResolvedDestination
    stream_backed: bool
    rotation_id: Optional[str] = None


class StreamProcessManager:
    """Starts, stops and watches encoder processes, one per key.

    Keys are stream ids, or ``rotation:<id>`` for a rotation's current item.
    Every mutation of the handle map happens under that key's lock, and exit
    events from handles are processed under the same lock, so a late event
    from an old process can never tear down its replacement.
    """

    def __init__(
        self,
        store: Store,
        destinations: DestinationResolver,
        config: Optional[OrchestratorConfig] = None,
        notifier: Optional[Notifier] = None,
        spawner: Optional[Spawner] = None,
    ):
        self.store = store
        self.destinations = destinations
        self.config = config or OrchestratorConfig()
        self.notifier = notifier
        self.spawner = spawner
        self.failures: Dict[str, str] = {}
        self._handles: Dict[str, _Entry] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._generations = itertools.count(1)
        self._events: asyncio.Queue = asyncio.Queue()
        self._retained_logs: "OrderedDict[str, List[str]]" = OrderedDict()
        self._exit_watcher: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._exit_watcher is None or self._exit_watcher.done():
            self._exit_watcher = asyncio.create_task(self._consume_exits(), name="exit-watcher")

    async def close(self) -> None:
        if self._exit_watcher is not None:
            self._exit_watcher.cancel()
            try:
                await self._exit_watcher
            except asyncio.CancelledError:
                pass
            self._exit_watcher = None

    # Streams

    async def start_stream(self, stream_id: str) -> None:
        async with self._locks[stream_id]:
            stream = self.store.get_stream(stream_id)
            if stream is None:
                raise NotFound(f"Stream {stream_id} not found")
            await self._ensure_idle(stream_id)
            sources = stream.content.sources()
            if not sources:
                raise NoContent(f"No video attached to stream {stream_id}")

            resolved = await asyncio.to_thread(self.destinations.resolve_stream, stream)
            spec = EncoderSpec(inputs=sources, output_url=resolved.url, settings=stream.settings)
            try:
                await self._spawn(stream_id, spec, resolved, stream_backed=True)
            except Exception as exc:
                await self._release(stream_id, resolved)
                await self._write_status(stream_id, stream.status, last_error=str(exc))
                raise

            await self._write_status(
                stream_id, StreamStatus.LIVE, start_time=utcnow(), start_failures=0, last_error=None
            )
            self.failures.pop(stream_id, None)
        logger.info("Stream %s is live", stream_id)
        await self._notify(f"Stream {stream.title} started", f"Stream {stream_id} is now live.")

    async def stop_stream(self, stream_id: str) -> None:
        async with self._locks[stream_id]:
            stopped = await self._stop_key(stream_id)
            await self._write_status(stream_id, StreamStatus.OFFLINE, start_time=None)
        if stopped:
            logger.info("Stream %s stopped", stream_id)
            await self._notify(f"Stream {stream_id} stopped", "Stream was stopped.")
        else:
            logger.info("Stream %s had no active process; status forced offline", stream_id)

    def is_stream_active(self, key: str) -> bool:
        entry = self._handles.get(key)
        return entry is not None and entry.handle.is_running

    def get_stream_logs(self, key: str) -> List[str]:
        entry = self._handles.get(key)
        if entry is not None:
            return entry.handle.tail()
        return list(self._retained_logs.get(key, []))

    def active_keys(self) -> List[str]:
        return [key for key in self._handles if self.is_stream_active(key)]

    async def sync_stream_statuses(self) -> List[str]:
        """Make persisted status agree with running processes.

        Returns the ids of streams whose status was changed.
        """
        corrected: List[str] = []
        for stream in self.store.find_streams(status=StreamStatus.LIVE):
            async with self._locks[stream.id]:
                if not self.is_stream_active(stream.id):
                    logger.warning("Stream %s marked live without a process; setting offline", stream.id)
                    await self._write_status(stream.id, StreamStatus.OFFLINE, start_time=None)
                    corrected.append(stream.id)

        for key in list(self._handles):
            async with self._locks[key]:
                entry = self._handles.get(key)
                if entry is None or not entry.stream_backed or not entry.handle.is_running:
                    continue
                stream = self.store.get_stream(key)
                if stream is not None and stream.status != StreamStatus.LIVE:
                    logger.warning("Stream %s has a running process; setting live", key)
                    await self._write_status(key, StreamStatus.LIVE)
                    corrected.append(key)
        return corrected

    # Rotation items

    async def start_rotation_item(self, rotation: Rotation, item: RotationItem) -> ResolvedDestination:
        key = rotation.key
        async with self._locks[key]:
            await self._ensure_idle(key)
            sources = item.content.sources()
            if not sources:
                raise NoContent(f"Rotation item {item.order_index} of {rotation.name} has no video")
            resolved = await asyncio.to_thread(self.destinations.resolve_item, rotation, item)
            # Items loop so a short video still fills its slot.
            settings = dataclasses.replace(rotation.settings, loop_video=True)
            spec = EncoderSpec(inputs=sources, output_url=resolved.url, settings=settings)
            try:
                await self._spawn(key, spec, resolved, stream_backed=False, rotation_id=rotation.id)
            except Exception:
                await self._release(key, resolved)
                raise
            self.failures.pop(key, None)
        logger.info("Rotation %s now airing item %s", rotation.id, item.order_index)
        return resolved

    async def stop_rotation_item(self, key: str) -> bool:
        async with self._locks[key]:
            return await self._stop_key(key)

    # Shutdown

    async def shutdown(self) -> None:
        """Stop every tracked process and persist offline for their streams."""
        keys = list(self._handles)
        if keys:
            logger.info("Stopping %d encoder process(es)", len(keys))
        results = await asyncio.gather(*(self._shutdown_key(key) for key in keys), return_exceptions=True)
        for key, result in zip(keys, results):
            if isinstance(result, Exception):
                logger.error("Failed to stop %s during shutdown: %s", key, result)
        await self.close()

    async def _shutdown_key(self, key: str) -> None:
        async with self._locks[key]:
            entry = self._handles.get(key)
            if entry is None:
                return
            await self._stop_key(key)
            if entry.stream_backed:
                await self._write_status(key, StreamStatus.OFFLINE, start_time=None)

    # Internals

    async def _ensure_idle(self, key: str) -> None:
        entry = self._handles.get(key)
        if entry is None:
            return
        if entry.handle.is_running:
            raise AlreadyLive(key)
        # Exited but its event is still queued; once reaped here the queued event is stale.
        event = await entry.handle.wait()
        message = await self._reap(key, entry, event)
        if message is not None:
            await self._notify(f"Stream {key} crashed", message)

    async def _spawn(
        self,
        key: str,
        spec: EncoderSpec,
        resolved: ResolvedDestination,
        stream_backed: bool,
        rotation_id: Optional[str] = None,
    ) -> None:
        playlist_file = None
        if len(spec.inputs) > 1:
            playlist_file = os.path.join(self.config.work_dir, f"{key.replace(':', '_')}.txt")
        args = build_command(spec, self.config.ffmpeg_path, playlist_file)
        logger.info("Launching encoder for %s: %s", key, redact_command(args))
        handle = await ProcessHandle.start(
            key,
            next(self._generations),
            args,
            self._events,
            buffer_lines=self.config.log_buffer_lines,
            grace_period=self.config.stop_grace_period,
            spawner=self.spawner,
        )
        self._handles[key] = _Entry(
            handle=handle, resolved=resolved, stream_backed=stream_backed, rotation_id=rotation_id
        )

    async def _stop_key(self, key: str) -> bool:
        entry = self._handles.pop(key, None)
        if entry is None:
            return False
        await entry.handle.stop()
        self._retain_logs(key, entry.handle)
        await self._release(key, entry.resolved)
        return True

    async def _release(self, key: str, resolved: ResolvedDestination) -> None:
        try:
            await asyncio.to_thread(self.destinations.release, resolved)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to release destination for %s: %s", key, exc)

    def _retain_logs(self, key: str, handle: ProcessHandle) -> None:
        self._retained_logs[key] = handle.tail()
        self._retained_logs.move_to_end(key)
        while len(self._retained_logs) > self.config.retained_logs:
            self._retained_logs.popitem(last=False)

    async def _write_status(self, stream_id: str, status: str, **fields: Any) -> None:
        attempts = max(1, self.config.status_write_attempts)
        for attempt in range(1, attempts + 1):
            try:
                self.store.update_stream_status(stream_id, status, **fields)
                return
            except NotFound:
                logger.warning("Stream %s no longer exists; status %s not saved", stream_id, status)
                return
            except PersistenceError as exc:
                logger.warning(
                    "Saving status %s for %s failed (attempt %d/%d): %s", status, stream_id, attempt, attempts, exc
                )
                if attempt < attempts:
                    await asyncio.sleep(0.1 * attempt)
        logger.error("Giving up saving status %s for %s; boot reconciliation will correct it", status, stream_id)

    async def _notify(self, subject: str, message: str) -> None:
        if self.notifier is None or not self.notifier.enabled:
            return
        try:
            await asyncio.to_thread(self.notifier.notify, subject, message)
        except Exception as exc:  # noqa: BLE001
            logger.error("Notification failed: %s", exc)

    async def _consume_exits(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.handle_exit(event)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to process exit of %s", event.key)
            finally:
                self._events.task_done()

    async def handle_exit(self, event: ExitEvent) -> None:
        async with self._locks[event.key]:
            entry = self._handles.get(event.key)
            if entry is None or entry.handle.generation != event.generation:
                logger.debug("Ignoring stale exit of %s generation %s", event.key, event.generation)
                return
            if event.reason == ExitReason.KILLED:
                return
            message = await self._reap(event.key, entry, event)

        if message is not None:
            await self._notify(f"Stream {event.key} crashed", message)

    async def _reap(self, key: str, entry: _Entry, event: ExitEvent) -> Optional[str]:
        """Tear down an entry whose process exited on its own; returns the crash message."""
        del self._handles[key]
        self._retain_logs(key, entry.handle)
        await self._release(key, entry.resolved)

        message: Optional[str] = None
        if event.reason == ExitReason.CRASHED:
            message = CrashDetected(key, event.returncode, event.signal).message
            self.failures[key] = message
            logger.error("%s", message)
        else:
            logger.info("Encoder for %s finished", key)
        if entry.stream_backed:
            await self._write_status(key, StreamStatus.OFFLINE, start_time=None, last_error=message)
        if entry.rotation_id is not None and message is not None:
            self._record_rotation_error(entry.rotation_id, message)
        return message

    def _record_rotation_error(self, rotation_id: str, message: str) -> None:
        try:
            self.store.update_rotation(rotation_id, last_error=message)
        except (NotFound, PersistenceError) as exc:
            logger.warning("Could not record crash on rotation %s: %s", rotation_id, exc)

    async def wait_idle(self) -> None:
        """Block until every queued exit event has been processed."""
        await self._events.join()

