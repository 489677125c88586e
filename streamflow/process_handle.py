"""Own a single ffmpeg invocation: output capture, stop, exit reporting."""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional, Sequence

from .errors import SpawnFailed
from .models import ExitEvent, ExitReason

logger = logging.getLogger(__name__)

Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]

_LINE_BREAK = re.compile(r"[\r\n]+")
_READ_CHUNK = 4096


class ProcessHandle:
    """One running encoder process.

    Output lines (ffmpeg terminates progress lines with ``\\r``) are kept in a
    bounded buffer. When the process exits, exactly one :class:`ExitEvent`
    tagged with this handle's generation is put on ``events``.
    """

    def __init__(
        self,
        key: str,
        generation: int,
        process: asyncio.subprocess.Process,
        events: asyncio.Queue,
        buffer_lines: int = 200,
        grace_period: float = 5.0,
    ):
        self.key = key
        self.generation = generation
        self.process = process
        self.events = events
        self.grace_period = grace_period
        self.log: Deque[str] = deque(maxlen=buffer_lines)
        self.exit_event: Optional[ExitEvent] = None
        self._stop_requested = False
        self._exited = asyncio.Event()
        self._watcher: Optional[asyncio.Task] = None

    @classmethod
    async def start(
        cls,
        key: str,
        generation: int,
        args: Sequence[str],
        events: asyncio.Queue,
        buffer_lines: int = 200,
        grace_period: float = 5.0,
        spawner: Optional[Spawner] = None,
    ) -> "ProcessHandle":
        spawn = spawner or asyncio.create_subprocess_exec
        try:
            process = await spawn(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise SpawnFailed(f"Could not launch encoder for {key}: {exc}") from exc

        handle = cls(key, generation, process, events, buffer_lines, grace_period)
        handle._watcher = asyncio.create_task(handle._watch(), name=f"encoder-{key}-{generation}")
        logger.info("Encoder for %s started (pid %s, generation %s)", key, process.pid, generation)
        return handle

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def is_running(self) -> bool:
        return not self._exited.is_set() and self.process.returncode is None

    def tail(self, n: Optional[int] = None) -> List[str]:
        lines = list(self.log)
        if n is None:
            return lines
        return lines[-n:] if n > 0 else []

    async def stop(self) -> None:
        """Terminate, wait out the grace period, then kill. Safe to repeat."""
        if self._exited.is_set():
            return
        self._stop_requested = True
        self._signal("terminate")
        try:
            await asyncio.wait_for(self._exited.wait(), self.grace_period)
        except asyncio.TimeoutError:
            logger.warning("Encoder for %s ignored SIGTERM for %.1fs, killing", self.key, self.grace_period)
            self._signal("kill")
            await self._exited.wait()

    async def wait(self) -> ExitEvent:
        await self._exited.wait()
        assert self.exit_event is not None
        return self.exit_event

    def _signal(self, method: str) -> None:
        if self.process.returncode is not None:
            return
        try:
            getattr(self.process, method)()
        except ProcessLookupError:
            pass

    async def _watch(self) -> None:
        try:
            await self._pump_output()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Lost output of encoder %s: %s", self.key, exc)
        returncode = await self.process.wait()
        self.exit_event = self._classify(returncode)
        self._exited.set()
        logger.info("Encoder for %s exited: %s", self.key, self.exit_event.describe())
        await self.events.put(self.exit_event)

    async def _pump_output(self) -> None:
        stream = self.process.stdout
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            pending += decoder.decode(chunk)
            *lines, pending = _LINE_BREAK.split(pending)
            for line in lines:
                if line.strip():
                    self.log.append(line.rstrip())
        pending += decoder.decode(b"", final=True)
        if pending.strip():
            self.log.append(pending.rstrip())

    def _classify(self, returncode: int) -> ExitEvent:
        signal = -returncode if returncode < 0 else None
        if self._stop_requested:
            reason = ExitReason.KILLED
        elif returncode == 0:
            reason = ExitReason.NORMAL
        else:
            reason = ExitReason.CRASHED
        return ExitEvent(
            key=self.key,
            generation=self.generation,
            reason=reason,
            returncode=returncode if signal is None else None,
            signal=signal,
        )
