"""Rotation timing and the engine that keeps the right item on air.

Timing is a pure function of the clock and the rotation definition:

* The first window is ``[start_time, end_time)``. ``daily`` and ``weekly``
  rotations repeat that window every day or week, shifted in the rotation's
  own timezone so wall-clock times survive DST changes. ``none`` airs once.
* Within a window items play in ``order_index`` order. With the ``equal``
  policy each item gets ``window / len(items)``. With ``declared`` an item
  keeps its own ``duration`` and items without one share whatever time is
  left equally. Slots running past the window end are cut at the end. If the
  slots add up to less than the window, the sequence starts over from the
  first item until the window closes.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from dateutil import tz as dateutil_tz

from .config import OrchestratorConfig
from .errors import InvalidRotation, NotFound, RotationActive
from .loops import IntervalLoop
from .models import Allocation, RepeatMode, Rotation, RotationItem, RotationStatus, utcnow
from .store import Store
from .stream_manager import StreamProcessManager

logger = logging.getLogger(__name__)

_PERIOD_DAYS = {RepeatMode.DAILY: 1, RepeatMode.WEEKLY: 7}
_UTC = dateutil_tz.tzutc()
_MICROS = 1_000_000
_ONE_MICRO = dt.timedelta(microseconds=1)


@dataclass
class RotationSlot:
    index: int
    slot_start: dt.datetime
    slot_end: dt.datetime
    window_start: dt.datetime
    window_end: dt.datetime


def _zone(name: str) -> dt.tzinfo:
    zone = dateutil_tz.gettz(name)
    if zone is None:
        raise InvalidRotation(f"Unknown timezone {name!r}")
    return zone


def project_window(
    now: dt.datetime,
    start_time: dt.datetime,
    end_time: dt.datetime,
    repeat_mode: str,
    timezone: str = "UTC",
) -> Optional[Tuple[dt.datetime, dt.datetime]]:
    """Return the occurrence of the window containing ``now``, if any."""
    if end_time <= start_time:
        raise InvalidRotation("Rotation end time must be after its start time")
    if repeat_mode == RepeatMode.NONE:
        if start_time <= now < end_time:
            return start_time.astimezone(_UTC), end_time.astimezone(_UTC)
        return None
    if repeat_mode not in _PERIOD_DAYS:
        raise InvalidRotation(f"Unknown repeat mode {repeat_mode!r}")

    period = _PERIOD_DAYS[repeat_mode]
    if end_time - start_time > dt.timedelta(days=period):
        raise InvalidRotation(f"A {repeat_mode} window cannot be longer than {period} day(s)")

    zone = _zone(timezone)
    local_start = start_time.astimezone(zone)
    local_end = end_time.astimezone(zone)
    elapsed_days = (now.astimezone(zone).date() - local_start.date()).days
    if elapsed_days < 0:
        return None

    latest = (elapsed_days // period) * period
    # A window crossing midnight may still be open from the previous period.
    for shift in (latest, latest - period):
        if shift < 0:
            continue
        window_start = local_start + dt.timedelta(days=shift)
        window_end = local_end + dt.timedelta(days=shift)
        if window_start <= now < window_end:
            return window_start.astimezone(_UTC), window_end.astimezone(_UTC)
    return None


def _micros(seconds: float) -> int:
    return int(round(seconds * _MICROS))


def _split(total: int, parts: int) -> List[int]:
    share, extra = divmod(total, parts)
    return [share + 1 if index < extra else share for index in range(parts)]


def _allocate_micros(items: Sequence[RotationItem], window: int, allocation: str) -> List[int]:
    if not items:
        return []
    if allocation == Allocation.EQUAL:
        return _split(window, len(items))
    if allocation != Allocation.DECLARED:
        raise InvalidRotation(f"Unknown allocation policy {allocation!r}")

    declared = [_micros(item.duration) if item.duration is not None else None for item in items]
    undeclared = declared.count(None)
    if not undeclared:
        return declared
    shares = iter(_split(max(window - sum(d for d in declared if d is not None), 0), undeclared))
    return [next(shares) if micros is None else micros for micros in declared]


def allocate(items: Sequence[RotationItem], window_seconds: float, allocation: str) -> List[float]:
    """Seconds of airtime per item, in order."""
    return [micros / _MICROS for micros in _allocate_micros(items, _micros(window_seconds), allocation)]


def resolve_slot(
    now: dt.datetime,
    start_time: dt.datetime,
    end_time: dt.datetime,
    repeat_mode: str,
    items: Sequence[RotationItem],
    allocation: str = Allocation.EQUAL,
    timezone: str = "UTC",
) -> Optional[RotationSlot]:
    """Work out which item should be airing at ``now``.

    Returns ``None`` outside every window, or when no item has airtime.
    Offsets are whole microseconds so a slot's end is exactly the next
    slot's start.
    """
    window = project_window(now, start_time, end_time, repeat_mode, timezone)
    if window is None or not items:
        return None
    window_start, window_end = window
    durations = _allocate_micros(items, (window_end - window_start) // _ONE_MICRO, allocation)
    cycle = sum(durations)
    if cycle <= 0:
        return None

    offset = (now - window_start) // _ONE_MICRO
    cycles = offset // cycle
    cycle_start = window_start + dt.timedelta(microseconds=cycles * cycle)
    within = offset - cycles * cycle

    elapsed = 0
    for index, micros in enumerate(durations):
        if micros > 0 and elapsed <= within < elapsed + micros:
            slot_start = cycle_start + dt.timedelta(microseconds=elapsed)
            slot_end = min(cycle_start + dt.timedelta(microseconds=elapsed + micros), window_end)
            return RotationSlot(index, slot_start, slot_end, window_start, window_end)
        elapsed += micros
    return None


def resolve_rotation_slot(rotation: Rotation, now: dt.datetime) -> Optional[RotationSlot]:
    return resolve_slot(
        now,
        rotation.start_time,
        rotation.end_time,
        rotation.repeat_mode,
        rotation.items,
        rotation.allocation,
        rotation.timezone,
    )


def validate_rotation(rotation: Rotation) -> None:
    if not rotation.items:
        raise InvalidRotation(f"Rotation {rotation.name} has no items")
    if rotation.end_time <= rotation.start_time:
        raise InvalidRotation("Rotation end time must be after its start time")
    period = _PERIOD_DAYS.get(rotation.repeat_mode)
    if period and rotation.end_time - rotation.start_time > dt.timedelta(days=period):
        raise InvalidRotation(f"A {rotation.repeat_mode} window cannot be longer than {period} day(s)")
    _zone(rotation.timezone)
    for item in rotation.items:
        if item.duration is not None and item.duration <= 0:
            raise InvalidRotation(f"Item {item.order_index} has a non-positive duration")


class RotationEngine(IntervalLoop):
    """Drives active rotations; one lock per rotation serialises commands and ticks.

    Pausing keeps the index of the item on air. Resuming restarts that item
    from its beginning and keeps it on air until the end of the wall-clock
    slot that contains the resume instant; after that the rotation follows
    the wall-clock schedule again. An item whose encoder crashes stays off
    air until the next slot boundary.
    """

    job_id = "rotation-engine"

    def __init__(
        self,
        store: Store,
        manager: StreamProcessManager,
        config: Optional[OrchestratorConfig] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.config = config or OrchestratorConfig()
        super().__init__(self.config.rotation_interval, clock)
        self.store = store
        self.manager = manager
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _load(self, rotation_id: str) -> Rotation:
        rotation = self.store.get_rotation(rotation_id)
        if rotation is None:
            raise NotFound(f"Rotation {rotation_id} not found")
        return rotation

    async def activate_rotation(self, rotation_id: str, now: Optional[dt.datetime] = None) -> Rotation:
        now = now or self.clock()
        async with self._locks[rotation_id]:
            rotation = self._load(rotation_id)
            validate_rotation(rotation)
            if rotation.status == RotationStatus.ACTIVE:
                return rotation
            if rotation.repeat_mode == RepeatMode.NONE and now >= rotation.end_time:
                raise InvalidRotation(f"Rotation {rotation.name} window has already ended")

            resume_index = rotation.paused_item_index if rotation.status == RotationStatus.PAUSED else None
            slot = resolve_rotation_slot(rotation, now)
            if slot is None:
                logger.info("Rotation %s activated; waiting for its window", rotation_id)
                return self.store.update_rotation(
                    rotation_id,
                    status=RotationStatus.ACTIVE,
                    current_item_index=None,
                    paused_item_index=None,
                    slot_end=None,
                    last_error=None,
                )

            index = resume_index if resume_index is not None else slot.index
            if resume_index is not None:
                logger.info("Resuming rotation %s with item %s", rotation_id, index)
            return await self._air(rotation, index, slot.slot_end)

    async def pause_rotation(self, rotation_id: str) -> Rotation:
        async with self._locks[rotation_id]:
            rotation = self._load(rotation_id)
            if rotation.status != RotationStatus.ACTIVE:
                raise InvalidRotation(f"Rotation {rotation.name} is not active")
            await self.manager.stop_rotation_item(rotation.key)
            logger.info("Paused rotation %s at item %s", rotation_id, rotation.current_item_index)
            return self.store.update_rotation(
                rotation_id,
                status=RotationStatus.PAUSED,
                paused_item_index=rotation.current_item_index,
                slot_end=None,
            )

    async def stop_rotation(self, rotation_id: str) -> Rotation:
        async with self._locks[rotation_id]:
            rotation = self._load(rotation_id)
            await self.manager.stop_rotation_item(rotation.key)
            logger.info("Stopped rotation %s", rotation_id)
            return self._deactivate(rotation_id)

    async def delete_rotation(self, rotation_id: str) -> None:
        async with self._locks[rotation_id]:
            rotation = self._load(rotation_id)
            if rotation.status == RotationStatus.ACTIVE or self.manager.is_stream_active(rotation.key):
                raise RotationActive(f"Rotation {rotation.name} is active; stop it before deleting")
            self.store.delete_rotation(rotation_id)
        self._locks.pop(rotation_id, None)

    def reconcile(self) -> List[str]:
        """Forget on-air bookkeeping of active rotations after a restart."""
        reset = []
        for rotation in self.store.find_rotations(status=RotationStatus.ACTIVE):
            self.store.update_rotation(rotation.id, current_item_index=None, slot_end=None)
            reset.append(rotation.id)
        if reset:
            logger.info("Re-deriving %d active rotation(s) from the clock", len(reset))
        return reset

    async def tick(self, now: Optional[dt.datetime] = None) -> List[str]:
        """Advance every active rotation; returns ids that changed item."""
        now = now or self.clock()
        rotations = self.store.find_rotations(status=RotationStatus.ACTIVE)
        results = await asyncio.gather(
            *(self._advance(rotation.id, now) for rotation in rotations), return_exceptions=True
        )
        switched = []
        for rotation, result in zip(rotations, results):
            if isinstance(result, Exception):
                logger.error("Rotation %s tick failed: %s", rotation.id, result)
            elif result:
                switched.append(rotation.id)
        return switched

    async def _advance(self, rotation_id: str, now: dt.datetime) -> bool:
        async with self._locks[rotation_id]:
            rotation = self.store.get_rotation(rotation_id)
            if rotation is None or rotation.status != RotationStatus.ACTIVE:
                return False

            if rotation.repeat_mode == RepeatMode.NONE and now >= rotation.end_time:
                await self.manager.stop_rotation_item(rotation.key)
                self._deactivate(rotation_id)
                logger.info("Rotation %s finished its one-shot window", rotation_id)
                return True

            if rotation.slot_end is not None and now < rotation.slot_end:
                return False

            slot = resolve_rotation_slot(rotation, now)
            if slot is None:
                if rotation.current_item_index is not None or self.manager.is_stream_active(rotation.key):
                    await self.manager.stop_rotation_item(rotation.key)
                    self.store.update_rotation(rotation_id, current_item_index=None, slot_end=None)
                    logger.info("Rotation %s window closed", rotation_id)
                    return True
                return False

            try:
                await self._air(rotation, slot.index, slot.slot_end)
            except Exception as exc:  # noqa: BLE001
                message = getattr(exc, "message", None) or str(exc)
                logger.error("Rotation %s could not start item %s: %s", rotation_id, slot.index, message)
                self.store.update_rotation(
                    rotation_id, current_item_index=slot.index, slot_end=slot.slot_end, last_error=message
                )
            return True

    async def _air(self, rotation: Rotation, index: int, slot_end: dt.datetime) -> Rotation:
        item = rotation.items[index]
        await self.manager.stop_rotation_item(rotation.key)
        await self.manager.start_rotation_item(rotation, item)
        return self.store.update_rotation(
            rotation.id,
            status=RotationStatus.ACTIVE,
            current_item_index=index,
            paused_item_index=None,
            slot_end=slot_end,
            last_error=None,
        )

    def _deactivate(self, rotation_id: str) -> Rotation:
        return self.store.update_rotation(
            rotation_id,
            status=RotationStatus.INACTIVE,
            current_item_index=None,
            paused_item_index=None,
            slot_end=None,
        )
