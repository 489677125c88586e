"""Domain models for streams, rotations and encoder processes."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import List, Optional

from dateutil.tz import tzutc


def utcnow() -> dt.datetime:
    return dt.datetime.now(tzutc())


class StreamStatus:
    OFFLINE = "offline"
    SCHEDULED = "scheduled"
    LIVE = "live"

    ALL = (OFFLINE, SCHEDULED, LIVE)


class RotationStatus:
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAUSED = "paused"

    ALL = (INACTIVE, ACTIVE, PAUSED)


class RepeatMode:
    DAILY = "daily"
    WEEKLY = "weekly"
    NONE = "none"

    ALL = (DAILY, WEEKLY, NONE)


class Allocation:
    EQUAL = "equal"
    DECLARED = "declared"

    ALL = (EQUAL, DECLARED)


class ExitReason:
    NORMAL = "normal"
    KILLED = "killed"
    CRASHED = "crashed"


@dataclass
class ContentRef:
    """A single video file or an ordered playlist of files."""

    video: Optional[str] = None
    playlist: List[str] = field(default_factory=list)

    def sources(self) -> List[str]:
        if self.video:
            return [self.video]
        return [source for source in self.playlist if source]


@dataclass
class BroadcastMetadata:
    title: str
    description: str = ""
    privacy: str = "unlisted"
    category: str = "22"
    tags: List[str] = field(default_factory=list)
    channel_id: Optional[str] = None


@dataclass
class Destination:
    kind: str = "rtmp"
    rtmp_url: Optional[str] = None
    stream_key: Optional[str] = None
    broadcast: Optional[BroadcastMetadata] = None
    broadcast_id: Optional[str] = None

    @property
    def is_managed(self) -> bool:
        return self.kind == "youtube"


@dataclass
class ResolvedDestination:
    url: str
    broadcast_id: Optional[str] = None
    live_stream_id: Optional[str] = None
    managed: bool = False


@dataclass
class EncoderSettings:
    bitrate: int = 2500
    resolution: str = "1280x720"
    fps: int = 30
    orientation: str = "horizontal"
    loop_video: bool = False


@dataclass
class EncoderSpec:
    inputs: List[str]
    output_url: str
    settings: EncoderSettings = field(default_factory=EncoderSettings)


@dataclass
class Stream:
    id: str
    title: str
    content: ContentRef = field(default_factory=ContentRef)
    destination: Destination = field(default_factory=Destination)
    settings: EncoderSettings = field(default_factory=EncoderSettings)
    status: str = StreamStatus.OFFLINE
    schedule_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None
    start_time: Optional[dt.datetime] = None
    start_failures: int = 0
    last_error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.status not in StreamStatus.ALL:
            raise ValueError(f"Unknown stream status {self.status!r}")
        if self.schedule_time and self.end_time and self.end_time <= self.schedule_time:
            raise ValueError("end_time must be after schedule_time")


@dataclass
class RotationItem:
    order_index: int
    content: ContentRef
    metadata: BroadcastMetadata
    duration: Optional[float] = None


@dataclass
class Rotation:
    id: str
    name: str
    start_time: dt.datetime
    end_time: dt.datetime
    items: List[RotationItem] = field(default_factory=list)
    repeat_mode: str = RepeatMode.DAILY
    allocation: str = Allocation.EQUAL
    timezone: str = "UTC"
    destination: Destination = field(default_factory=Destination)
    settings: EncoderSettings = field(default_factory=lambda: EncoderSettings(bitrate=4000, resolution="1920x1080"))
    status: str = RotationStatus.INACTIVE
    current_item_index: Optional[int] = None
    paused_item_index: Optional[int] = None
    slot_end: Optional[dt.datetime] = None
    last_error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.repeat_mode not in RepeatMode.ALL:
            raise ValueError(f"Unknown repeat mode {self.repeat_mode!r}")
        if self.allocation not in Allocation.ALL:
            raise ValueError(f"Unknown allocation policy {self.allocation!r}")
        positions = [item.order_index for item in self.items]
        if len(positions) != len(set(positions)):
            raise ValueError("Rotation items must have distinct order_index values")
        self.items.sort(key=lambda item: item.order_index)

    @property
    def key(self) -> str:
        return rotation_key(self.id)


def rotation_key(rotation_id: str) -> str:
    return f"rotation:{rotation_id}"


@dataclass
class ExitEvent:
    key: str
    generation: int
    reason: str
    returncode: Optional[int] = None
    signal: Optional[int] = None

    def describe(self) -> str:
        if self.signal is not None:
            return f"{self.reason} (signal {self.signal})"
        return f"{self.reason} (exit code {self.returncode})"
