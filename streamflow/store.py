"""Persistence of stream and rotation intent.

Two implementations share one interface: :class:`MemoryStore` for tests and
single-shot tools, and :class:`SqlStore` backed by SQLAlchemy. Both hand out
copies, so a caller mutating a returned record never changes stored state
without going through ``save_*`` or ``update_*``.
"""

from __future__ import annotations

import copy
import dataclasses
import datetime as dt
import logging
import threading
from typing import Any, Dict, List, Optional

from dateutil.tz import tzutc
from sqlalchemy import JSON, DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import NotFound, PersistenceError, RotationActive, StreamLive
from .models import (
    BroadcastMetadata,
    ContentRef,
    Destination,
    EncoderSettings,
    Rotation,
    RotationItem,
    RotationStatus,
    Stream,
    StreamStatus,
)

logger = logging.getLogger(__name__)

_STREAM_FIELDS = {f.name for f in dataclasses.fields(Stream)}
_ROTATION_FIELDS = {f.name for f in dataclasses.fields(Rotation)}


class Store:
    """Interface the orchestrator expects from persistence."""

    def get_stream(self, stream_id: str) -> Optional[Stream]:
        raise NotImplementedError

    def save_stream(self, stream: Stream) -> Stream:
        raise NotImplementedError

    def delete_stream(self, stream_id: str) -> None:
        raise NotImplementedError

    def find_streams(
        self,
        status: Optional[str] = None,
        due_before: Optional[dt.datetime] = None,
        ending_before: Optional[dt.datetime] = None,
    ) -> List[Stream]:
        raise NotImplementedError

    def update_stream_status(self, stream_id: str, status: str, **fields: Any) -> Stream:
        """Atomically set ``status`` plus any other stream fields."""
        raise NotImplementedError

    def get_rotation(self, rotation_id: str) -> Optional[Rotation]:
        raise NotImplementedError

    def save_rotation(self, rotation: Rotation) -> Rotation:
        raise NotImplementedError

    def delete_rotation(self, rotation_id: str) -> None:
        raise NotImplementedError

    def find_rotations(self, status: Optional[str] = None) -> List[Rotation]:
        raise NotImplementedError

    def update_rotation(self, rotation_id: str, **fields: Any) -> Rotation:
        raise NotImplementedError


def _check_fields(fields: Dict[str, Any], allowed: set, kind: str) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown {kind} fields: {', '.join(sorted(unknown))}")


def _matches(
    stream: Stream,
    status: Optional[str],
    due_before: Optional[dt.datetime],
    ending_before: Optional[dt.datetime],
) -> bool:
    if status is not None and stream.status != status:
        return False
    if due_before is not None and (stream.schedule_time is None or stream.schedule_time > due_before):
        return False
    if ending_before is not None and (stream.end_time is None or stream.end_time > ending_before):
        return False
    return True


class MemoryStore(Store):
    def __init__(self) -> None:
        self._streams: Dict[str, Stream] = {}
        self._rotations: Dict[str, Rotation] = {}
        self._lock = threading.RLock()

    def get_stream(self, stream_id: str) -> Optional[Stream]:
        with self._lock:
            stream = self._streams.get(stream_id)
            return copy.deepcopy(stream) if stream else None

    def save_stream(self, stream: Stream) -> Stream:
        with self._lock:
            self._streams[stream.id] = copy.deepcopy(stream)
            return copy.deepcopy(stream)

    def delete_stream(self, stream_id: str) -> None:
        with self._lock:
            stream = self._streams.get(stream_id)
            if stream is None:
                raise NotFound(f"Stream {stream_id} not found")
            if stream.status == StreamStatus.LIVE:
                raise StreamLive(f"Stream {stream_id} is live; stop it before deleting")
            del self._streams[stream_id]

    def find_streams(self, status=None, due_before=None, ending_before=None) -> List[Stream]:
        with self._lock:
            return [
                copy.deepcopy(stream)
                for stream in self._streams.values()
                if _matches(stream, status, due_before, ending_before)
            ]

    def update_stream_status(self, stream_id: str, status: str, **fields: Any) -> Stream:
        if status not in StreamStatus.ALL:
            raise ValueError(f"Unknown stream status {status!r}")
        _check_fields(fields, _STREAM_FIELDS, "stream")
        with self._lock:
            stream = self._streams.get(stream_id)
            if stream is None:
                raise NotFound(f"Stream {stream_id} not found")
            stream.status = status
            for name, value in fields.items():
                setattr(stream, name, value)
            return copy.deepcopy(stream)

    def get_rotation(self, rotation_id: str) -> Optional[Rotation]:
        with self._lock:
            rotation = self._rotations.get(rotation_id)
            return copy.deepcopy(rotation) if rotation else None

    def save_rotation(self, rotation: Rotation) -> Rotation:
        with self._lock:
            self._rotations[rotation.id] = copy.deepcopy(rotation)
            return copy.deepcopy(rotation)

    def delete_rotation(self, rotation_id: str) -> None:
        with self._lock:
            rotation = self._rotations.get(rotation_id)
            if rotation is None:
                raise NotFound(f"Rotation {rotation_id} not found")
            if rotation.status == RotationStatus.ACTIVE:
                raise RotationActive(f"Rotation {rotation_id} is active; stop it before deleting")
            del self._rotations[rotation_id]

    def find_rotations(self, status: Optional[str] = None) -> List[Rotation]:
        with self._lock:
            return [
                copy.deepcopy(rotation)
                for rotation in self._rotations.values()
                if status is None or rotation.status == status
            ]

    def update_rotation(self, rotation_id: str, **fields: Any) -> Rotation:
        _check_fields(fields, _ROTATION_FIELDS, "rotation")
        with self._lock:
            rotation = self._rotations.get(rotation_id)
            if rotation is None:
                raise NotFound(f"Rotation {rotation_id} not found")
            for name, value in fields.items():
                setattr(rotation, name, value)
            return copy.deepcopy(rotation)


# SQLAlchemy-backed store. Datetimes are stored as naive UTC.


class Base(DeclarativeBase):
    pass


class StreamRow(Base):
    __tablename__ = "streams"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(16), index=True, default=StreamStatus.OFFLINE)
    schedule_time: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True, index=True)
    end_time: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True, index=True)
    start_time: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    start_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content: Mapped[Dict[str, Any]] = mapped_column(JSON)
    destination: Mapped[Dict[str, Any]] = mapped_column(JSON)
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON)


class RotationRow(Base):
    __tablename__ = "rotations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(16), index=True, default=RotationStatus.INACTIVE)
    start_time: Mapped[dt.datetime] = mapped_column(DateTime)
    end_time: Mapped[dt.datetime] = mapped_column(DateTime)
    repeat_mode: Mapped[str] = mapped_column(String(16))
    allocation: Mapped[str] = mapped_column(String(16))
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    items: Mapped[List[Dict[str, Any]]] = mapped_column(JSON)
    destination: Mapped[Dict[str, Any]] = mapped_column(JSON)
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON)
    current_item_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    paused_item_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    slot_end: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


def _to_db(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(tzutc()).replace(tzinfo=None)


def _from_db(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=tzutc())


def _content_from(data: Optional[Dict[str, Any]]) -> ContentRef:
    data = data or {}
    return ContentRef(video=data.get("video"), playlist=list(data.get("playlist") or []))


def _metadata_from(data: Optional[Dict[str, Any]]) -> Optional[BroadcastMetadata]:
    if not data:
        return None
    return BroadcastMetadata(**data)


def _destination_from(data: Optional[Dict[str, Any]]) -> Destination:
    data = dict(data or {})
    data["broadcast"] = _metadata_from(data.get("broadcast"))
    return Destination(**data)


def _item_to(item: RotationItem) -> Dict[str, Any]:
    return dataclasses.asdict(item)


def _item_from(data: Dict[str, Any]) -> RotationItem:
    return RotationItem(
        order_index=data["order_index"],
        content=_content_from(data.get("content")),
        metadata=_metadata_from(data.get("metadata")) or BroadcastMetadata(title=""),
        duration=data.get("duration"),
    )


_DATETIME_FIELDS = {"schedule_time", "end_time", "start_time", "slot_end"}
_JSON_FIELDS = {"content", "destination", "settings"}


def _column_value(name: str, value: Any) -> Any:
    if name in _DATETIME_FIELDS:
        return _to_db(value)
    if name in _JSON_FIELDS:
        return dataclasses.asdict(value)
    if name == "items":
        return [_item_to(item) for item in value]
    return value


def _stream_from_row(row: StreamRow) -> Stream:
    return Stream(
        id=row.id,
        title=row.title,
        content=_content_from(row.content),
        destination=_destination_from(row.destination),
        settings=EncoderSettings(**(row.settings or {})),
        status=row.status,
        schedule_time=_from_db(row.schedule_time),
        end_time=_from_db(row.end_time),
        start_time=_from_db(row.start_time),
        start_failures=row.start_failures or 0,
        last_error=row.last_error,
    )


def _rotation_from_row(row: RotationRow) -> Rotation:
    return Rotation(
        id=row.id,
        name=row.name,
        start_time=_from_db(row.start_time),
        end_time=_from_db(row.end_time),
        items=[_item_from(item) for item in row.items or []],
        repeat_mode=row.repeat_mode,
        allocation=row.allocation,
        timezone=row.timezone,
        destination=_destination_from(row.destination),
        settings=EncoderSettings(**(row.settings or {})),
        status=row.status,
        current_item_index=row.current_item_index,
        paused_item_index=row.paused_item_index,
        slot_end=_from_db(row.slot_end),
        last_error=row.last_error,
    )


class SqlStore(Store):
    """SQLAlchemy store; every write runs in its own transaction."""

    def __init__(self, database_url: str, echo: bool = False):
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        self._write_lock = threading.Lock()
        Base.metadata.create_all(self.engine)

    def _run(self, description: str, func):
        try:
            with self._sessions.begin() as session:
                return func(session)
        except SQLAlchemyError as exc:
            logger.error("Database error during %s: %s", description, exc)
            raise PersistenceError(f"Could not {description}") from exc

    def get_stream(self, stream_id: str) -> Optional[Stream]:
        def query(session):
            row = session.get(StreamRow, stream_id)
            return _stream_from_row(row) if row else None

        return self._run("load stream", query)

    def save_stream(self, stream: Stream) -> Stream:
        def write(session):
            row = session.get(StreamRow, stream.id) or StreamRow(id=stream.id)
            for name in _STREAM_FIELDS - {"id"}:
                setattr(row, name, _column_value(name, getattr(stream, name)))
            session.add(row)
            return stream

        with self._write_lock:
            return self._run("save stream", write)

    def delete_stream(self, stream_id: str) -> None:
        def write(session):
            row = session.get(StreamRow, stream_id)
            if row is None:
                raise NotFound(f"Stream {stream_id} not found")
            if row.status == StreamStatus.LIVE:
                raise StreamLive(f"Stream {stream_id} is live; stop it before deleting")
            session.delete(row)

        with self._write_lock:
            self._run("delete stream", write)

    def find_streams(self, status=None, due_before=None, ending_before=None) -> List[Stream]:
        def query(session):
            statement = select(StreamRow)
            if status is not None:
                statement = statement.where(StreamRow.status == status)
            if due_before is not None:
                statement = statement.where(StreamRow.schedule_time <= _to_db(due_before))
            if ending_before is not None:
                statement = statement.where(StreamRow.end_time <= _to_db(ending_before))
            return [_stream_from_row(row) for row in session.scalars(statement)]

        return self._run("query streams", query)

    def update_stream_status(self, stream_id: str, status: str, **fields: Any) -> Stream:
        if status not in StreamStatus.ALL:
            raise ValueError(f"Unknown stream status {status!r}")
        _check_fields(fields, _STREAM_FIELDS, "stream")

        def write(session):
            row = session.get(StreamRow, stream_id, with_for_update=True)
            if row is None:
                raise NotFound(f"Stream {stream_id} not found")
            row.status = status
            for name, value in fields.items():
                setattr(row, name, _column_value(name, value))
            session.flush()
            return _stream_from_row(row)

        with self._write_lock:
            return self._run("update stream status", write)

    def get_rotation(self, rotation_id: str) -> Optional[Rotation]:
        def query(session):
            row = session.get(RotationRow, rotation_id)
            return _rotation_from_row(row) if row else None

        return self._run("load rotation", query)

    def save_rotation(self, rotation: Rotation) -> Rotation:
        def write(session):
            row = session.get(RotationRow, rotation.id) or RotationRow(id=rotation.id)
            for name in _ROTATION_FIELDS - {"id"}:
                setattr(row, name, _column_value(name, getattr(rotation, name)))
            session.add(row)
            return rotation

        with self._write_lock:
            return self._run("save rotation", write)

    def delete_rotation(self, rotation_id: str) -> None:
        def write(session):
            row = session.get(RotationRow, rotation_id)
            if row is None:
                raise NotFound(f"Rotation {rotation_id} not found")
            if row.status == RotationStatus.ACTIVE:
                raise RotationActive(f"Rotation {rotation_id} is active; stop it before deleting")
            session.delete(row)

        with self._write_lock:
            self._run("delete rotation", write)

    def find_rotations(self, status: Optional[str] = None) -> List[Rotation]:
        def query(session):
            statement = select(RotationRow)
            if status is not None:
                statement = statement.where(RotationRow.status == status)
            return [_rotation_from_row(row) for row in session.scalars(statement)]

        return self._run("query rotations", query)

    def update_rotation(self, rotation_id: str, **fields: Any) -> Rotation:
        _check_fields(fields, _ROTATION_FIELDS, "rotation")

        def write(session):
            row = session.get(RotationRow, rotation_id, with_for_update=True)
            if row is None:
                raise NotFound(f"Rotation {rotation_id} not found")
            for name, value in fields.items():
                setattr(row, name, _column_value(name, value))
            session.flush()
            return _rotation_from_row(row)

        with self._write_lock:
            return self._run("update rotation", write)
