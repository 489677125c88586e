import datetime as dt

import pytest

from streamflow.errors import NotFound, RotationActive, StreamLive
from streamflow.models import (
    Allocation,
    BroadcastMetadata,
    ContentRef,
    Destination,
    RotationStatus,
    StreamStatus,
)
from streamflow.store import MemoryStore, SqlStore

from doubles import NOW, make_rotation, make_stream


@pytest.fixture(params=["memory", "sql"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return SqlStore(f"sqlite:///{tmp_path / 'streamflow.db'}")


def test_stream_is_stored_with_its_settings(any_store):
    stream = make_stream(
        "s1",
        content=ContentRef(playlist=["/videos/a.mp4", "/videos/b.mp4"]),
        destination=Destination(kind="youtube", broadcast=BroadcastMetadata(title="Show", tags=["live"])),
        schedule_time=NOW,
        end_time=NOW + dt.timedelta(hours=1),
    )
    any_store.save_stream(stream)

    loaded = any_store.get_stream("s1")

    assert loaded == stream
    assert loaded.schedule_time == NOW
    assert loaded.destination.broadcast.tags == ["live"]
    assert any_store.get_stream("missing") is None


def test_returned_records_are_copies(any_store):
    any_store.save_stream(make_stream("s1"))

    loaded = any_store.get_stream("s1")
    loaded.status = StreamStatus.LIVE

    assert any_store.get_stream("s1").status == StreamStatus.OFFLINE


def test_find_streams_by_status_and_time(any_store):
    any_store.save_stream(make_stream("due", status=StreamStatus.SCHEDULED, schedule_time=NOW - dt.timedelta(minutes=1)))
    any_store.save_stream(make_stream("later", status=StreamStatus.SCHEDULED, schedule_time=NOW + dt.timedelta(minutes=1)))
    any_store.save_stream(make_stream("ending", status=StreamStatus.LIVE, end_time=NOW))
    any_store.save_stream(make_stream("open", status=StreamStatus.LIVE))

    due = any_store.find_streams(status=StreamStatus.SCHEDULED, due_before=NOW)
    ending = any_store.find_streams(status=StreamStatus.LIVE, ending_before=NOW)

    assert [stream.id for stream in due] == ["due"]
    assert [stream.id for stream in ending] == ["ending"]
    assert len(any_store.find_streams()) == 4


def test_update_stream_status_sets_fields_together(any_store):
    any_store.save_stream(make_stream("s1", start_failures=2, last_error="boom"))

    updated = any_store.update_stream_status(
        "s1", StreamStatus.LIVE, start_time=NOW, start_failures=0, last_error=None
    )

    assert updated.status == StreamStatus.LIVE
    loaded = any_store.get_stream("s1")
    assert (loaded.status, loaded.start_time, loaded.start_failures, loaded.last_error) == (
        StreamStatus.LIVE,
        NOW,
        0,
        None,
    )


def test_update_stream_status_rejects_bad_input(any_store):
    any_store.save_stream(make_stream("s1"))

    with pytest.raises(ValueError):
        any_store.update_stream_status("s1", "paused")
    with pytest.raises(ValueError):
        any_store.update_stream_status("s1", StreamStatus.LIVE, colour="red")
    with pytest.raises(NotFound):
        any_store.update_stream_status("missing", StreamStatus.LIVE)
    assert any_store.get_stream("s1").status == StreamStatus.OFFLINE


def test_live_stream_cannot_be_deleted(any_store):
    any_store.save_stream(make_stream("s1", status=StreamStatus.LIVE))

    with pytest.raises(StreamLive):
        any_store.delete_stream("s1")

    any_store.update_stream_status("s1", StreamStatus.OFFLINE)
    any_store.delete_stream("s1")
    assert any_store.get_stream("s1") is None
    with pytest.raises(NotFound):
        any_store.delete_stream("s1")


def test_rotation_round_trips_items_and_timing(any_store):
    rotation = make_rotation("r1", allocation=Allocation.DECLARED, timezone="Europe/Berlin")
    any_store.save_rotation(rotation)

    loaded = any_store.get_rotation("r1")

    assert [item.order_index for item in loaded.items] == [0, 1, 2]
    assert loaded.items[2].metadata.title == "Item 2"
    assert loaded.start_time == rotation.start_time
    assert loaded.allocation == Allocation.DECLARED
    assert loaded.timezone == "Europe/Berlin"
    assert loaded.destination.is_managed


def test_update_and_find_rotations(any_store):
    any_store.save_rotation(make_rotation("r1"))
    any_store.save_rotation(make_rotation("r2"))

    updated = any_store.update_rotation(
        "r1", status=RotationStatus.ACTIVE, current_item_index=2, slot_end=NOW
    )

    assert updated.slot_end == NOW
    assert [rotation.id for rotation in any_store.find_rotations(status=RotationStatus.ACTIVE)] == ["r1"]
    assert len(any_store.find_rotations()) == 2
    with pytest.raises(ValueError):
        any_store.update_rotation("r1", volume=11)
    with pytest.raises(NotFound):
        any_store.update_rotation("missing", status=RotationStatus.ACTIVE)


def test_active_rotation_cannot_be_deleted(any_store):
    any_store.save_rotation(make_rotation("r1", status=RotationStatus.ACTIVE))

    with pytest.raises(RotationActive):
        any_store.delete_rotation("r1")

    any_store.update_rotation("r1", status=RotationStatus.INACTIVE)
    any_store.delete_rotation("r1")
    assert any_store.get_rotation("r1") is None
