import datetime as dt
from unittest import mock

import pytest

from streamflow.destinations import DestinationError
from streamflow.models import ContentRef, StreamStatus, utcnow
from streamflow.scheduler import SchedulerLoop

from doubles import NOW, make_stream, wait_until


@pytest.fixture
def notifier():
    return mock.Mock()


@pytest.fixture
def scheduler(store, manager, config, notifier):
    return SchedulerLoop(store, manager, config, notifier, clock=lambda: NOW)


def _scheduled(stream_id="s1", starts_in=-60, lasts=3600, **overrides):
    start = NOW + dt.timedelta(seconds=starts_in)
    return make_stream(
        stream_id,
        status=StreamStatus.SCHEDULED,
        schedule_time=start,
        end_time=start + dt.timedelta(seconds=lasts),
        **overrides,
    )


@pytest.mark.asyncio
async def test_due_stream_is_started(scheduler, store, manager):
    store.save_stream(_scheduled())

    report = await scheduler.tick(NOW)

    assert report.started == ["s1"]
    assert manager.is_stream_active("s1")
    assert store.get_stream("s1").status == StreamStatus.LIVE


@pytest.mark.asyncio
async def test_future_stream_is_left_alone(scheduler, store, manager):
    store.save_stream(_scheduled(starts_in=60))

    report = await scheduler.tick(NOW)

    assert report.started == []
    assert not manager.is_stream_active("s1")
    assert store.get_stream("s1").status == StreamStatus.SCHEDULED


@pytest.mark.asyncio
async def test_live_stream_past_end_time_is_stopped(scheduler, store, manager):
    store.save_stream(make_stream("s1", end_time=NOW - dt.timedelta(seconds=1)))
    await manager.start_stream("s1")

    report = await scheduler.tick(NOW)

    assert report.stopped == ["s1"]
    assert not manager.is_stream_active("s1")
    assert store.get_stream("s1").status == StreamStatus.OFFLINE


@pytest.mark.asyncio
async def test_missed_window_is_abandoned(scheduler, store, spawn_calls):
    store.save_stream(_scheduled(starts_in=-7200, lasts=3600))

    report = await scheduler.tick(NOW)

    assert report.abandoned == ["s1"]
    assert spawn_calls == []
    stream = store.get_stream("s1")
    assert stream.status == StreamStatus.OFFLINE
    assert "window ended" in stream.last_error


@pytest.mark.asyncio
async def test_failed_start_is_retried_within_window(scheduler, store, resolver):
    store.save_stream(_scheduled(starts_in=-60))
    resolver.fail_with = DestinationError("YouTube is not connected")

    first = await scheduler.tick(NOW)
    second = await scheduler.tick(NOW)

    assert first.retrying == ["s1"]
    assert second.retrying == ["s1"]
    stream = store.get_stream("s1")
    assert stream.status == StreamStatus.SCHEDULED
    assert stream.start_failures == 2
    assert stream.last_error == "YouTube is not connected"

    resolver.fail_with = None
    third = await scheduler.tick(NOW)
    assert third.started == ["s1"]
    assert store.get_stream("s1").start_failures == 0


@pytest.mark.asyncio
async def test_failed_start_is_abandoned_after_retry_window(scheduler, store, resolver, notifier):
    store.save_stream(_scheduled(starts_in=-600))
    resolver.fail_with = DestinationError("YouTube is not connected")

    report = await scheduler.tick(NOW)

    assert report.abandoned == ["s1"]
    stream = store.get_stream("s1")
    assert stream.status == StreamStatus.OFFLINE
    assert stream.start_failures == 1
    notifier.notify.assert_called_once()
    assert "failed to start" in notifier.notify.call_args.args[0]


@pytest.mark.asyncio
async def test_abandonment_skips_unconfigured_notifier(store, manager, config, resolver):
    notifier = mock.Mock(enabled=False)
    scheduler = SchedulerLoop(store, manager, config, notifier, clock=lambda: NOW)
    store.save_stream(_scheduled(starts_in=-600))
    resolver.fail_with = DestinationError("YouTube is not connected")

    report = await scheduler.tick(NOW)

    assert report.abandoned == ["s1"]
    notifier.notify.assert_not_called()


@pytest.mark.asyncio
async def test_one_broken_stream_does_not_block_others(scheduler, store, manager):
    store.save_stream(_scheduled("s1", content=ContentRef()))
    store.save_stream(_scheduled("s2"))

    report = await scheduler.tick(NOW)

    assert report.retrying == ["s1"]
    assert report.started == ["s2"]
    assert manager.is_stream_active("s2")


@pytest.mark.asyncio
async def test_loop_ticks_on_its_own(store, manager, config):
    start = utcnow() - dt.timedelta(seconds=5)
    store.save_stream(
        make_stream(
            "s1",
            status=StreamStatus.SCHEDULED,
            schedule_time=start,
            end_time=start + dt.timedelta(hours=1),
        )
    )
    loop = SchedulerLoop(store, manager, config)

    loop.start()
    try:
        await wait_until(lambda: manager.is_stream_active("s1"))
    finally:
        await loop.stop()

    assert not loop.running
    assert store.get_stream("s1").status == StreamStatus.LIVE
