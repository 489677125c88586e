import pytest

from streamflow.config import AppConfig
from streamflow.errors import StreamLive
from streamflow.models import StreamStatus
from streamflow.orchestrator import Orchestrator

from doubles import SLEEPER, make_stream, python_spawner, wait_until


@pytest.fixture
def orchestrator(store, resolver, config):
    return Orchestrator.from_config(
        AppConfig(orchestrator=config), store=store, destinations=resolver, spawner=python_spawner(SLEEPER)
    )


@pytest.mark.asyncio
async def test_init_reconciles_and_shutdown_goes_offline(orchestrator, store):
    store.save_stream(make_stream("stale", status=StreamStatus.LIVE))
    store.save_stream(make_stream("s1"))

    await orchestrator.init()
    try:
        assert store.get_stream("stale").status == StreamStatus.OFFLINE
        assert orchestrator.scheduler.running
        assert orchestrator.rotations.running

        await orchestrator.start_stream("s1")
        assert orchestrator.is_stream_active("s1")
        assert store.get_stream("s1").status == StreamStatus.LIVE
    finally:
        await orchestrator.graceful_shutdown()

    assert not orchestrator.is_stream_active("s1")
    assert store.get_stream("s1").status == StreamStatus.OFFLINE
    assert not orchestrator.scheduler.running


@pytest.mark.asyncio
async def test_live_stream_cannot_be_deleted(orchestrator, store):
    store.save_stream(make_stream("s1"))
    await orchestrator.manager.start()
    await orchestrator.start_stream("s1")

    with pytest.raises(StreamLive):
        orchestrator.delete_stream("s1")

    await orchestrator.stop_stream("s1")
    orchestrator.delete_stream("s1")
    assert store.get_stream("s1") is None
    await orchestrator.graceful_shutdown()


@pytest.mark.asyncio
async def test_logs_survive_stop(orchestrator, store):
    store.save_stream(make_stream("s1"))
    await orchestrator.manager.start()
    await orchestrator.start_stream("s1")
    await wait_until(lambda: orchestrator.get_stream_logs("s1") == ["frame=1 fps=30"])
    await orchestrator.stop_stream("s1")

    assert orchestrator.get_stream_logs("s1") == ["frame=1 fps=30"]
    assert orchestrator.get_stream_logs("missing") == []
    await orchestrator.graceful_shutdown()
