"""Shared pytest fixtures for orchestrator tests."""

import pytest
import pytest_asyncio

from streamflow.config import OrchestratorConfig
from streamflow.store import MemoryStore
from streamflow.stream_manager import StreamProcessManager

from doubles import SLEEPER, FakeResolver, python_spawner


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def config(tmp_path):
    return OrchestratorConfig(
        stop_grace_period=2.0,
        log_buffer_lines=50,
        retained_logs=5,
        schedule_retry_window=300.0,
        work_dir=str(tmp_path),
    )


@pytest.fixture
def spawn_calls():
    return []


@pytest_asyncio.fixture
async def manager(store, resolver, config, spawn_calls):
    manager = StreamProcessManager(store, resolver, config, spawner=python_spawner(SLEEPER, spawn_calls))
    await manager.start()
    yield manager
    await manager.shutdown()
