import pytest
from fastapi.testclient import TestClient

from streamflow.errors import AlreadyLive, NotFound, StreamLive
from streamflow.models import RotationStatus
from streamflow.store import MemoryStore
from streamflow.web import create_app

from doubles import make_rotation


class FakeOrchestrator:
    def __init__(self):
        self.store = MemoryStore()
        self.calls = []
        self.errors = {}
        self.active = set()
        self.initialized = False

    def _record(self, name, target):
        self.calls.append((name, target))
        if name in self.errors:
            raise self.errors[name]

    async def init(self):
        self.initialized = True

    async def graceful_shutdown(self):
        self.initialized = False

    async def start_stream(self, stream_id):
        self._record("start_stream", stream_id)
        self.active.add(stream_id)

    async def stop_stream(self, stream_id):
        self._record("stop_stream", stream_id)
        self.active.discard(stream_id)

    def is_stream_active(self, stream_id):
        return stream_id in self.active

    def get_stream_logs(self, stream_id):
        return ["frame=1 fps=30"] if stream_id in self.active else []

    def delete_stream(self, stream_id):
        self._record("delete_stream", stream_id)

    async def activate_rotation(self, rotation_id):
        self._record("activate_rotation", rotation_id)

    async def pause_rotation(self, rotation_id):
        self._record("pause_rotation", rotation_id)

    async def stop_rotation(self, rotation_id):
        self._record("stop_rotation", rotation_id)

    async def delete_rotation(self, rotation_id):
        self._record("delete_rotation", rotation_id)


@pytest.fixture
def orchestrator():
    return FakeOrchestrator()


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator), raise_server_exceptions=False) as client:
        yield client


def test_lifespan_runs_init_and_shutdown(orchestrator):
    with TestClient(create_app(orchestrator)) as client:
        assert orchestrator.initialized
        assert client.get("/health").json() == {"status": "ok"}
    assert not orchestrator.initialized


def test_set_stream_live_and_offline(client, orchestrator):
    response = client.post("/streams/s1/status", json={"status": "live"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "isActive": True}

    response = client.post("/streams/s1/status", json={"status": "offline"})

    assert response.json() == {"success": True, "isActive": False}
    assert orchestrator.calls == [("start_stream", "s1"), ("stop_stream", "s1")]


def test_unknown_status_is_rejected(client, orchestrator):
    response = client.post("/streams/s1/status", json={"status": "paused"})

    assert response.status_code == 422
    assert orchestrator.calls == []


@pytest.mark.parametrize(
    "error, status_code",
    [
        (AlreadyLive("s1"), 409),
        (NotFound("Stream s1 not found"), 404),
        (RuntimeError("socket closed"), 500),
    ],
)
def test_errors_map_to_failure_payload(client, orchestrator, error, status_code):
    orchestrator.errors["start_stream"] = error

    response = client.post("/streams/s1/status", json={"status": "live"})

    assert response.status_code == status_code
    body = response.json()
    assert body["success"] is False
    if status_code == 500:
        assert body["error"] == "Internal server error"
    else:
        assert body["error"] == error.message


def test_stream_logs(client, orchestrator):
    orchestrator.active.add("s1")

    response = client.get("/streams/s1/logs")

    assert response.json() == {"success": True, "logs": ["frame=1 fps=30"], "isActive": True}


def test_delete_live_stream_conflicts(client, orchestrator):
    orchestrator.errors["delete_stream"] = StreamLive("busy")

    response = client.delete("/streams/s1")

    assert response.status_code == 409
    assert response.json() == {"success": False, "error": "busy"}


@pytest.mark.parametrize("action", ["activate", "pause", "stop"])
def test_rotation_actions(client, orchestrator, action):
    response = client.post(f"/rotations/r1/{action}")

    assert response.json() == {"success": True}
    assert orchestrator.calls == [(f"{action}_rotation", "r1")]


def test_delete_active_rotation_stops_it_first(client, orchestrator):
    orchestrator.store.save_rotation(make_rotation("r1", status=RotationStatus.ACTIVE))

    response = client.delete("/rotations/r1")

    assert response.json()["success"] is True
    assert orchestrator.calls == [("stop_rotation", "r1"), ("delete_rotation", "r1")]
