from fastapi.testclient import TestClient

from screencast.api.server import create_app
from screencast.config import SessionConfig
from screencast.rtc.loopback import CollectingSink, LoopbackNetwork, SyntheticScreenSource
from screencast.session import SessionSupervisor
from screencast.signaling.store import InMemorySignalStore


def _supervisor(*, deny: bool = False) -> SessionSupervisor:
    return SessionSupervisor(
        InMemorySignalStore(),
        LoopbackNetwork().create_engine,
        media_source=SyntheticScreenSource(deny=deny),
        sink=CollectingSink(),
        config=SessionConfig(poll_interval=30.0, ice_servers=[]),
        code_factory=lambda: "ABCDE",
    )


def test_healthz_and_initial_status() -> None:
    with TestClient(create_app(_supervisor())) as client:
        health = client.get("/healthz")
        status = client.get("/session")

    assert health.status_code == 200
    assert health.json() == {"status": "ok", "profile": "default"}
    assert status.json() == {
        "state": "idle",
        "role": None,
        "code": None,
        "mediaAttached": False,
        "error": None,
        "errorType": None,
    }


def test_host_then_stop() -> None:
    supervisor = _supervisor()
    with TestClient(create_app(supervisor)) as client:
        hosted = client.post("/session/host")
        status = client.get("/session").json()
        busy = client.post("/session/host")
        stopped = client.post("/session/stop")

    assert hosted.status_code == 200
    assert hosted.json() == {"code": "ABCDE", "state": "offering"}
    assert status["role"] == "host"
    assert status["code"] == "ABCDE"
    assert busy.status_code == 409
    assert stopped.json()["state"] == "idle"


def test_join_errors_map_to_status_codes() -> None:
    with TestClient(create_app(_supervisor())) as client:
        missing = client.post("/session/join", json={"code": "zzzzz"})
        invalid = client.post("/session/join", json={"code": "AB/CD"})
        status = client.get("/session").json()

    assert missing.status_code == 404
    assert invalid.status_code == 400
    assert status["state"] == "idle"
    assert status["errorType"] == "RoomNotFound"


def test_denied_capture_is_service_unavailable() -> None:
    with TestClient(create_app(_supervisor(deny=True))) as client:
        response = client.post("/session/host")

    assert response.status_code == 503


def test_shutdown_stops_live_session() -> None:
    supervisor = _supervisor()
    with TestClient(create_app(supervisor)) as client:
        client.post("/session/host")
        assert supervisor.state.value == "offering"

    assert supervisor.state.value == "idle"
    assert supervisor.teardowns == 1


def test_event_stream_reports_state_changes() -> None:
    with TestClient(create_app(_supervisor())) as client:
        with client.websocket_connect("/session/events") as websocket:
            snapshot = websocket.receive_json()
            client.post("/session/host")
            change = websocket.receive_json()

    assert snapshot["type"] == "state"
    assert snapshot["state"] == "idle"
    assert snapshot["previous"] is None
    assert change["previous"] == "idle"
    assert change["state"] == "offering"
    assert change["role"] == "host"
    assert change["code"] == "ABCDE"
