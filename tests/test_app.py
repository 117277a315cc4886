from pathlib import Path

import httpx
import pytest

from fastapi.testclient import TestClient

from device_link.app import create_app
from device_link.config import parse_settings
from device_link.link import DeviceLink
from device_link.network import NetworkInfo, StaticNetworkInfoProvider
from device_link.system_log import SystemLog


class FakeDevice:
    def __init__(self) -> None:
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        if request.url.path == "/ping":
            return httpx.Response(200, text="pong")
        if request.url.path == "/status":
            return httpx.Response(200, json={"status": "ready"})
        return httpx.Response(200, text="OK")


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def client(tmp_path: Path, device: FakeDevice) -> TestClient:
    settings = parse_settings(
        {
            "scheduler": {
                "initial_delay_s": 60.0,
                "endpoint_delay_s": 0.0,
                "round_delay_s": 0.0,
            },
            "session": {"export_dir": str(tmp_path / "sessions")},
        }
    )
    link = DeviceLink(
        settings,
        network=StaticNetworkInfoProvider(
            NetworkInfo(ssid="AEROSPIN CONTROL", ip_address="192.168.4.2", is_wifi_enabled=True)
        ),
        system_log=SystemLog(None),
        transport=httpx.MockTransport(device),
    )
    app = create_app(tmp_path / "config.json", link=link)
    with TestClient(app) as test_client:
        yield test_client


def test_connection_starts_idle(client: TestClient) -> None:
    response = client.get("/api/connection")

    assert response.status_code == 200
    payload = response.json()
    assert payload["detection_status"] == "idle"
    assert payload["connection_quality"] == "none"


def test_refresh_reports_connected(client: TestClient) -> None:
    response = client.post("/api/connection/refresh")

    assert response.status_code == 200
    payload = response.json()
    assert payload["connected"] is True
    assert payload["state"]["detection_status"] == "connected"
    assert payload["state"]["is_responding"] is True


def test_session_lifecycle_and_conflicts(client: TestClient) -> None:
    assert client.get("/api/session").json() == {"active": False, "session": None}
    assert client.post("/api/session/end").status_code == 409

    started = client.post("/api/session/start")
    assert started.status_code == 200
    assert started.json()["mode"] == "offline"
    assert client.post("/api/session/start").status_code == 409

    alert = client.post("/api/session/alerts", json={"kind": "info", "title": "X", "detail": "Y"})
    assert alert.json() == {"recorded": True}

    ended = client.post("/api/session/end")
    assert ended.status_code == 200
    titles = [event["title"] for event in ended.json()["events"]]
    assert titles == ["Session Started", "X", "Session Ended"]

    sessions = client.get("/api/sessions").json()["sessions"]
    assert [item["session_id"] for item in sessions] == [started.json()["session_id"]]
    assert client.post("/api/session/alerts", json={"title": "late"}).json() == {
        "recorded": False
    }


def test_control_requires_session_and_validates(client: TestClient, device: FakeDevice) -> None:
    assert client.post("/api/control", json={"speed": 10}).status_code == 409

    client.post("/api/connection/refresh")
    client.post("/api/session/start")
    device.requests.clear()

    bad = client.post("/api/control", json={"direction": "sideways"})
    assert bad.status_code == 400

    response = client.post("/api/control", json={"direction": "forward", "speed": 55})
    assert response.status_code == 200
    assert response.json() == {
        "direction": "forward",
        "brake": "none",
        "speed": 55,
        "session_active": True,
    }
    assert device.requests == ["/direction", "/speed"]
    assert client.get("/api/control").json()["speed"] == 55

    stopped = client.post("/api/control/emergency-stop").json()
    assert stopped["speed"] == 0
    assert stopped["direction"] == "none"


def test_diagnostics_log_and_config(client: TestClient) -> None:
    client.post("/api/connection/refresh")

    diagnostics = client.get("/api/diagnostics").json()
    assert diagnostics["connection"]["detection_status"] == "connected"
    assert diagnostics["probes"]["successes"] == 2
    assert diagnostics["scheduler"]["status"] == "connected"

    entries = client.get("/api/log", params={"category": "connectivity"}).json()["entries"]
    assert entries[0]["event"] == "connected"
    assert entries[-1]["event"] == "scheduler_started"

    config = client.get("/api/config").json()
    assert config["device"]["host"] == "192.168.4.1"
    assert config["scheduler"]["initial_delay_s"] == 60.0


def test_environment_overrides_apply_to_default_link(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("DEVICE_LINK_HOST", "10.9.8.7")
    monkeypatch.setenv("DEVICE_LINK_PROBE_TIMEOUT", "not-a-number")

    app = create_app(tmp_path / "config.json")
    client = TestClient(app)

    config = client.get("/api/config").json()
    assert config["device"]["host"] == "10.9.8.7"
    assert config["probe"]["timeout_s"] == 30.0


def test_non_integer_speed_is_a_bad_value(client: TestClient) -> None:
    client.post("/api/session/start")

    response = client.post("/api/control", json={"speed": 50.5})

    assert response.status_code == 400
    assert client.get("/api/control").json()["speed"] == 0


def test_online_session_is_announced_to_device(client: TestClient, device: FakeDevice) -> None:
    client.post("/api/connection/refresh")
    device.requests.clear()

    client.post("/api/session/start")
    client.post("/api/control", json={"brake": "push", "speed": 30})
    ended = client.post("/api/session/end")

    assert ended.status_code == 200
    assert device.requests == ["/startSession", "/status", "/brake", "/speed", "/endSession"]
    assert client.get("/api/control").json() == {
        "direction": "none",
        "brake": "none",
        "speed": 0,
        "session_active": False,
    }


def test_reset_and_status_sync_routes(client: TestClient, device: FakeDevice) -> None:
    client.post("/api/connection/refresh")
    client.post("/api/session/start")
    client.post("/api/control", json={"brake": "pull", "speed": 70})

    reset = client.post("/api/control/reset")
    assert reset.json() == {
        "direction": "none",
        "brake": "pull",
        "speed": 0,
        "session_active": False,
    }
    assert device.requests[-2:] == ["/endSession", "/reset"]

    synced = client.post("/api/control/sync").json()
    assert synced["synced"] is False
    assert device.requests[-1] == "/status"


def test_monitoring_can_be_paused_and_resumed(client: TestClient) -> None:
    paused = client.post("/api/connection/pause").json()
    assert paused == {"paused": True, "status": "paused", "next_check_in": None}

    resumed = client.post("/api/connection/resume").json()
    assert resumed["paused"] is False
    assert resumed["next_check_in"] == 60.0
