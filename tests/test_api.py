"""HTTP surface tests using FastAPI's TestClient with an injected session."""
import pytest
from fastapi.testclient import TestClient

from fallwatch.config import AlarmConfig
from fallwatch.main import create_app
from fallwatch.session import MonitorSession

from conftest import FakeAudio, FakeBridge, FakeFirebase, make_room

CHECKLIST = {"patient_assessed": True, "area_cleared": True, "devices_checked": True}


@pytest.fixture
def backend():
    return FakeFirebase(
        {
            "wards": {
                "ward_A": {
                    "room_301": make_room(status="Fall Down"),
                    "room_302": make_room(status="Normal"),
                    "room_303": make_room(status="Fall Down", acknowledged=True),
                }
            },
            "devices": {"CAM_09": {"model": "ESP32-S3-CAM", "ip": "10.0.0.99"}},
            "logs": {
                "-N1": {"type": "MUTE", "message": "Alarm muted", "timestampMs": 1, "isoTime": "t1"},
                "-N2": {"type": "UNMUTE", "message": "Alarm unmuted", "timestampMs": 2, "isoTime": "t2"},
            },
        }
    )


@pytest.fixture
def client(backend):
    audio = FakeAudio()
    session = MonitorSession(backend, FakeBridge(), output=audio, clip_output=audio, config=AlarmConfig())
    with TestClient(create_app(session)) as test_client:
        yield test_client


class TestReadEndpoints:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_rooms_and_alerts(self, client):
        rooms = {room["label"]: room for room in client.get("/rooms").json()}
        assert rooms["ward_A/room_301"]["phase"] == "EMERGENCY"
        assert rooms["ward_A/room_302"]["phase"] == "NORMAL"
        assert rooms["ward_A/room_303"]["phase"] == "WAITING"
        assert rooms["ward_A/room_301"]["patient_name"] == "Somchai"

        alerts = client.get("/alerts").json()
        assert alerts["any_fall"] is True
        assert alerts["unacknowledged_count"] == 1
        assert alerts["label"] == "ward_A/room_301"

    def test_status_reports_alarm_and_connection(self, client):
        status = client.get("/status").json()
        assert status["alarm"]["playing"] is True
        assert status["alarm"]["unlock_state"] == "LOCKED"
        assert status["connection"]["connected"] is True

    def test_alarm_clip(self, client):
        response = client.get("/alarm/clip.wav")
        assert response.status_code == 200
        assert response.headers["content-type"] == "audio/wav"
        assert response.content[:4] == b"RIFF"

    def test_logs_newest_first(self, client):
        entries = client.get("/logs", params={"limit": 5}).json()
        # The session may already have logged its own fall; only the seeded entries are checked.
        seeded = [entry["type"] for entry in entries if entry["type"] in ("MUTE", "UNMUTE")]
        assert seeded == ["UNMUTE", "MUTE"]
        assert all("timestampMs" in entry for entry in entries)

    def test_devices(self, client):
        devices = client.get("/devices").json()
        assert devices[0]["id"] == "CAM_09"
        assert devices[0]["link"] == "http://10.0.0.99/"
        assert [d["id"] for d in client.get("/devices/pending").json()] == ["CAM_09"]


class TestActionEndpoints:
    def test_acknowledge(self, client, backend):
        response = client.post("/rooms/ward_A/room_301/acknowledge")
        assert response.json() == {"acknowledged": True, "changed": True}
        assert client.get("/alerts").json()["unacknowledged_count"] == 0
        assert client.get("/status").json()["alarm"]["playing"] is False

        again = client.post("/rooms/ward_A/room_301/acknowledge")
        assert again.json()["changed"] is False

    def test_acknowledge_errors(self, client):
        assert client.post("/rooms/ward_A/room_302/acknowledge").status_code == 409
        assert client.post("/rooms/ward_A/room_999/acknowledge").status_code == 404

    def test_failed_write_is_reported(self, client, backend):
        backend.fail_writes = True
        response = client.post("/acknowledge-all")
        assert response.status_code == 502
        assert "not saved" in response.json()["detail"]
        assert client.get("/alerts").json()["unacknowledged_count"] == 1

    def test_acknowledge_all(self, client):
        assert client.post("/acknowledge-all").json() == {"acknowledged": ["ward_A/room_301"]}

    def test_resolve(self, client):
        incomplete = client.post(
            "/rooms/ward_A/room_303/resolve", json={"checklist": {"patient_assessed": True}}
        )
        assert incomplete.status_code == 400

        cancelled = client.post("/rooms/ward_A/room_303/resolve", json={"confirmed": False})
        assert cancelled.json() == {"resolved": False}

        not_waiting = client.post("/rooms/ward_A/room_301/resolve", json={"checklist": CHECKLIST})
        assert not_waiting.status_code == 409

        done = client.post("/rooms/ward_A/room_303/resolve", json={"checklist": CHECKLIST})
        assert done.json() == {"resolved": True}
        rooms = {room["label"]: room for room in client.get("/rooms").json()}
        assert rooms["ward_A/room_303"]["phase"] == "NORMAL"

    def test_mute_and_unmute(self, client):
        muted = client.post("/alarm/mute").json()
        assert muted["muted"] is True
        assert muted["playing"] is False
        unmuted = client.post("/alarm/unmute").json()
        assert unmuted["muted"] is False
        assert unmuted["playing"] is True

    def test_interaction_unlocks_audio(self, client):
        status = client.post("/interaction").json()
        assert status["unlock_state"] == "UNLOCKED"
        assert status["path"] == "primary"

    def test_assign_device(self, client):
        response = client.post("/devices/CAM_09/assign", json={"room": "room_302", "patient_name": "Malee"})
        assert response.status_code == 200
        assert response.json()["assigned_room"] == "room_302"
        assert client.get("/devices/pending").json() == []
        assert client.post("/devices/GHOST/assign", json={"room": "room_302"}).status_code == 404
