"""Shared fakes for the backend, the MQTT bridge and the audio outputs."""
import asyncio
import copy

import numpy as np
import pytest

from fallwatch.alarm import AudioOutput, ClipOutput
from fallwatch.errors import BackendError, BackendWriteError
from fallwatch.store import apply_put


class FakeFirebase:
    """In-memory stand-in for the realtime database."""

    def __init__(self, tree=None, stream_events=None):
        self.tree = copy.deepcopy(tree) if tree else {"wards": {}, "devices": {}}
        self.updates = []
        self.puts = []
        self.pushes = []
        self.fail_writes = False
        self.fail_reads = False
        self.fail_push = False
        self.stream_events = stream_events or {}
        self.streamed = []

    @property
    def authenticated(self):
        return False

    async def sign_in_anonymously(self):
        return False

    def _node(self, path):
        node = self.tree
        for part in [p for p in path.split("/") if p]:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    async def get(self, path, **params):
        if self.fail_reads:
            raise BackendError(f"Could not read {path}")
        return self._node(path)

    async def update(self, path, patch):
        if self.fail_writes:
            raise BackendWriteError(f"Write to {path or '/'} failed")
        self.updates.append((path, dict(patch)))
        for key, value in patch.items():
            self.tree = apply_put(self.tree, f"{path}/{key}", copy.deepcopy(value))

    async def put(self, path, value):
        if self.fail_writes:
            raise BackendWriteError(f"Write to {path} failed")
        self.puts.append((path, value))
        self.tree = apply_put(self.tree, path, copy.deepcopy(value))

    async def push(self, path, value):
        if self.fail_writes or self.fail_push:
            raise BackendWriteError(f"Write to {path} failed")
        name = f"-N{len(self.pushes):04d}"
        self.pushes.append((path, value))
        self.tree = apply_put(self.tree, f"{path}/{name}", copy.deepcopy(value))
        return name

    async def stream(self, path):
        self.streamed.append(path)
        for event in self.stream_events.get(path, []):
            yield event
        await asyncio.Event().wait()

    async def aclose(self):
        pass

    def log_entries(self, type=None):
        entries = list((self.tree.get("logs") or {}).values())
        if type is not None:
            entries = [entry for entry in entries if entry["type"] == type]
        return entries


class FakeBridge:
    def __init__(self):
        self.notifications = []
        self.vibrations = []
        self.permission_requests = 0
        self.events = []

    def notify(self, notification):
        self.notifications.append(notification)
        return True

    def vibrate(self, pattern):
        self.vibrations.append(list(pattern))
        return True

    def request_permission(self):
        self.permission_requests += 1
        return True

    def count_event(self, event_type, meta=None):
        self.events.append(event_type)
        return True


class FakeAudio(AudioOutput, ClipOutput):
    def __init__(self, fail_resume=False, fail_buffer=False):
        self.fail_resume = fail_resume
        self.fail_buffer = fail_buffer
        self.calls = []
        self.buffers_played = 0
        self.clip = None
        self.clip_playing = False
        self.closed = 0

    async def resume(self):
        self.calls.append("resume")
        if self.fail_resume:
            raise RuntimeError("audio device busy")

    async def emit_silence(self, seconds):
        self.calls.append("silence")

    def play_buffer(self, samples, sample_rate):
        if self.fail_buffer:
            raise RuntimeError("synthesis failed")
        assert isinstance(samples, np.ndarray)
        self.buffers_played += 1

    async def close(self):
        self.closed += 1

    def load(self, wav, loop=True):
        self.clip = wav

    def play(self):
        self.calls.append("clip_play")
        self.clip_playing = True

    def pause(self):
        self.calls.append("clip_pause")
        self.clip_playing = False

    def rewind(self):
        self.calls.append("clip_rewind")

    def release(self):
        self.clip = None


def make_room(status=None, fall=False, acknowledged=False, name="Somchai", extra_devices=None):
    devices = {"ESP32_S3_CAM": {"model": "ESP32-S3-CAM", "ip": "10.0.0.21"}}
    if status is not None:
        devices["ESP32_S3_CAM"]["Status"] = status
    devices.update(extra_devices or {})
    return {
        "patient_info": {"name": name},
        "live_status": {"fall_detected": fall, "acknowledged": acknowledged, "online": True},
        "devices": devices,
    }


@pytest.fixture
def fake_bridge():
    return FakeBridge()


@pytest.fixture
def fake_audio():
    return FakeAudio()
