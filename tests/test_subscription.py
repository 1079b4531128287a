"""Tests for the backend subscription and its polling fallback."""
import asyncio

from fallwatch.config import MonitorConfig
from fallwatch.store import DataStore
from fallwatch.subscription import BackendSubscription

from conftest import FakeFirebase, make_room

FAST = MonitorConfig(polling_interval_s=0.01, reconnect_delay_s=10.0)


def run_for(subscription, seconds=0.05):
    async def scenario():
        await subscription.start()
        await asyncio.sleep(seconds)
        status = subscription.status.model_copy()
        await subscription.stop()
        return status

    return asyncio.run(scenario())


class TestBackendSubscription:
    def test_initial_load_and_stream_events(self):
        put = ("put", {"path": "/ward_A/room_301/devices/ESP32_S3_CAM/Status", "data": "Fall Down"})
        backend = FakeFirebase(
            {"wards": {"ward_A": {"room_301": make_room(status="Normal")}}, "devices": {}},
            stream_events={"wards": [put], "devices": [("keep-alive", None)]},
        )
        store = DataStore()
        changes = []
        subscription = BackendSubscription(backend, store, lambda: changes.append(1), FAST)

        status = run_for(subscription)
        assert store.wards["ward_A"]["room_301"]["devices"]["ESP32_S3_CAM"]["Status"] == "Fall Down"
        assert status.connected
        assert status.mode == "stream"
        assert status.error is None
        assert sorted(backend.streamed) == ["devices", "wards"]
        # One for the initial load, one for the put.
        assert len(changes) == 2

    def test_cancel_falls_back_to_polling(self):
        backend = FakeFirebase(
            {"wards": {"ward_A": {}}, "devices": {}},
            stream_events={"wards": [("cancel", None)]},
        )
        store = DataStore()
        subscription = BackendSubscription(backend, store, lambda: None, FAST)

        status = run_for(subscription)
        assert status.mode == "polling"
        assert "cancelled" in status.error

    def test_auth_revoked_reports_credentials(self):
        backend = FakeFirebase(stream_events={"devices": [("auth_revoked", None)]})
        subscription = BackendSubscription(backend, DataStore(), lambda: None, FAST)
        status = run_for(subscription)
        assert "revoked" in status.error

    def test_read_failure_keeps_last_good_data(self):
        backend = FakeFirebase({"wards": {"ward_A": {"room_301": {}}}, "devices": {}})
        store = DataStore()
        subscription = BackendSubscription(backend, store, lambda: None, FAST)

        async def scenario():
            assert await subscription.refresh()
            backend.fail_reads = True
            assert not await subscription.refresh()

        asyncio.run(scenario())
        assert store.wards == {"ward_A": {"room_301": {}}}
        assert not subscription.status.connected
        assert "Could not read" in subscription.status.error

    def test_stop_cancels_every_task(self):
        backend = FakeFirebase(stream_events={"wards": [("cancel", None)]})
        subscription = BackendSubscription(backend, DataStore(), lambda: None, FAST)

        async def scenario():
            await subscription.start()
            await asyncio.sleep(0.02)
            tasks = list(subscription._streams.values()) + [subscription._polling]
            await subscription.stop()
            return tasks

        tasks = asyncio.run(scenario())
        assert all(task.done() for task in tasks)

    def test_polling_continues_until_every_stream_is_back(self):
        backend = FakeFirebase(stream_events={"devices": [("cancel", None)]})
        subscription = BackendSubscription(backend, DataStore(), lambda: None, FAST)

        async def scenario():
            await subscription.start()
            await asyncio.sleep(0.02)
            subscription._handle("wards", "keep-alive", None)
            polling_after_wards = subscription._polling is not None and not subscription._polling.done()
            mode_after_wards = subscription.status.mode
            subscription._handle("devices", "keep-alive", None)
            polling_after_devices = subscription._polling
            mode_after_devices = subscription.status.mode
            await subscription.stop()
            return polling_after_wards, mode_after_wards, polling_after_devices, mode_after_devices

        polling_after_wards, mode_after_wards, polling_after_devices, mode_after_devices = asyncio.run(scenario())
        assert polling_after_wards
        assert mode_after_wards == "polling"
        assert polling_after_devices is None
        assert mode_after_devices == "stream"
