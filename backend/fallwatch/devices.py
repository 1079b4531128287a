"""Device listing and room pairing for the operator view."""
from __future__ import annotations

import logging
from typing import Any, Callable, List, Mapping, Optional

from . import event_log
from .aggregator import iter_rooms
from .errors import UnknownDevice, UnknownRoom
from .event_log import EventLogger
from .firebase import FirebaseClient
from .schemas import AssignDeviceRequest, DeviceInfo
from .store import DataStore
from .telemetry import (
    assigned_room,
    classify_device,
    device_status,
    is_alarming,
    seen_recently,
)

logger = logging.getLogger(__name__)


def describe_device(device_id: str, device: Any, now_ms: Optional[float]) -> DeviceInfo:
    record = device if isinstance(device, Mapping) else {}
    config = record.get("config") if isinstance(record.get("config"), Mapping) else {}
    status = device_status(record)
    ip = record.get("ip") or None
    has_heartbeat = any(key in record for key in ("lastSeen", "last_seen"))
    return DeviceInfo(
        id=device_id,
        model=record.get("model") or record.get("type"),
        kind=classify_device(device_id, record),
        status=None if status is None else str(status),
        alarming=is_alarming(status),
        online=has_heartbeat and seen_recently(record, now_ms),
        ip=ip,
        mac=record.get("mac") or None,
        assigned_room=assigned_room(record),
        patient_name=config.get("patientName") or config.get("patient_name"),
        link=f"http://{ip}/" if ip else None,
    )


class DeviceRegistry:
    def __init__(
        self,
        client: FirebaseClient,
        store: DataStore,
        log: EventLogger,
        on_change: Callable[[], object],
    ) -> None:
        self._client = client
        self._store = store
        self._log = log
        self._on_change = on_change

    def list(self, now_ms: Optional[float] = None) -> List[DeviceInfo]:
        return [
            describe_device(device_id, device, now_ms)
            for device_id, device in sorted(self._store.devices.items())
        ]

    def pending(self, now_ms: Optional[float] = None) -> List[DeviceInfo]:
        return [info for info in self.list(now_ms) if info.assigned_room is None]

    def _known_room(self, target: str) -> bool:
        ward_key, _, room_key = target.rpartition("/")
        return any(
            room == room_key and (not ward_key or ward == ward_key)
            for ward, room, _ in iter_rooms(self._store.wards)
        )

    async def assign(self, device_id: str, request: AssignDeviceRequest) -> DeviceInfo:
        if device_id not in self._store.devices:
            raise UnknownDevice(f"No device {device_id}")
        if request.room and not self._known_room(request.room):
            raise UnknownRoom(f"No room {request.room}")

        config = {"assignedRoom": request.room or "none"}
        if request.patient_name is not None:
            config["patientName"] = request.patient_name
        updates = {f"devices/{device_id}/config/{key}": value for key, value in config.items()}
        await self._client.update("", updates)
        self._store.apply_confirmed(updates)

        if request.room:
            self._log.record(
                event_log.DEVICE_ASSIGNED,
                f"Device {device_id} paired with {request.room}",
                {"device": device_id, "room": request.room},
            )
        else:
            self._log.record(
                event_log.DEVICE_UNASSIGNED,
                f"Device {device_id} unpaired",
                {"device": device_id},
            )
        self._on_change()
        return describe_device(device_id, self._store.devices[device_id], None)
