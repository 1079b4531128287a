"""Staff-driven acknowledge and resolve transitions.

Per room: NORMAL -> EMERGENCY (fall, unacknowledged) -> WAITING
(acknowledged) -> NORMAL (resolved). Every write goes to the backend first;
the local mirror only changes once the backend has accepted it, so a failed
write can never show a room as acknowledged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Tuple

from . import event_log
from .aggregator import iter_rooms, room_label
from .errors import ChecklistIncomplete, InvalidTransition, UnknownRoom
from .event_log import EventLogger
from .firebase import FirebaseClient
from .schemas import ResolveRequest, RoomAlertState, RoomPhase
from .store import DataStore
from .telemetry import (
    FALL_KEYS,
    LIVE_STATUS_KEYS,
    STATUS_KEYS,
    assigned_room,
    compute_room_alert_state,
)

logger = logging.getLogger(__name__)

BASELINE_STATUS = "Normal"
DETECTION_FLAGS = ("fall_detected", "fallDetected", "person_detected", "personDetected", "detected")
MOTION_COUNTS = ("motion_count", "motionCount")


def room_phase(state: RoomAlertState) -> RoomPhase:
    if not state.is_fall:
        return RoomPhase.NORMAL
    if state.is_acknowledged:
        return RoomPhase.WAITING
    return RoomPhase.EMERGENCY


@dataclass
class AlarmFlags:
    """Session-wide alarm switches, independent of any single room."""

    muted: bool = False
    acknowledged: bool = False
    # Bumped on every re-arm; an acknowledgement started before a re-arm must not silence it.
    rearm_generation: int = 0


def _live_status_keys(room: Any) -> Tuple[str, str]:
    record = room if isinstance(room, Mapping) else {}
    status_key = next((key for key in LIVE_STATUS_KEYS if key in record), LIVE_STATUS_KEYS[0])
    status = record.get(status_key)
    status = status if isinstance(status, Mapping) else {}
    fall_key = next((key for key in FALL_KEYS if key in status), FALL_KEYS[0])
    return status_key, fall_key


def device_resets(prefix: str, device: Any) -> Dict[str, Any]:
    """Alarm fields of one device put back to their quiet baseline.

    Only fields the device actually carries are touched.
    """
    if not isinstance(device, Mapping):
        return {}
    resets: Dict[str, Any] = {}
    for key in STATUS_KEYS:
        if device.get(key) is not None:
            resets[f"{prefix}/{key}"] = BASELINE_STATUS
    for key in DETECTION_FLAGS:
        if key in device:
            resets[f"{prefix}/{key}"] = False
    for key in MOTION_COUNTS:
        if key in device:
            resets[f"{prefix}/{key}"] = 0
    return resets


class ActionController:
    def __init__(
        self,
        client: FirebaseClient,
        store: DataStore,
        flags: AlarmFlags,
        log: EventLogger,
        on_change: Callable[[], object],
    ) -> None:
        self._client = client
        self._store = store
        self._flags = flags
        self._log = log
        self._on_change = on_change

    def _room(self, ward: str, room: str) -> Any:
        rooms = self._store.rooms_view().get(ward)
        if not isinstance(rooms, Mapping) or room not in rooms:
            raise UnknownRoom(f"No room {room_label(ward, room)}")
        return rooms[room]

    def phase(self, ward: str, room: str) -> RoomPhase:
        return room_phase(compute_room_alert_state(self._room(ward, room)))

    async def _commit(self, updates: Dict[str, Any]) -> None:
        # Multi-path PATCH at the hospital root commits all keys or none.
        await self._client.update("", updates)
        self._store.apply_confirmed(updates)

    def _set_acknowledged(self, generation: int) -> None:
        if self._flags.rearm_generation == generation:
            self._flags.acknowledged = True
        else:
            logger.info("New fall arrived while acknowledging; alarm stays armed")

    def _ack_path(self, ward: str, room: str) -> str:
        status_key, _ = _live_status_keys(self._store.wards.get(ward, {}).get(room))
        return f"wards/{ward}/{room}/{status_key}/acknowledged"

    async def acknowledge(self, ward: str, room: str) -> bool:
        """Returns False when the room was already acknowledged."""
        phase = self.phase(ward, room)
        if phase is RoomPhase.WAITING:
            return False
        if phase is not RoomPhase.EMERGENCY:
            raise InvalidTransition(room_label(ward, room), phase.value, "acknowledge")

        generation = self._flags.rearm_generation
        await self._commit({self._ack_path(ward, room): True})
        self._set_acknowledged(generation)
        label = room_label(ward, room)
        self._log.record(
            event_log.ACKNOWLEDGED,
            f"Fall in {label} acknowledged",
            {"ward": ward, "room": room, "rooms": [label]},
        )
        self._on_change()
        return True

    async def acknowledge_all(self) -> List[str]:
        pending = [
            (ward, room)
            for ward, room, record in iter_rooms(self._store.rooms_view())
            if room_phase(compute_room_alert_state(record)) is RoomPhase.EMERGENCY
        ]
        if not pending:
            return []

        generation = self._flags.rearm_generation
        await self._commit({self._ack_path(ward, room): True for ward, room in pending})
        self._set_acknowledged(generation)
        labels = [room_label(ward, room) for ward, room in pending]
        self._log.record(
            event_log.ACKNOWLEDGED,
            f"{len(labels)} fall alert(s) acknowledged: {', '.join(labels)}",
            {"rooms": labels},
        )
        self._on_change()
        return labels

    def resolution_updates(self, ward: str, room: str) -> Dict[str, Any]:
        raw_room = self._store.wards.get(ward, {}).get(room)
        status_key, fall_key = _live_status_keys(raw_room)
        base = f"wards/{ward}/{room}"
        updates: Dict[str, Any] = {
            f"{base}/{status_key}/{fall_key}": False,
            f"{base}/{status_key}/acknowledged": False,
        }
        own_devices = raw_room.get("devices") if isinstance(raw_room, Mapping) else None
        if isinstance(own_devices, Mapping):
            for name, device in own_devices.items():
                updates.update(device_resets(f"{base}/devices/{name}", device))
        for device_id, device in self._store.devices.items():
            target = assigned_room(device)
            if target in (room, room_label(ward, room)):
                updates.update(device_resets(f"devices/{device_id}", device))
        return updates

    async def resolve(self, ward: str, room: str, request: ResolveRequest) -> bool:
        """Close an acknowledged incident; returns False when staff cancelled."""
        if not request.confirmed:
            logger.info("Resolution of %s cancelled", room_label(ward, room))
            return False
        phase = self.phase(ward, room)
        if phase is not RoomPhase.WAITING:
            raise InvalidTransition(room_label(ward, room), phase.value, "resolve")
        missing = request.checklist.missing()
        if missing:
            raise ChecklistIncomplete(missing)

        await self._commit(self.resolution_updates(ward, room))
        label = room_label(ward, room)
        self._log.record(
            event_log.RESOLVED,
            f"Incident in {label} resolved",
            {"ward": ward, "room": room, "checklist": request.checklist.model_dump()},
        )
        self._on_change()
        return True

    def set_muted(self, muted: bool) -> bool:
        if self._flags.muted == muted:
            return False
        self._flags.muted = muted
        if muted:
            self._log.record(event_log.MUTE, "Alarm muted")
        else:
            self._log.record(event_log.UNMUTE, "Alarm unmuted")
        self._on_change()
        return True
