"""Normalize raw room and device records into a canonical alert state.

Backends in the field write the same concepts under different shapes: legacy
firmware only sets ``live_status.fall_detected`` (sometimes as the string
``"true"``), newer nodes report a per-device ``Status``/``status`` string, and
some rooms are written with camelCase keys. Every reader goes through the
helpers below; nothing else in the service looks at raw field names.
"""
from __future__ import annotations

import copy
import math
from typing import Any, Dict, Iterable, Mapping, Optional

from .config import monitor_config
from .schemas import DeviceKind, RoomAlertState

QUIET_STATUSES = frozenset({"normal", "online"})
UNASSIGNED = frozenset({"", "none", "unassigned"})

STATUS_KEYS = ("Status", "status")
LIVE_STATUS_KEYS = ("live_status", "liveStatus")
_PATIENT_INFO_KEYS = ("patient_info", "patientInfo")
FALL_KEYS = ("fall_detected", "fallDetected")
_ACK_KEYS = ("acknowledged",)
_ONLINE_KEYS = ("online",)
_LAST_SEEN_KEYS = ("lastSeen", "last_seen")
_ASSIGNED_KEYS = ("assignedRoom", "assigned_room")
_PATIENT_NAME_KEYS = ("patientName", "patient_name")

_MISSING = object()


def _first(record: Any, keys: Iterable[str], default: Any = _MISSING) -> Any:
    """Return the value of the first key present in ``record``."""
    if isinstance(record, Mapping):
        for key in keys:
            value = record.get(key)
            if value is not None:
                return value
    return None if default is _MISSING else default


def _mapping(value: Any) -> Mapping:
    return value if isinstance(value, Mapping) else {}


def coerce_bool(value: Any) -> bool:
    """Parse booleans that may have been stored as their string form.

    ``"true"``/``"false"`` in any case map to their boolean; anything else
    follows JavaScript truthiness so that empty strings, zero and missing
    values are false.
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    lowered = str(value).lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if isinstance(value, (int, float)):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    if isinstance(value, str):
        return value != ""
    return True


def device_status(device: Any) -> Optional[Any]:
    return _first(device, STATUS_KEYS)


def has_status(device: Any) -> bool:
    return device_status(device) is not None


def is_alarming(status: Any) -> bool:
    """Unknown statuses alarm; only empty, "normal" and "online" are quiet."""
    if status is None:
        return False
    text = str(status)
    if text == "":
        return False
    return text.lower() not in QUIET_STATUSES


def classify_device(name: str, device: Any) -> DeviceKind:
    record = _mapping(device)
    text = " ".join(
        str(part) for part in (record.get("model"), record.get("type"), name) if part
    ).upper()
    if name == monitor_config.auxiliary_device or "MOTION" in text or "RADAR" in text:
        return DeviceKind.AUXILIARY
    if "CAM" in text:
        return DeviceKind.CAMERA
    if "MONITOR" in text:
        return DeviceKind.MONITOR
    return DeviceKind.SENSOR


def is_significant(name: str, device: Any, auxiliary: Optional[str] = None) -> bool:
    """A device that can vouch for the room being online."""
    auxiliary = monitor_config.auxiliary_device if auxiliary is None else auxiliary
    if name == auxiliary or not isinstance(device, Mapping):
        return False
    if device.get("ip"):
        return True
    text = " ".join(str(part) for part in (device.get("model"), device.get("type"), name) if part)
    text = text.lower()
    return "cam" in text or "monitor" in text


def significant_devices(devices: Any, auxiliary: Optional[str] = None) -> Dict[str, Mapping]:
    return {
        name: device
        for name, device in _mapping(devices).items()
        if is_significant(name, device, auxiliary)
    }


def last_seen_ms(device: Any) -> Optional[float]:
    raw = _first(device, _LAST_SEEN_KEYS)
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def seen_recently(device: Any, now_ms: Optional[float], window_ms: Optional[int] = None) -> bool:
    """True unless the device reports a ``lastSeen`` older than the window."""
    if now_ms is None:
        return True
    seen = last_seen_ms(device)
    if seen is None:
        return True
    window_ms = monitor_config.device_online_window_ms if window_ms is None else window_ms
    return now_ms - seen < window_ms


def device_alive(device: Any, now_ms: Optional[float] = None) -> bool:
    status = device_status(device)
    if status is not None and str(status).lower() not in QUIET_STATUSES:
        return False
    return seen_recently(device, now_ms)


def live_status(room: Any) -> Mapping:
    return _mapping(_first(room, LIVE_STATUS_KEYS))


def room_devices(room: Any) -> Mapping:
    return _mapping(_mapping(room).get("devices"))


def patient_name(room: Any) -> Optional[str]:
    name = _first(_mapping(_first(room, _PATIENT_INFO_KEYS)), ("name",))
    if name:
        return str(name)
    for device in room_devices(room).values():
        name = _first(_mapping(_mapping(device).get("config")), _PATIENT_NAME_KEYS)
        if name:
            return str(name)
    return None


def assigned_room(device: Any) -> Optional[str]:
    room = _first(_mapping(_mapping(device).get("config")), _ASSIGNED_KEYS)
    if room is None or str(room).strip().lower() in UNASSIGNED:
        return None
    return str(room)


def compute_room_alert_state(
    room: Any,
    now_ms: Optional[float] = None,
    auxiliary: Optional[str] = None,
) -> RoomAlertState:
    """Derive the alert state of one room from its current snapshot.

    Rooms without significant devices fall back to the legacy
    ``live_status.online`` flag when it is present and count as online
    otherwise.
    """
    auxiliary = monitor_config.auxiliary_device if auxiliary is None else auxiliary
    status = live_status(room)
    devices = room_devices(room)

    legacy_fall = coerce_bool(_first(status, FALL_KEYS))
    acknowledged = coerce_bool(_first(status, _ACK_KEYS))

    significant = significant_devices(devices, auxiliary)
    if significant:
        online = any(device_alive(device, now_ms) for device in significant.values())
    else:
        legacy_online = _first(status, _ONLINE_KEYS)
        online = True if legacy_online is None else coerce_bool(legacy_online)

    device_fall = any(
        is_alarming(device_status(device))
        for name, device in devices.items()
        if name != auxiliary
    )

    return RoomAlertState(
        is_fall=device_fall or legacy_fall,
        is_offline=not online,
        is_acknowledged=acknowledged,
        has_devices=bool(devices),
    )


def attach_assigned_devices(wards: Any, device_tree: Any) -> Dict[str, Dict[str, Any]]:
    """Return a copy of ``wards`` with paired devices merged into their rooms.

    ``assignedRoom`` may name a bare room key, matched in every ward, or a
    ``ward/room`` path. Devices already present under the room keep the
    room's own record.
    """
    merged: Dict[str, Dict[str, Any]] = {
        ward: dict(_mapping(rooms)) for ward, rooms in _mapping(wards).items()
    }
    for device_id, device in _mapping(device_tree).items():
        target = assigned_room(device)
        if target is None:
            continue
        ward_key, _, room_key = target.rpartition("/")
        for ward, rooms in merged.items():
            if ward_key and ward != ward_key:
                continue
            if room_key not in rooms:
                continue
            room = copy.deepcopy(dict(_mapping(rooms[room_key])))
            devices = dict(_mapping(room.get("devices")))
            devices.setdefault(device_id, device)
            room["devices"] = devices
            rooms[room_key] = room
    return merged
