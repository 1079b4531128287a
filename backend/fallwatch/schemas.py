"""Pydantic schemas shared between the API, the alarm core and the backend client."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RoomAlertState(BaseModel):
    """Canonical per-room alert state derived from a telemetry snapshot."""

    model_config = ConfigDict(frozen=True)

    is_fall: bool = False
    is_offline: bool = False
    is_acknowledged: bool = False
    has_devices: bool = False


class RoomPhase(str, Enum):
    NORMAL = "NORMAL"
    EMERGENCY = "EMERGENCY"
    WAITING = "WAITING"


class RoomSummary(BaseModel):
    ward: str
    room: str
    label: str
    patient_name: Optional[str] = None
    phase: RoomPhase
    state: RoomAlertState


class AlertSummary(BaseModel):
    any_fall: bool = False
    unacknowledged_count: int = 0
    label: Optional[str] = Field(None, description="Most recently detected unacknowledged room")
    rearm: bool = Field(False, description="A new unacknowledged incident appeared")
    rising_edge: bool = Field(False, description="anyFall went from false to true")
    new_falls: List[str] = Field(default_factory=list)
    cleared: List[str] = Field(default_factory=list)


class LogEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    message: str
    meta: Dict[str, Any] = Field(default_factory=dict)
    timestamp_ms: int = Field(..., alias="timestampMs")
    iso_time: str = Field(..., alias="isoTime")

    @classmethod
    def create(
        cls,
        type: str,
        message: str,
        meta: Optional[Dict[str, Any]] = None,
        not_before_ms: int = 0,
    ) -> "LogEntry":
        """Stamp a new entry; ``not_before_ms`` keeps timestamps strictly increasing."""
        now = datetime.now(timezone.utc)
        timestamp_ms = int(now.timestamp() * 1000)
        if timestamp_ms < not_before_ms:
            timestamp_ms = not_before_ms
            now = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
        return cls(
            type=type,
            message=message,
            meta=meta or {},
            timestamp_ms=timestamp_ms,
            iso_time=now.isoformat(),
        )

    def to_backend(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Notification(BaseModel):
    title: str
    body: str
    tag: str = Field(..., description="De-duplication tag; repeated alerts replace each other")
    require_interaction: bool = True
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class VibrationCommand(BaseModel):
    pattern: List[int]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ResolveChecklist(BaseModel):
    """Staff confirmation gate before an incident is closed."""

    patient_assessed: bool = False
    area_cleared: bool = False
    devices_checked: bool = False

    def missing(self) -> List[str]:
        return [name for name, ticked in self.model_dump().items() if not ticked]


class ResolveRequest(BaseModel):
    confirmed: bool = Field(True, description="False cancels the resolution without writing")
    checklist: ResolveChecklist = Field(default_factory=ResolveChecklist)


class AssignDeviceRequest(BaseModel):
    room: Optional[str] = Field(None, description="Room key, or null to unpair the device")
    patient_name: Optional[str] = None


class DeviceKind(str, Enum):
    CAMERA = "camera"
    MONITOR = "monitor"
    AUXILIARY = "auxiliary"
    SENSOR = "sensor"


class DeviceInfo(BaseModel):
    id: str
    model: Optional[str] = None
    kind: DeviceKind
    status: Optional[str] = None
    alarming: bool = False
    online: bool = False
    ip: Optional[str] = None
    mac: Optional[str] = None
    assigned_room: Optional[str] = None
    patient_name: Optional[str] = None
    link: Optional[str] = None


class ConnectionStatus(BaseModel):
    connected: bool = False
    mode: str = Field("connecting", description="stream, polling or connecting")
    authenticated: bool = False
    error: Optional[str] = None


class AlarmStatus(BaseModel):
    unlock_state: str
    playing: bool
    path: Optional[str] = None
    muted: bool = False
    acknowledged: bool = False
