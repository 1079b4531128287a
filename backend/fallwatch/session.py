"""One dashboard session: the shared subscription, the alarm and the staff actions."""
from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from . import event_log
from .actions import ActionController, AlarmFlags, room_phase
from .aggregator import AlertAggregator, iter_rooms, room_label
from .alarm import AlarmPlayer, AudioOutput, ClipOutput, EventAudioOutput, alarm_should_sound
from .config import AlarmConfig, alarm_config
from .devices import DeviceRegistry
from .event_log import EventLogger
from .firebase import FirebaseClient
from .mqtt_client import MQTTBridge
from .schemas import AlarmStatus, AlertSummary, Notification, RoomAlertState, RoomSummary
from .store import DataStore
from .subscription import BackendSubscription
from .telemetry import patient_name

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


class MonitorSession:
    """Owns exactly one subscription and one alarm player.

    ``refresh()`` runs after every telemetry change and every staff action;
    the alarm decision is recomputed from current state each time.
    """

    def __init__(
        self,
        client: FirebaseClient,
        bridge: MQTTBridge,
        store: Optional[DataStore] = None,
        output: Optional[AudioOutput] = None,
        clip_output: Optional[ClipOutput] = None,
        config: AlarmConfig = alarm_config,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self._bridge = bridge
        self._config = config
        self._clock = clock
        self.store = store or DataStore()
        self.flags = AlarmFlags()
        self.aggregator = AlertAggregator()
        self.summary = AlertSummary()

        events = EventAudioOutput(self.store.broadcast)
        self.player = AlarmPlayer(
            output or events,
            clip_output or events,
            config,
            on_unlock=lambda ready: self.store.broadcast({"type": "audio", "ready": ready}),
        )
        self.event_log = EventLogger(client, analytics=bridge.count_event)
        self.actions = ActionController(client, self.store, self.flags, self.event_log, self.refresh)
        self.devices = DeviceRegistry(client, self.store, self.event_log, self.refresh)
        self.subscription = BackendSubscription(client, self.store, self.refresh)

    async def start(self) -> None:
        self.event_log.start()
        await self.subscription.start()

    def now_ms(self) -> float:
        return self._clock()

    def refresh(self) -> AlertSummary:
        rooms = self.store.rooms_view()
        summary = self.aggregator.evaluate(rooms, now_ms=self.now_ms())

        if summary.rearm:
            self.flags.rearm_generation += 1
        if summary.rearm or not summary.any_fall:
            self.flags.acknowledged = False

        for label in summary.new_falls:
            ward, _, room = label.partition("/")
            name = patient_name(rooms.get(ward, {}).get(room))
            self.event_log.record(
                event_log.FALL_DETECTED,
                f"Fall detected in {label}" + (f" ({name})" if name else ""),
                {"ward": ward, "room": room, "patient": name},
            )

        if summary.rising_edge or summary.rearm:
            self._escalate(summary, rooms)

        self.player.drive(
            alarm_should_sound(
                summary.unacknowledged_count > 0, self.flags.muted, self.flags.acknowledged
            )
        )
        self.summary = summary
        self.store.broadcast(
            {
                "type": "alerts",
                "summary": summary.model_dump(mode="json"),
                "connection": self.subscription.status.model_dump(mode="json"),
            }
        )
        return summary

    def _escalate(self, summary: AlertSummary, rooms) -> None:
        label = summary.label or (summary.new_falls[-1] if summary.new_falls else "unknown room")
        ward, _, room = label.partition("/")
        name = patient_name(rooms.get(ward, {}).get(room)) or "Unknown patient"
        try:
            self._bridge.vibrate(self._config.vibration_pattern)
            self._bridge.notify(
                Notification(
                    title="Fall detected",
                    body=f"{label}: {name} ({summary.unacknowledged_count} unacknowledged)",
                    tag=self._config.notification_tag,
                )
            )
        except Exception:  # noqa: BLE001 - escalation is best-effort
            logger.warning("Fall escalation failed", exc_info=True)

    def room_state(self, ward: str, room: str) -> RoomAlertState:
        return self.aggregator.states.get(room_label(ward, room), RoomAlertState())

    def rooms(self) -> List[RoomSummary]:
        summaries: List[RoomSummary] = []
        for ward, room, record in iter_rooms(self.store.rooms_view()):
            state = self.room_state(ward, room)
            summaries.append(
                RoomSummary(
                    ward=ward,
                    room=room,
                    label=room_label(ward, room),
                    patient_name=patient_name(record),
                    phase=room_phase(state),
                    state=state,
                )
            )
        return summaries

    def alarm_status(self) -> AlarmStatus:
        return AlarmStatus(
            unlock_state=self.player.unlock_state.value,
            playing=self.player.playing,
            path=self.player.path,
            muted=self.flags.muted,
            acknowledged=self.flags.acknowledged,
        )

    async def interaction(self) -> AlarmStatus:
        """First user gesture: unlock audio and ask for notification permission."""
        self._bridge.request_permission()
        if not self.player.unlocked:
            await self.player.unlock()
            if self.player.playing and self.player.path != "primary":
                # Move a running fallback clip over to the synthesized siren.
                self.player.stop()
            self.refresh()
        return self.alarm_status()

    async def close(self) -> None:
        """Release everything; each step runs even if an earlier one fails."""
        try:
            await self.subscription.stop()
        finally:
            try:
                self.player.stop()
            finally:
                try:
                    await self.player.dispose()
                finally:
                    await self.event_log.stop()
