"""System-wide alert derivation with edge detection."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from .schemas import AlertSummary, RoomAlertState
from .telemetry import compute_room_alert_state

logger = logging.getLogger(__name__)


def room_label(ward: str, room: str) -> str:
    return f"{ward}/{room}"


def iter_rooms(wards: Any) -> Iterator[Tuple[str, str, Any]]:
    if not isinstance(wards, Mapping):
        return
    for ward, rooms in wards.items():
        if not isinstance(rooms, Mapping):
            continue
        for room, record in rooms.items():
            yield ward, room, record


class AlertAggregator:
    """Scans every room on each telemetry change.

    Owns the two pieces of memory the alarm needs across evaluations: the
    previous unacknowledged count (for re-arming) and the set of rooms
    already known to be in a fall state (for one-shot logging). Both reset
    with the process.
    """

    def __init__(self) -> None:
        self.previous_unacknowledged = 0
        self.previous_any_fall = False
        self.fall_seen: Set[str] = set()
        self.label: Optional[str] = None
        self.states: Dict[str, RoomAlertState] = {}

    def evaluate(self, wards: Any, now_ms: Optional[float] = None) -> AlertSummary:
        states: Dict[str, RoomAlertState] = {}
        for ward, room, record in iter_rooms(wards):
            states[room_label(ward, room)] = compute_room_alert_state(record, now_ms=now_ms)

        any_fall = any(state.is_fall for state in states.values())
        unacknowledged = [
            label for label, state in states.items() if state.is_fall and not state.is_acknowledged
        ]

        new_falls: List[str] = []
        cleared: List[str] = []
        for label, state in states.items():
            if state.is_fall and label not in self.fall_seen:
                self.fall_seen.add(label)
                new_falls.append(label)
        for label in sorted(self.fall_seen):
            state = states.get(label)
            if state is None or not state.is_fall:
                self.fall_seen.discard(label)
                cleared.append(label)

        rearm = len(unacknowledged) > self.previous_unacknowledged
        rising_edge = any_fall and not self.previous_any_fall

        fresh = [label for label in new_falls if label in unacknowledged]
        if fresh:
            self.label = fresh[-1]
        elif self.label not in unacknowledged:
            self.label = unacknowledged[0] if unacknowledged else None

        if rearm:
            logger.info(
                "Unacknowledged falls rose %d -> %d", self.previous_unacknowledged, len(unacknowledged)
            )

        self.previous_unacknowledged = len(unacknowledged)
        self.previous_any_fall = any_fall
        self.states = states

        return AlertSummary(
            any_fall=any_fall,
            unacknowledged_count=len(unacknowledged),
            label=self.label,
            rearm=rearm,
            rising_edge=rising_edge,
            new_falls=new_falls,
            cleared=cleared,
        )
