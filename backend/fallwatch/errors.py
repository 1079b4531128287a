"""Exceptions raised by the alarm core and translated at the HTTP boundary."""
from __future__ import annotations


class FallwatchError(Exception):
    """Base class for service errors."""


class BackendError(FallwatchError):
    """The realtime database could not be reached or rejected a request."""


class BackendWriteError(BackendError):
    """A write to the realtime database did not commit."""


class InvalidTransition(FallwatchError):
    def __init__(self, room: str, phase: str, action: str) -> None:
        super().__init__(f"Cannot {action} {room} while it is {phase.lower()}")
        self.room = room
        self.phase = phase
        self.action = action


class ChecklistIncomplete(FallwatchError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__("Resolution checklist incomplete: " + ", ".join(missing))
        self.missing = missing


class UnknownRoom(FallwatchError):
    pass


class UnknownDevice(FallwatchError):
    pass
