"""In-memory mirror of the backend trees plus dashboard stream listeners."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from .telemetry import attach_assigned_devices

logger = logging.getLogger(__name__)

TREES = ("wards", "devices")


def _split(path: str) -> List[str]:
    return [part for part in path.split("/") if part]


def apply_put(tree: Any, path: str, data: Any) -> Dict[str, Any]:
    """Firebase ``put``: replace the node at ``path``; ``None`` deletes it."""
    parts = _split(path)
    if not parts:
        return data if isinstance(data, dict) else {}
    root = tree if isinstance(tree, dict) else {}
    node = root
    for key in parts[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = node[key] = {}
        node = child
    if data is None:
        node.pop(parts[-1], None)
    else:
        node[parts[-1]] = data
    return root


def apply_patch(tree: Any, path: str, data: Any) -> Dict[str, Any]:
    """Firebase ``patch``: each child in ``data`` is put below ``path``."""
    if not isinstance(data, dict):
        return apply_put(tree, path, data)
    for key, value in data.items():
        tree = apply_put(tree, f"{path.rstrip('/')}/{key}", value)
    return tree if isinstance(tree, dict) else {}


class DataStore:
    """Last-known-good copy of the ``wards`` and ``devices`` trees.

    Kept when the backend becomes unreachable so the alarm keeps working on
    the data it has.
    """

    def __init__(self, max_queue: int = 256) -> None:
        self._trees: Dict[str, Dict[str, Any]] = {name: {} for name in TREES}
        self._listeners: list[asyncio.Queue[Dict[str, Any]]] = []
        self._max_queue = max_queue

    @property
    def wards(self) -> Dict[str, Any]:
        return self._trees["wards"]

    @property
    def devices(self) -> Dict[str, Any]:
        return self._trees["devices"]

    def replace(self, tree: str, data: Any) -> None:
        self._trees[tree] = data if isinstance(data, dict) else {}

    def apply_event(self, tree: str, event: str, path: str, data: Any) -> None:
        if event == "put":
            self._trees[tree] = apply_put(self._trees[tree], path, data)
        elif event == "patch":
            self._trees[tree] = apply_patch(self._trees[tree], path, data)
        else:
            logger.debug("Ignoring %s event for %s", event, tree)

    def apply_confirmed(self, updates: Dict[str, Any]) -> None:
        """Mirror a committed multi-path write, keys relative to the hospital root."""
        for path, value in updates.items():
            tree, _, rest = path.strip("/").partition("/")
            if tree in self._trees:
                self._trees[tree] = apply_put(self._trees[tree], rest, value)

    def rooms_view(self) -> Dict[str, Dict[str, Any]]:
        return attach_assigned_devices(self.wards, self.devices)

    def register_listener(self) -> asyncio.Queue[Dict[str, Any]]:
        queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=self._max_queue)
        self._listeners.append(queue)
        return queue

    def unregister_listener(self, queue: asyncio.Queue[Dict[str, Any]]) -> None:
        if queue in self._listeners:
            self._listeners.remove(queue)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def broadcast(self, message: Dict[str, Any]) -> None:
        for queue in list(self._listeners):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                # Slow client; it will resync from the next snapshot.
                logger.debug("Dropping dashboard event for a full listener queue")
