"""Best-effort audit trail of alarm state transitions."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from .aggregator import room_label
from .config import firebase_config
from .firebase import FirebaseClient
from .schemas import LogEntry

logger = logging.getLogger(__name__)

FALL_DETECTED = "FALL_DETECTED"
ACKNOWLEDGED = "ACKNOWLEDGED"
RESOLVED = "RESOLVED"
MUTE = "MUTE"
UNMUTE = "UNMUTE"
DEVICE_ASSIGNED = "DEVICE_ASSIGNED"
DEVICE_UNASSIGNED = "DEVICE_UNASSIGNED"


def _room_key(meta: Dict[str, Any]) -> Any:
    room = meta.get("room")
    ward = meta.get("ward")
    return room_label(ward, room) if ward and room else room


class EventLogger:
    """Queues entries and writes them from a background worker.

    Each entry goes to the durable ``logs`` list, the ``live_feed`` mirror
    keyed by timestamp and the analytics counter. The three writes are
    independent; a failure in one is logged and the others still run.
    Delivery is at-least-once.
    """

    def __init__(
        self,
        client: FirebaseClient,
        analytics: Optional[Callable[[str, Dict[str, Any]], object]] = None,
    ) -> None:
        self._client = client
        self._analytics = analytics
        self._queue: asyncio.Queue[LogEntry] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._last_ms = 0

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def record(self, type: str, message: str, meta: Optional[Dict[str, Any]] = None) -> LogEntry:
        # live_feed is keyed by timestamp, so two entries never share one.
        entry = LogEntry.create(type, message, meta, not_before_ms=self._last_ms + 1)
        self._last_ms = entry.timestamp_ms
        logger.info("%s: %s", type, message)
        self._queue.put_nowait(entry)
        try:
            self.start()
        except RuntimeError:
            # No loop yet; the entry waits for start().
            pass
        return entry

    async def _run(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self._write(entry)
            finally:
                self._queue.task_done()

    async def _write(self, entry: LogEntry) -> None:
        data = entry.to_backend()
        try:
            await self._client.push("logs", data)
        except Exception as exc:  # noqa: BLE001 - logging must never fail the caller
            logger.warning("Could not store %s log entry: %s", entry.type, exc)
        try:
            await self._client.put(f"live_feed/{entry.timestamp_ms}", data)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not mirror %s log entry to the live feed: %s", entry.type, exc)
        if self._analytics is not None:
            try:
                self._analytics(entry.type, entry.meta)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Analytics event %s failed: %s", entry.type, exc)

    async def flush(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        task, self._worker = self._worker, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def recent(self, limit: Optional[int] = None) -> List[LogEntry]:
        """Newest entries first, read from the durable store."""
        limit = limit or firebase_config.log_limit
        raw = await self._client.get("logs", orderBy='"$key"', limitToLast=limit)
        entries: List[LogEntry] = []
        seen: Set[Tuple[str, int, Any]] = set()
        values = raw.values() if isinstance(raw, dict) else []
        for value in values:
            try:
                entry = LogEntry.model_validate(value)
            except ValidationError:
                logger.debug("Skipping malformed log entry: %r", value)
                continue
            key = (entry.type, entry.timestamp_ms, _room_key(entry.meta))
            if key in seen:
                continue
            seen.add(key)
            entries.append(entry)
        entries.sort(key=lambda entry: entry.timestamp_ms, reverse=True)
        return entries[:limit]
