"""The session's single live subscription to the backend trees."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional, Set

from .config import MonitorConfig, monitor_config
from .errors import BackendError
from .firebase import FirebaseClient
from .schemas import ConnectionStatus
from .store import TREES, DataStore

logger = logging.getLogger(__name__)


class StreamClosed(Exception):
    """The server ended the stream (cancel, auth_revoked or EOF)."""


class BackendSubscription:
    """Streams ``wards`` and ``devices`` into the store.

    While a stream is down the trees are polled on a short interval and the
    stream is retried after a longer delay. Rendering keeps the last good data.
    """

    def __init__(
        self,
        client: FirebaseClient,
        store: DataStore,
        on_change: Callable[[], object],
        config: MonitorConfig = monitor_config,
    ) -> None:
        self._client = client
        self._store = store
        self._on_change = on_change
        self._config = config
        self._streams: Dict[str, asyncio.Task] = {}
        self._polling: Optional[asyncio.Task] = None
        self._live: Set[str] = set()
        self.status = ConnectionStatus()

    async def start(self) -> None:
        self.status.authenticated = await self._client.sign_in_anonymously()
        await self.refresh()
        loop = asyncio.get_running_loop()
        for tree in TREES:
            if tree not in self._streams:
                self._streams[tree] = loop.create_task(self._run_stream(tree))

    async def refresh(self) -> bool:
        """Fetch both trees in full; used at start-up and while polling."""
        try:
            trees = {tree: await self._client.get(tree) for tree in TREES}
        except BackendError as exc:
            self._mark_down(str(exc))
            return False
        for tree, data in trees.items():
            self._store.replace(tree, data)
        self.status.connected = True
        if self.status.mode == "connecting":
            self.status.mode = "polling"
        self._on_change()
        return True

    async def _run_stream(self, tree: str) -> None:
        while True:
            try:
                async for event, payload in self._client.stream(tree):
                    self._handle(tree, event, payload)
                raise StreamClosed(f"{tree} stream ended")
            except asyncio.CancelledError:
                raise
            except StreamClosed as exc:
                self._mark_down(self.status.error or str(exc), tree)
            except BackendError as exc:
                self._mark_down(str(exc), tree)
            self._start_polling()
            await asyncio.sleep(self._config.reconnect_delay_s)
            logger.info("Retrying %s stream", tree)

    def _handle(self, tree: str, event: str, payload: object) -> None:
        if event in ("put", "patch"):
            if not isinstance(payload, dict):
                logger.warning("Ignoring %s event without a body on %s", event, tree)
                return
            self._store.apply_event(tree, event, payload.get("path", "/"), payload.get("data"))
            self._mark_up(tree)
            self._on_change()
        elif event == "keep-alive":
            self._mark_up(tree)
        elif event == "cancel":
            logger.warning("Server cancelled the %s stream", tree)
            self.status.error = "Live updates were cancelled by the server; retrying"
            raise StreamClosed("cancel")
        elif event == "auth_revoked":
            logger.warning("Credentials revoked for the %s stream", tree)
            self.status.error = (
                "Database credentials were revoked; check FIREBASE_DATABASE_SECRET or FIREBASE_API_KEY"
            )
            raise StreamClosed("auth_revoked")

    def _mark_up(self, tree: str) -> None:
        self._live.add(tree)
        self.status.connected = True
        # Polling keeps covering any tree whose stream is still down.
        if self._live.issuperset(TREES):
            self.status.mode = "stream"
            self.status.error = None
            self._stop_polling()

    def _mark_down(self, reason: str, tree: Optional[str] = None) -> None:
        if tree is not None:
            self._live.discard(tree)
        if self.status.connected:
            logger.warning("Backend connection lost: %s", reason)
        self.status.connected = False
        self.status.error = reason
        self._on_change()

    def _start_polling(self) -> None:
        if self._polling is not None and not self._polling.done():
            return
        logger.info("Polling every %.1fs until live updates resume", self._config.polling_interval_s)
        self._polling = asyncio.get_running_loop().create_task(self._poll())

    def _stop_polling(self) -> None:
        task, self._polling = self._polling, None
        if task is not None and not task.done():
            task.cancel()

    async def _poll(self) -> None:
        while True:
            if await self.refresh():
                self.status.mode = "polling"
            await asyncio.sleep(self._config.polling_interval_s)

    async def stop(self) -> None:
        tasks = list(self._streams.values())
        if self._polling is not None:
            tasks.append(self._polling)
        self._streams.clear()
        self._polling = None
        self._live.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
