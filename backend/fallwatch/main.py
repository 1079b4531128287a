"""FastAPI application for the nurse station fall monitor."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse

from .config import firebase_config
from .errors import (
    BackendError,
    BackendWriteError,
    ChecklistIncomplete,
    FallwatchError,
    InvalidTransition,
    UnknownDevice,
    UnknownRoom,
)
from .firebase import FirebaseClient
from .mqtt_client import MQTTBridge
from .schemas import (
    AlarmStatus,
    AlertSummary,
    AssignDeviceRequest,
    ConnectionStatus,
    DeviceInfo,
    ResolveRequest,
    RoomSummary,
)
from .session import MonitorSession

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def _http_error(exc: FallwatchError) -> HTTPException:
    if isinstance(exc, (UnknownRoom, UnknownDevice)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransition):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ChecklistIncomplete):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, BackendWriteError):
        return HTTPException(
            status_code=502,
            detail=f"The change was not saved, please try again. ({exc})",
        )
    if isinstance(exc, BackendError):
        return HTTPException(status_code=502, detail=f"Database unavailable: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


def create_app(session: Optional[MonitorSession] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client: Optional[FirebaseClient] = None
        bridge: Optional[MQTTBridge] = None
        current = session
        if current is None:
            client = FirebaseClient()
            bridge = MQTTBridge()
            bridge.start()
            current = MonitorSession(client, bridge)
        app.state.session = current
        await current.start()
        logger.info("Fall monitor started for %s/%s", firebase_config.database_url, firebase_config.root)
        try:
            yield
        finally:
            try:
                await current.close()
            finally:
                if bridge is not None:
                    bridge.stop()
                if client is not None:
                    await client.aclose()
            logger.info("Fall monitor stopped")

    app = FastAPI(title="Nurse Station Fall Monitor", version="0.1.0", lifespan=lifespan)
    _register_routes(app)
    return app


def get_session(request: Request) -> MonitorSession:
    return request.app.state.session


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/status")
    async def status(session: MonitorSession = Depends(get_session)) -> Dict[str, Any]:
        return {
            "connection": session.subscription.status.model_dump(),
            "alarm": session.alarm_status().model_dump(),
            "alerts": session.summary.model_dump(),
        }

    @app.get("/connection", response_model=ConnectionStatus)
    async def connection(session: MonitorSession = Depends(get_session)) -> ConnectionStatus:
        return session.subscription.status

    @app.get("/rooms", response_model=List[RoomSummary])
    async def rooms(session: MonitorSession = Depends(get_session)) -> List[RoomSummary]:
        return session.rooms()

    @app.get("/alerts", response_model=AlertSummary)
    async def alerts(session: MonitorSession = Depends(get_session)) -> AlertSummary:
        return session.summary

    @app.post("/rooms/{ward}/{room}/acknowledge")
    async def acknowledge(
        ward: str, room: str, session: MonitorSession = Depends(get_session)
    ) -> Dict[str, Any]:
        try:
            changed = await session.actions.acknowledge(ward, room)
        except FallwatchError as exc:
            raise _http_error(exc) from exc
        return {"acknowledged": True, "changed": changed}

    @app.post("/acknowledge-all")
    async def acknowledge_all(session: MonitorSession = Depends(get_session)) -> Dict[str, Any]:
        try:
            rooms = await session.actions.acknowledge_all()
        except FallwatchError as exc:
            raise _http_error(exc) from exc
        return {"acknowledged": rooms}

    @app.post("/rooms/{ward}/{room}/resolve")
    async def resolve(
        ward: str,
        room: str,
        request: ResolveRequest,
        session: MonitorSession = Depends(get_session),
    ) -> Dict[str, Any]:
        try:
            resolved = await session.actions.resolve(ward, room, request)
        except FallwatchError as exc:
            raise _http_error(exc) from exc
        return {"resolved": resolved}

    @app.post("/alarm/mute", response_model=AlarmStatus)
    async def mute(session: MonitorSession = Depends(get_session)) -> AlarmStatus:
        session.actions.set_muted(True)
        return session.alarm_status()

    @app.post("/alarm/unmute", response_model=AlarmStatus)
    async def unmute(session: MonitorSession = Depends(get_session)) -> AlarmStatus:
        session.actions.set_muted(False)
        return session.alarm_status()

    @app.post("/interaction", response_model=AlarmStatus)
    async def interaction(session: MonitorSession = Depends(get_session)) -> AlarmStatus:
        """Called by the dashboard on the first click, key press or touch."""
        return await session.interaction()

    @app.get("/alarm/clip.wav")
    async def alarm_clip(session: MonitorSession = Depends(get_session)) -> Response:
        return Response(content=session.player.clip, media_type="audio/wav")

    @app.get("/devices", response_model=List[DeviceInfo])
    async def devices(session: MonitorSession = Depends(get_session)) -> List[DeviceInfo]:
        return session.devices.list(now_ms=session.now_ms())

    @app.get("/devices/pending", response_model=List[DeviceInfo])
    async def pending_devices(session: MonitorSession = Depends(get_session)) -> List[DeviceInfo]:
        return session.devices.pending(now_ms=session.now_ms())

    @app.post("/devices/{device_id}/assign", response_model=DeviceInfo)
    async def assign_device(
        device_id: str,
        request: AssignDeviceRequest,
        session: MonitorSession = Depends(get_session),
    ) -> DeviceInfo:
        try:
            return await session.devices.assign(device_id, request)
        except FallwatchError as exc:
            raise _http_error(exc) from exc

    @app.get("/logs")
    async def logs(
        limit: int = Query(firebase_config.log_limit, ge=1, le=500),
        session: MonitorSession = Depends(get_session),
    ) -> List[Dict[str, Any]]:
        try:
            entries = await session.event_log.recent(limit)
        except FallwatchError as exc:
            raise _http_error(exc) from exc
        return [entry.to_backend() for entry in entries]

    @app.get("/stream/dashboard")
    async def stream_dashboard(session: MonitorSession = Depends(get_session)) -> StreamingResponse:
        """Server-sent events: a snapshot first, then alert and alarm updates."""

        queue = session.store.register_listener()

        async def event_generator() -> AsyncIterator[str]:
            try:
                snapshot = {
                    "type": "snapshot",
                    "rooms": [room.model_dump(mode="json") for room in session.rooms()],
                    "alerts": session.summary.model_dump(mode="json"),
                    "alarm": session.alarm_status().model_dump(mode="json"),
                    "connection": session.subscription.status.model_dump(mode="json"),
                }
                yield f"data: {json.dumps(snapshot)}\n\n"

                while True:
                    message = await queue.get()
                    yield f"data: {json.dumps(message, default=str)}\n\n"
            except asyncio.CancelledError:
                raise
            finally:
                session.store.unregister_listener(queue)

        return StreamingResponse(event_generator(), media_type="text/event-stream")


app = create_app()
