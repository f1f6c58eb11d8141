"""
FastAPI applications.

``create_app`` exposes the session supervisor to a local UI: start hosting,
join a room, stop, and a WebSocket feed of state changes.  ``create_store_app``
serves the path-addressed signal store over the same REST dialect
:class:`HttpSignalStore` speaks, so two machines can rendezvous without an
external database.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import PROFILES_PATH, SessionConfig, read_profiles
from ..errors import (
    InvalidRoomCode,
    MediaAcquisitionFailed,
    NegotiationFailed,
    RoomNotFound,
    SessionBusy,
    SessionError,
    StartCancelled,
    StoreUnavailable,
)
from ..session import SessionSupervisor
from ..signaling.coordinator import StateChange
from ..signaling.store import InMemorySignalStore
from . import schemas

LOG = logging.getLogger(__name__)

_ERROR_STATUS = (
    (InvalidRoomCode, 400),
    (RoomNotFound, 404),
    (SessionBusy, 409),
    (StartCancelled, 409),
    (MediaAcquisitionFailed, 503),
    (StoreUnavailable, 503),
    (NegotiationFailed, 502),
)

EVENT_QUEUE_SIZE = 64


def _http_error(exc: SessionError) -> HTTPException:
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


class EventStream:
    """Forward supervisor state changes to one WebSocket client."""

    def __init__(self, supervisor: SessionSupervisor, websocket: WebSocket, *, queue_size: int) -> None:
        self.supervisor = supervisor
        self.websocket = websocket
        self.queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._stop_event = asyncio.Event()
        self.dropped = 0

    def _push(self, change: StateChange) -> None:
        payload = schemas.StateEventModel(**change.to_dict()).model_dump(by_alias=True)
        if self.queue.full():
            # Slow client: keep the latest states.
            with contextlib.suppress(asyncio.QueueEmpty):
                self.queue.get_nowait()
                self.dropped += 1
        self.queue.put_nowait(payload)

    async def run(self) -> None:
        await self.websocket.accept()
        token = self.supervisor.subscribe(self._push)
        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
        finally:
            self.supervisor.unsubscribe(token)
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await self.websocket.close()

    async def _recv_loop(self) -> None:
        # Clients only listen; reading detects the disconnect.
        try:
            while not self._stop_event.is_set():
                await self.websocket.receive_text()
        except WebSocketDisconnect:
            LOG.debug("Event stream client disconnected")
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                payload = await asyncio.wait_for(self.queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            try:
                await self.websocket.send_json(payload)
            except (WebSocketDisconnect, RuntimeError):
                self._stop_event.set()
                break


def create_app(
    supervisor: SessionSupervisor,
    *,
    config: Optional[SessionConfig] = None,
    lifespan: Optional[Callable[[FastAPI], Any]] = None,
) -> FastAPI:
    session_config = config or supervisor.config

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            await supervisor.stop()
            await supervisor.store.aclose()

    app = FastAPI(title="Screencast Session API", lifespan=app_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.supervisor = supervisor

    def _status() -> schemas.SessionStatusModel:
        return schemas.SessionStatusModel(**supervisor.describe())

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "profile": session_config.profile}

    @app.get("/profiles", response_model=schemas.ProfilesModel)
    async def list_profiles() -> schemas.ProfilesModel:
        try:
            profiles = read_profiles()
        except ValueError as exc:
            LOG.warning("Could not read %s: %s", PROFILES_PATH, exc)
            profiles = {}
        return schemas.ProfilesModel(
            active=session_config.profile,
            profiles=profiles,
            names=sorted(profiles),
        )

    @app.get("/session", response_model=schemas.SessionStatusModel)
    async def get_session() -> schemas.SessionStatusModel:
        return _status()

    @app.post("/session/host", response_model=schemas.HostResponse)
    async def host_session() -> schemas.HostResponse:
        try:
            code = await supervisor.start_host()
        except SessionError as exc:
            raise _http_error(exc) from exc
        return schemas.HostResponse(code=code, state=supervisor.state.value)

    @app.post("/session/join", response_model=schemas.SessionStatusModel)
    async def join_session(payload: schemas.JoinRequest) -> schemas.SessionStatusModel:
        try:
            await supervisor.join_viewer(payload.code)
        except SessionError as exc:
            raise _http_error(exc) from exc
        return _status()

    @app.post("/session/stop", response_model=schemas.SessionStatusModel)
    async def stop_session() -> schemas.SessionStatusModel:
        await supervisor.stop()
        return _status()

    @app.websocket("/session/events")
    async def session_events(websocket: WebSocket) -> None:
        await EventStream(supervisor, websocket, queue_size=EVENT_QUEUE_SIZE).run()

    return app


def create_store_app(store: Optional[InMemorySignalStore] = None) -> FastAPI:
    """Serve ``store`` as ``GET|PUT|DELETE /{path}.json``."""

    backing = store if store is not None else InMemorySignalStore()
    app = FastAPI(title="Screencast Signal Store")
    app.state.store = backing

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok"}

    @app.get("/{path:path}.json")
    async def read_value(path: str) -> JSONResponse:
        if not path.strip("/"):
            return JSONResponse(backing.dump() or None)
        return JSONResponse(await backing.get(path))

    @app.put("/{path:path}.json")
    async def write_value(path: str, request: Request) -> JSONResponse:
        if not path.strip("/"):
            raise HTTPException(status_code=400, detail="cannot overwrite the store root")
        body = await request.body()
        try:
            value = json.loads(body) if body else None
        except ValueError:
            raise HTTPException(status_code=400, detail="body must be JSON") from None
        await backing.put(path, value)
        return JSONResponse(value)

    @app.delete("/{path:path}.json")
    async def delete_value(path: str) -> JSONResponse:
        if not path.strip("/"):
            raise HTTPException(status_code=400, detail="cannot delete the store root")
        await backing.delete(path)
        return JSONResponse(None)

    return app


__all__ = ["create_app", "create_store_app"]
