import asyncio
import logging
from typing import Any, Dict, List, Optional, Set
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from .config import settings
from .errors import (
    Cancelled, ConnectionLost, EngineError, EngineRejected, NotConnected, SyncError, Timeout,
)
from .models import PlaybackState, Priority, Source
from .session import SyncSessionManager

logger = logging.getLogger(__name__)

app = FastAPI(title="mpv Wave Sync")
session: Optional[SyncSessionManager] = None


class TimeRequest(BaseModel):
    time: float

class SpeedRequest(BaseModel):
    speed: float

class VolumeRequest(BaseModel):
    volume: float

class RegionRequest(BaseModel):
    start: float
    end: float

class CommandRequest(BaseModel):
    verb: str
    args: List[Any] = []
    priority: Optional[Priority] = None
    timeout: Optional[float] = None


class ConnectionHub:
    """Fans engine events out to every connected waveform client."""

    def __init__(self):
        self.clients: Set[WebSocket] = set()
        self._tasks: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.clients.add(websocket)

    def disconnect(self, websocket: WebSocket):
        self.clients.discard(websocket)

    async def broadcast(self, message: Dict[str, Any]):
        for websocket in list(self.clients):
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"Dropping websocket client: {e}")
                self.clients.discard(websocket)

    def publish(self, message: Dict[str, Any]):
        if not self.clients:
            return
        task = asyncio.create_task(self.broadcast(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def on_correction(self, state: PlaybackState):
        self.publish({"type": "correction", "state": state.model_dump()})

    def on_disconnected(self, reason: str):
        self.publish({"type": "disconnected", "reason": reason})


hub = ConnectionHub()


def bind(new_session: SyncSessionManager):
    global session
    session = new_session
    new_session.engine.add_correction_listener(hub.on_correction)
    new_session.engine.add_disconnect_listener(hub.on_disconnected)


def _require_session() -> SyncSessionManager:
    if session is None:
        raise HTTPException(status_code=503, detail="Service starting")
    return session

def _http_error(e: SyncError) -> HTTPException:
    if isinstance(e, EngineError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (NotConnected, ConnectionLost, Cancelled)):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, Timeout):
        return HTTPException(status_code=504, detail=str(e))
    if isinstance(e, EngineRejected):
        return HTTPException(status_code=502, detail=e.error)
    return HTTPException(status_code=500, detail=str(e))

def _local_view(s: SyncSessionManager) -> Dict[str, Any]:
    return {"leader": s.engine.leader.value, "local": s.engine.local.model_dump()}


@app.get("/healthz")
def healthz():
    if not session:
        return {"status": "starting"}
    return {"status": session.status.value}

@app.get("/status")
def status():
    if not session:
        return {"status": "not_ready"}

    return {
        "status": session.status.value,
        **session.engine.snapshot(),
        "stats": session.get_stats().model_dump(mode="json"),
        "config": {
            "socket": settings.MPV_SOCKET_PATH,
            "dry_run": settings.DRY_RUN,
            "interval": settings.SYNC_INTERVAL_SECONDS,
            "drift_threshold": session.engine.session.drift_threshold,
        }
    }

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not session:
        return ""

    s = session.get_stats()
    up = 1 if s.status.value != "disconnected" else 0
    lines = [
        f'mpv_wave_sync_up {up}',
        f'mpv_wave_sync_commands_sent_total {s.commands_sent}',
        f'mpv_wave_sync_duplicates_blocked_total {s.duplicates_blocked}',
        f'mpv_wave_sync_drift_corrections_total {s.drift_corrections}',
        f'mpv_wave_sync_correction_failures_total {s.correction_failures}',
        f'mpv_wave_sync_echoes_suppressed_total {s.echoes_suppressed}',
        f'mpv_wave_sync_command_timeouts_total {s.timeouts}',
        f'mpv_wave_sync_command_failures_total {s.failures}',
        f'mpv_wave_sync_last_drift_seconds {s.last_accuracy}',
        f'mpv_wave_sync_avg_response_ms {s.avg_response_ms}',
    ]
    return "\n".join(lines) + "\n"

@app.post("/local/seek")
async def local_seek(req: TimeRequest):
    s = _require_session()
    try:
        s.engine.on_local_seek(req.time)
    except EngineError as e:
        raise _http_error(e)
    return _local_view(s)

@app.post("/local/play")
async def local_play():
    s = _require_session()
    s.engine.on_local_play()
    return _local_view(s)

@app.post("/local/pause")
async def local_pause():
    s = _require_session()
    s.engine.on_local_pause()
    return _local_view(s)

@app.post("/local/progress")
async def local_progress(req: TimeRequest):
    s = _require_session()
    try:
        s.engine.on_local_progress(req.time)
    except EngineError as e:
        raise _http_error(e)
    return _local_view(s)

@app.post("/local/speed")
async def local_speed(req: SpeedRequest):
    s = _require_session()
    try:
        s.engine.on_local_speed_change(req.speed)
    except EngineError as e:
        raise _http_error(e)
    return _local_view(s)

@app.post("/local/volume")
async def local_volume(req: VolumeRequest):
    s = _require_session()
    try:
        s.engine.on_local_volume_change(req.volume)
    except EngineError as e:
        raise _http_error(e)
    return _local_view(s)

@app.post("/region/play")
async def region_play(req: RegionRequest):
    s = _require_session()
    try:
        await s.engine.play_region(req.start, req.end)
    except SyncError as e:
        raise _http_error(e)
    return {**_local_view(s), "active_region": req.model_dump()}

@app.post("/command")
async def command(req: CommandRequest):
    s = _require_session()
    try:
        reply = await s.dispatcher.call(
            req.verb, *req.args, priority=req.priority, source=Source.API, timeout=req.timeout
        )
    except SyncError as e:
        raise _http_error(e)
    return reply.model_dump(mode="json")

@app.post("/reset")
async def reset():
    s = _require_session()
    s.reset()
    return {"status": "ok"}


def _apply_ws_event(s: SyncSessionManager, message: Any) -> Optional[Dict[str, Any]]:
    """Feeds one waveform event into the engine; returns an error reply if it is invalid."""
    kind = message.get("type") if isinstance(message, dict) else None
    try:
        if kind == "seek":
            s.engine.on_local_seek(message.get("time"))
        elif kind == "play":
            s.engine.on_local_play()
        elif kind == "pause":
            s.engine.on_local_pause()
        elif kind == "speed":
            s.engine.on_local_speed_change(message.get("speed"))
        elif kind == "volume":
            s.engine.on_local_volume_change(message.get("volume"))
        elif kind == "progress":
            s.engine.on_local_progress(message.get("time"))
        else:
            return {"type": "error", "error": f"Unknown message type: {kind!r}"}
    except EngineError as e:
        return {"type": "error", "error": str(e)}
    return None

@app.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    await hub.connect(websocket)
    try:
        if session is not None:
            await websocket.send_json({"type": "state", **session.engine.snapshot()})
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"type": "error", "error": "Invalid JSON"})
                continue
            if session is None:
                await websocket.send_json({"type": "error", "error": "Service starting"})
                continue
            error = _apply_ws_event(session, message)
            if error:
                await websocket.send_json(error)
    except WebSocketDisconnect:
        logger.debug("Websocket client disconnected")
    finally:
        hub.disconnect(websocket)
