"""
FastAPI application: REST API for the relay and diagnostics, plus the
WebSocket endpoint viewers read MPEG-TS from.
"""

from __future__ import annotations

import logging
import os
import socket
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field

from . import database, rtsp_url
from .diagnostics import DiagnosticsStatus, get_connection_suggestions, run_diagnostics
from .fanout import POLICY_VIOLATION
from .network import get_ip_address, is_valid_host
from .stream_manager import StreamRegistry, StreamStartError

logger = logging.getLogger(__name__)

SERVER_PORT = int(os.environ.get("CAMERA_RELAY_PORT", "8000"))


def record_event(title: str, message: str, severity: str, camera_id: int | None = None) -> None:
    """Hand an event to the persistence layer."""
    database.create_notification(title, message, severity, camera_id)


# ── Lifespan ────────────────────────────────────────────────────────
registry: StreamRegistry | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global registry
    database.init_db()
    registry = StreamRegistry(on_event=record_event)
    logger.info("StreamRegistry initialised, database ready")
    yield
    logger.info("Shutting down, stopping all streams")
    await registry.close_all()


app = FastAPI(title="Camera Relay", lifespan=lifespan)


# ── API models ──────────────────────────────────────────────────────
class StreamRequest(BaseModel):
    rtsp_url: str
    camera_id: int | None = None


class DiagnosticsRequest(BaseModel):
    camera_ip: str
    rtsp_port: int = Field(default=rtsp_url.DEFAULT_RTSP_PORT, ge=1, le=65535)
    camera_id: int | None = None


class NotificationCreate(BaseModel):
    title: str
    message: str
    severity: str = "info"
    camera_id: int | None = None


class CameraCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    ip_address: str
    rtsp_port: int = Field(default=rtsp_url.DEFAULT_RTSP_PORT, ge=1, le=65535)
    username: str = ""
    password: str = ""
    main_stream_path: str
    sub_stream_path: str | None = None
    is_default: bool = False


class CameraUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    ip_address: str | None = None
    rtsp_port: int | None = Field(default=None, ge=1, le=65535)
    username: str | None = None
    password: str | None = None
    main_stream_path: str | None = None
    sub_stream_path: str | None = None
    is_active: bool | None = None
    is_default: bool | None = None


class CameraSettingsUpdate(BaseModel):
    """Every setting a camera accepts.  Unset fields are left alone."""

    model_config = ConfigDict(extra="forbid")

    brightness: int | None = Field(default=None, ge=-100, le=100)
    contrast: int | None = Field(default=None, ge=-100, le=100)
    saturation: int | None = Field(default=None, ge=-100, le=100)
    night_mode: bool | None = None
    bw_mode: bool | None = None
    auto_exposure: bool | None = None


# ── Helpers ─────────────────────────────────────────────────────────
def _ws_url(request: Request, stream_id: str) -> str:
    base = str(request.base_url).rstrip("/")
    scheme = "wss" if base.startswith("https") else "ws"
    return f"{scheme}://{base.split('://', 1)[1]}/ws/stream/{stream_id}"


def _camera_to_dict(camera: database.Camera) -> dict:
    d = asdict(camera)
    del d["password"]
    d["rtsp_url"] = rtsp_url.mask(
        rtsp_url.build_url(
            camera.ip_address,
            camera.rtsp_port,
            camera.main_stream_path,
            camera.username,
            camera.password,
        )
    )
    return d


# ── Stream endpoints ────────────────────────────────────────────────
@app.get("/api/streams")
async def list_streams() -> list[dict]:
    return registry.list_streams()


@app.post("/api/stream/connect")
async def connect_stream(req: StreamRequest, request: Request) -> dict:
    if not rtsp_url.is_valid(req.rtsp_url):
        raise HTTPException(status_code=400, detail="Invalid RTSP URL")

    masked = rtsp_url.mask(req.rtsp_url)
    try:
        stream = await registry.acquire(req.rtsp_url)
    except StreamStartError as exc:
        record_event("Camera Stream Connection Failed", str(exc), "alert", req.camera_id)
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    record_event(
        "Camera Stream Connected",
        f"Successfully connected to camera stream: {masked}",
        "info",
        req.camera_id,
    )
    return {"ws_url": _ws_url(request, stream.stream_id), "stream_id": stream.stream_id}


@app.post("/api/stream/disconnect")
async def disconnect_stream(req: StreamRequest) -> dict:
    if not req.rtsp_url:
        raise HTTPException(status_code=400, detail="RTSP URL is required")

    await registry.disconnect(req.rtsp_url)
    record_event(
        "Camera Stream Disconnected",
        f"Disconnected from camera stream: {rtsp_url.mask(req.rtsp_url)}",
        "info",
        req.camera_id,
    )
    return {"success": True}


@app.websocket("/ws/stream/{stream_id}")
async def stream_socket(websocket: WebSocket, stream_id: str):
    await websocket.accept()
    stream = registry.attach(stream_id, websocket)
    if stream is None:
        await websocket.close(code=POLICY_VIOLATION, reason="Stream is not active")
        return

    try:
        # Viewers only read; wait here until the socket goes away
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        registry.release(stream_id, websocket)


# ── Network endpoints ───────────────────────────────────────────────
@app.get("/api/network/info")
async def network_info(request: Request) -> dict:
    ip_address = get_ip_address()
    return {
        "success": True,
        "network": {
            "ip_address": ip_address,
            "hostname": socket.gethostname(),
            "port": SERVER_PORT,
            "ws_url": f"ws://{ip_address}:{SERVER_PORT}",
            "http_url": f"http://{ip_address}:{SERVER_PORT}",
        },
    }


@app.post("/api/network/diagnostics")
async def network_diagnostics(req: DiagnosticsRequest) -> dict:
    if not is_valid_host(req.camera_ip):
        raise HTTPException(status_code=400, detail="Camera IP is required")

    result = await run_diagnostics(req.camera_ip, req.rtsp_port)
    suggestions = get_connection_suggestions(result, req.camera_ip)

    summary, severity = {
        DiagnosticsStatus.SUCCESS: ("Success", "info"),
        DiagnosticsStatus.PARTIAL: ("Partial connectivity", "warning"),
        DiagnosticsStatus.FAILURE: ("Connection failed", "alert"),
    }[result.status]
    record_event(
        "Network Diagnostics Completed",
        f"Diagnostics for camera at {req.camera_ip}: {summary}",
        severity,
        req.camera_id,
    )
    return {"success": True, "diagnostics": result.to_dict(), "suggestions": suggestions}


# ── Notification endpoints ──────────────────────────────────────────
@app.get("/api/notifications")
async def list_notifications(limit: int | None = None) -> list[dict]:
    return [asdict(n) for n in database.get_notifications(limit)]


@app.post("/api/notifications", status_code=201)
async def create_notification(req: NotificationCreate) -> dict:
    try:
        notification = database.create_notification(
            req.title, req.message, req.severity, req.camera_id
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return asdict(notification)


@app.get("/api/notifications/unread/count")
async def unread_notifications_count() -> dict:
    return {"count": database.get_unread_notifications_count()}


@app.patch("/api/notifications/read-all")
async def mark_all_notifications_read() -> dict:
    database.mark_all_notifications_as_read()
    return {"success": True}


@app.patch("/api/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: int) -> dict:
    notification = database.mark_notification_as_read(notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return asdict(notification)


@app.delete("/api/notifications/{notification_id}")
async def delete_notification(notification_id: int) -> dict:
    if not database.delete_notification(notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


# ── Camera endpoints ────────────────────────────────────────────────
@app.get("/api/cameras")
async def list_cameras() -> list[dict]:
    return [_camera_to_dict(c) for c in database.get_cameras()]


@app.get("/api/cameras/default")
async def default_camera() -> dict:
    camera = database.get_default_camera()
    if camera is None:
        raise HTTPException(status_code=404, detail="No default camera found")
    return _camera_to_dict(camera)


@app.get("/api/cameras/{camera_id}")
async def get_camera(camera_id: int) -> dict:
    camera = database.get_camera(camera_id)
    if camera is None:
        raise HTTPException(status_code=404, detail="Camera not found")
    return _camera_to_dict(camera)


@app.post("/api/cameras", status_code=201)
async def create_camera(req: CameraCreate) -> dict:
    if not is_valid_host(req.ip_address):
        raise HTTPException(status_code=400, detail="Invalid camera IP address")
    camera = database.create_camera(**req.model_dump())
    record_event("Camera Added", f"Added new camera: {camera.name}", "info", camera.id)
    return _camera_to_dict(camera)


@app.patch("/api/cameras/{camera_id}")
async def update_camera(camera_id: int, req: CameraUpdate) -> dict:
    # sub_stream_path is the only column that may be cleared
    changes = {
        key: value
        for key, value in req.model_dump(exclude_unset=True).items()
        if value is not None or key == "sub_stream_path"
    }
    if "ip_address" in changes and not is_valid_host(changes["ip_address"]):
        raise HTTPException(status_code=400, detail="Invalid camera IP address")
    camera = database.update_camera(camera_id, **changes)
    if camera is None:
        raise HTTPException(status_code=404, detail="Camera not found")
    record_event("Camera Updated", f"Updated camera: {camera.name}", "info", camera.id)
    return _camera_to_dict(camera)


@app.patch("/api/cameras/{camera_id}/settings")
async def update_camera_settings(camera_id: int, req: CameraSettingsUpdate) -> dict:
    settings = req.model_dump(exclude_unset=True)
    camera = database.update_camera_settings(camera_id, settings)
    if camera is None:
        raise HTTPException(status_code=404, detail="Camera not found")
    record_event(
        "Camera Settings Updated",
        f"Updated settings for camera {camera.name}: "
        + ", ".join(f"{key}: {value}" for key, value in settings.items()),
        "info",
        camera.id,
    )
    return _camera_to_dict(camera)


@app.delete("/api/cameras/{camera_id}")
async def delete_camera(camera_id: int) -> dict:
    camera = database.get_camera(camera_id)
    if camera is None:
        raise HTTPException(status_code=404, detail="Camera not found")
    database.delete_camera(camera_id)
    record_event("Camera Deleted", f"Deleted camera: {camera.name}", "info")
    return {"success": True}
