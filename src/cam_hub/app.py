"""FastAPI application wiring together the CamHub services."""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import replace
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .activity_log import ActivityLog
from .config import ConfigManager
from .inputs import (
    DeviceNotFoundError,
    InputResolutionError,
    build_input_resolvers,
    check_connection,
    describe_capabilities,
)
from .negotiation import OnvifNegotiator, StreamUriNegotiator
from .policy import ExclusivityError, ExclusivityPolicy
from .recordings import RecordingFailedError, RecordingInProgressError, RecordingOrchestrator
from .storage import (
    Camera,
    CameraNotFoundError,
    CameraStore,
    CameraType,
    Database,
    RecordingStore,
)
from .streams import StreamOrchestrator
from .supervisor import ProcessSupervisor, SpawnError
from .version import APP_VERSION

_STREAM_MEDIA_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}
_RECORDING_MEDIA_TYPES = {
    ".mp4": "video/mp4",
    ".jpg": "image/jpeg",
}

# Attributes each camera type keeps; anything else in a payload is dropped.
_TYPE_FIELDS: dict[CameraType, tuple[str, ...]] = {
    CameraType.ONVIF: ("host", "port", "username", "password", "xaddr"),
    CameraType.UVC: ("device_path",),
    CameraType.UVC_RTSP: ("host", "port", "username", "password", "stream_path"),
    CameraType.RTSP: ("host", "port", "username", "password", "stream_path"),
}
_REQUIRED_FIELDS: dict[CameraType, tuple[str, ...]] = {
    CameraType.ONVIF: ("host",),
    CameraType.UVC: ("device_path",),
    CameraType.UVC_RTSP: ("host", "port"),
    CameraType.RTSP: ("host", "port"),
}


class CameraPayload(BaseModel):
    name: str = Field(min_length=1)
    type: CameraType = CameraType.ONVIF
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    username: str | None = None
    password: str | None = None
    xaddr: str | None = None
    device_path: str | None = None
    stream_path: str | None = None

    @model_validator(mode="after")
    def check_type_fields(self) -> "CameraPayload":
        if self.type is CameraType.ONVIF and not self.host:
            raise ValueError("ONVIF cameras require a host")
        if self.type is CameraType.UVC and not self.device_path:
            raise ValueError("UVC cameras require a device_path")
        if self.type is CameraType.UVC_RTSP and not (self.host and self.port):
            raise ValueError("UVC RTSP cameras require a host and port")
        if self.type is CameraType.RTSP and not (self.host and self.port):
            raise ValueError("RTSP cameras require a host and port")
        return self

    def to_record(self) -> dict[str, object]:
        record: dict[str, object] = {"name": self.name.strip(), "type": self.type.value}
        for field_name in _TYPE_FIELDS[self.type]:
            record[field_name] = getattr(self, field_name)
        return record

    def to_camera(self) -> Camera:
        """Unsaved camera used to test the connection before insertion."""

        values = {key: value for key, value in self.to_record().items() if key != "type"}
        return Camera(id=0, type=self.type, **values)


class CameraUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    username: str | None = None
    password: str | None = None
    xaddr: str | None = None
    device_path: str | None = None
    stream_path: str | None = None

    def changes_for(self, camera_type: CameraType) -> dict[str, object]:
        """Return the submitted fields that *camera_type* may change."""

        changes = self.model_dump(exclude_unset=True)
        if not changes:
            raise ValueError("No valid update fields provided")
        invalid = sorted(set(changes) - {"name", *_TYPE_FIELDS[camera_type]})
        if invalid:
            raise ValueError(
                f"Invalid or disallowed fields for {camera_type.value} camera: {', '.join(invalid)}"
            )
        for key in ("name", *_REQUIRED_FIELDS[camera_type]):
            if key in changes:
                value = changes[key]
                if isinstance(value, str):
                    value = changes[key] = value.strip()
                if not value:
                    raise ValueError(f"Field '{key}' cannot be empty")
        return changes


class HlsSettingsPayload(BaseModel):
    segment_seconds: int | None = None
    list_size: int | None = None


class RecordingSettingsPayload(BaseModel):
    thumbnail_offset_seconds: float | None = None
    thumbnail_quality: int | None = None
    stop_timeout_seconds: float | None = None


def _safe_filename(name: str) -> str:
    if not name or name.startswith(".") or "/" in name or "\\" in name:
        raise HTTPException(status_code=404, detail="File not found")
    return name


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, CameraNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (DeviceNotFoundError, InputResolutionError)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, (ExclusivityError, RecordingInProgressError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, SpawnError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, RecordingFailedError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc) or "Internal error")


_HANDLED_ERRORS = (
    CameraNotFoundError,
    InputResolutionError,
    ExclusivityError,
    RecordingInProgressError,
    SpawnError,
    RecordingFailedError,
)


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    negotiator: StreamUriNegotiator | None = None,
    supervisor: ProcessSupervisor | None = None,
) -> FastAPI:
    app = FastAPI(title="CamHub", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(Path(config_path))
    paths = config_manager.override_storage_paths(
        streams_dir=os.getenv("CAMHUB_STREAMS_DIR"),
        recordings_dir=os.getenv("CAMHUB_RECORDINGS_DIR"),
        database_path=os.getenv("CAMHUB_DATABASE"),
    )
    config_manager.override_transcoder_binary(os.getenv("CAMHUB_FFMPEG"))

    database = Database(paths.database_path)
    camera_store = CameraStore(database)
    recording_store = RecordingStore(database)
    activity_log = ActivityLog(paths.activity_log_path)

    negotiation = config_manager.get_negotiation_settings()
    resolvers = build_input_resolvers(
        negotiator or OnvifNegotiator(),
        timeout_seconds=negotiation.timeout_seconds,
        default_port=negotiation.default_port,
    )
    supervisor = supervisor or ProcessSupervisor()
    policy = ExclusivityPolicy()

    streams = StreamOrchestrator(
        cameras=camera_store,
        resolvers=resolvers,
        supervisor=supervisor,
        config=config_manager,
        streams_dir=paths.streams_dir,
        policy=policy,
        activity_log=activity_log,
    )
    recordings = RecordingOrchestrator(
        cameras=camera_store,
        recordings=recording_store,
        resolvers=resolvers,
        supervisor=supervisor,
        config=config_manager,
        recordings_dir=paths.recordings_dir,
        policy=policy,
        activity_log=activity_log,
    )

    app.state.config_manager = config_manager
    app.state.camera_store = camera_store
    app.state.recording_store = recording_store
    app.state.activity_log = activity_log
    app.state.streams = streams
    app.state.recordings = recordings

    async def _load_camera(camera_id: int):
        try:
            return await run_in_threadpool(camera_store.get_camera, camera_id)
        except CameraNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await streams.aclose()
        await recordings.aclose()
        await supervisor.join()
        logger.info("CamHub shutdown complete")

    @app.get("/api/cameras")
    async def list_cameras() -> dict[str, object]:
        cameras = await run_in_threadpool(camera_store.list_cameras)
        return {
            "cameras": [
                {
                    **camera.to_dict(),
                    "streaming": streams.is_streaming(camera.id),
                    "recording": recordings.is_recording(camera.id),
                }
                for camera in cameras
            ]
        }

    async def _verify_connection(camera: Camera) -> None:
        try:
            await check_connection(camera, resolvers)
        except InputResolutionError as exc:
            raise HTTPException(
                status_code=400, detail=f"Camera connection test failed: {exc}"
            ) from exc

    @app.post("/api/cameras")
    async def add_camera(payload: CameraPayload) -> dict[str, object]:
        await _verify_connection(payload.to_camera())
        try:
            camera = await run_in_threadpool(camera_store.add_camera, payload.to_record())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info("Registered %s camera %s (%s)", camera.type.value, camera.id, camera.name)
        return {"camera": camera.to_dict()}

    @app.get("/api/cameras/{camera_id}")
    async def get_camera(camera_id: int) -> dict[str, object]:
        camera = await _load_camera(camera_id)
        return {"camera": camera.to_dict()}

    @app.put("/api/cameras/{camera_id}")
    async def update_camera(camera_id: int, payload: CameraUpdatePayload) -> dict[str, object]:
        camera = await _load_camera(camera_id)
        try:
            changes = payload.changes_for(camera.type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if set(changes) - {"name"}:
            if streams.is_streaming(camera_id) or recordings.is_recording(camera_id):
                raise HTTPException(
                    status_code=409,
                    detail="Camera has an active stream or recording; stop it first",
                )
            await _verify_connection(replace(camera, **changes))
        try:
            updated = await run_in_threadpool(camera_store.update_camera, camera_id, changes)
        except CameraNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info("Updated camera %s: %s", camera_id, ", ".join(sorted(changes)))
        return {"camera": updated.to_dict()}

    @app.delete("/api/cameras/{camera_id}")
    async def delete_camera(camera_id: int) -> dict[str, object]:
        if streams.is_streaming(camera_id) or recordings.is_recording(camera_id):
            raise HTTPException(
                status_code=409,
                detail="Camera has an active stream or recording; stop it first",
            )
        deleted = await run_in_threadpool(camera_store.delete_camera, camera_id)
        if not deleted:
            raise HTTPException(status_code=404, detail=str(CameraNotFoundError(camera_id)))
        return {"deleted": True}

    @app.get("/api/cameras/{camera_id}/capabilities")
    async def get_capabilities(camera_id: int) -> dict[str, object]:
        camera = await _load_camera(camera_id)
        return {
            "camera_id": camera.id,
            "type": camera.type.value,
            "capabilities": describe_capabilities(camera.type),
        }

    @app.post("/api/cameras/{camera_id}/stream/start")
    async def start_stream(camera_id: int) -> dict[str, str]:
        try:
            return await streams.start(camera_id)
        except _HANDLED_ERRORS as exc:
            raise _to_http_error(exc) from exc

    @app.post("/api/cameras/{camera_id}/stream/stop")
    async def stop_stream(camera_id: int) -> dict[str, bool]:
        return await streams.stop(camera_id)

    @app.get("/api/cameras/{camera_id}/stream")
    async def stream_status(camera_id: int) -> dict[str, object | None]:
        return streams.status(camera_id)

    @app.post("/api/cameras/{camera_id}/recording/start")
    async def start_recording(camera_id: int) -> dict[str, object]:
        try:
            return await recordings.start(camera_id)
        except _HANDLED_ERRORS as exc:
            raise _to_http_error(exc) from exc

    @app.post("/api/cameras/{camera_id}/recording/stop")
    async def stop_recording(camera_id: int) -> dict[str, object]:
        timeout = config_manager.get_recording_settings().stop_timeout_seconds
        try:
            return await asyncio.wait_for(recordings.stop(camera_id), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise HTTPException(
                status_code=504,
                detail=f"Recording did not finalise within {timeout:g} seconds",
            ) from exc
        except _HANDLED_ERRORS as exc:
            raise _to_http_error(exc) from exc

    @app.get("/api/cameras/{camera_id}/recording")
    async def recording_status(camera_id: int) -> dict[str, object]:
        return recordings.status(camera_id)

    @app.get("/api/recordings")
    async def list_recordings() -> dict[str, object]:
        items = await run_in_threadpool(recording_store.list_recordings)
        return {"recordings": [item.to_dict() for item in items]}

    @app.get("/api/settings")
    async def get_settings() -> dict[str, object]:
        return {
            "transcoder": config_manager.get_transcoder_settings().to_dict(),
            "hls": config_manager.get_hls_settings().to_dict(),
            "recording": config_manager.get_recording_settings().to_dict(),
            "negotiation": config_manager.get_negotiation_settings().to_dict(),
        }

    @app.post("/api/settings/hls")
    async def update_hls_settings(payload: HlsSettingsPayload) -> dict[str, object]:
        data = payload.model_dump(exclude_none=True)
        if not data:
            raise HTTPException(status_code=400, detail="No HLS settings provided")
        try:
            settings = config_manager.set_hls_settings(data)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return settings.to_dict()

    @app.post("/api/settings/recording")
    async def update_recording_settings(payload: RecordingSettingsPayload) -> dict[str, object]:
        data = payload.model_dump(exclude_none=True)
        if not data:
            raise HTTPException(status_code=400, detail="No recording settings provided")
        try:
            settings = config_manager.set_recording_settings(data)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return settings.to_dict()

    @app.get("/api/logs")
    async def get_logs(limit: int = 100, camera_id: int | None = None) -> dict[str, object]:
        entries = activity_log.tail(limit, camera_id=camera_id)
        return {"entries": [entry.to_dict() for entry in entries]}

    @app.get("/streams/{camera_id}/{filename}")
    async def serve_stream_file(camera_id: int, filename: str) -> FileResponse:
        name = _safe_filename(filename)
        media_type = _STREAM_MEDIA_TYPES.get(Path(name).suffix.lower())
        path = streams.output_dir(camera_id) / name
        if media_type is None or not path.is_file():
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(path, media_type=media_type, headers={"Cache-Control": "no-cache"})

    @app.get("/recordings/{filename}")
    async def serve_recording_file(filename: str) -> FileResponse:
        name = _safe_filename(filename)
        media_type = _RECORDING_MEDIA_TYPES.get(Path(name).suffix.lower())
        path = recordings.recordings_dir / name
        if media_type is None or not path.is_file():
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(path, media_type=media_type)

    return app


__all__ = ["CameraPayload", "CameraUpdatePayload", "create_app"]
