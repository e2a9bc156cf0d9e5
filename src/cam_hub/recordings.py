"""MP4 recording lifecycle: start, stop and finalisation."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Mapping

from .activity_log import ActivityEvent, ActivityLog
from .config import ConfigManager
from .inputs import Function, InputResolver, resolver_for
from .policy import ExclusivityPolicy
from .registry import ActiveProcessEntry, ProcessRegistry
from .storage import Camera, CameraStore, CameraType, Recording, RecordingStore
from .supervisor import ExitKind, ProcessExit, ProcessSupervisor
from .transcode import (
    build_command,
    extract_thumbnail,
    has_media,
    mp4_output_args,
    recording_filename,
    thumbnail_filename,
)

logger = logging.getLogger(__name__)


class RecordingInProgressError(RuntimeError):
    """Raised when a camera already has an active recording."""


class RecordingFailedError(RuntimeError):
    """Raised to stop callers when ffmpeg did not produce a valid recording."""

    def __init__(self, message: str, *, exit: ProcessExit | None = None) -> None:
        super().__init__(message)
        self.exit = exit


class RecordingOrchestrator:
    """Run one MP4 transcoder per camera and reconcile its exit with the database."""

    def __init__(
        self,
        *,
        cameras: CameraStore,
        recordings: RecordingStore,
        resolvers: Mapping[CameraType, InputResolver],
        supervisor: ProcessSupervisor,
        config: ConfigManager,
        recordings_dir: Path,
        registry: ProcessRegistry | None = None,
        policy: ExclusivityPolicy | None = None,
        activity_log: ActivityLog | None = None,
    ) -> None:
        self._cameras = cameras
        self._recordings = recordings
        self._resolvers = resolvers
        self._supervisor = supervisor
        self._config = config
        self._recordings_dir = Path(recordings_dir)
        self.registry = registry or ProcessRegistry(Function.RECORD)
        self._policy = policy or ExclusivityPolicy()
        self._policy.attach(Function.RECORD, self.registry)
        self._activity = activity_log

    @property
    def recordings_dir(self) -> Path:
        return self._recordings_dir

    async def start(self, camera_id: int) -> dict[str, Any]:
        """Begin recording *camera_id* to a new MP4 file."""

        async with self.registry.lock(camera_id):
            if self.registry.get(camera_id) is not None:
                raise RecordingInProgressError(f"Camera {camera_id} is already recording")

            camera = await asyncio.to_thread(self._cameras.get_camera, camera_id)
            async with self._policy.claim(camera, Function.RECORD):
                return await self._launch(camera)

    async def _launch(self, camera: Camera) -> dict[str, Any]:
        resolver = resolver_for(camera.type, self._resolvers)
        resolved = await resolver.resolve(camera, Function.RECORD)

        started_at = datetime.now(timezone.utc)
        filename = recording_filename(camera.id, started_at)
        output_path = self._recordings_dir / filename
        await asyncio.to_thread(self._recordings_dir.mkdir, parents=True, exist_ok=True)
        record = await asyncio.to_thread(
            self._recordings.create,
            camera_id=camera.id,
            filename=filename,
            start_time=started_at,
        )
        try:
            argv = build_command(
                self._config.get_transcoder_settings(),
                resolved.input_args,
                mp4_output_args(output_path, self._config.get_recording_settings()),
            )
            handle = await self._supervisor.spawn(
                argv,
                partial(self._on_exit, camera.id, record.id, output_path),
                label=f"recording[{camera.id}]",
            )
        except BaseException:
            # Also covers cancellation while spawning.
            self._recordings.delete(record.id)
            raise
        self.registry.add(
            ActiveProcessEntry(
                camera_id=camera.id,
                function=Function.RECORD,
                handle=handle,
                output_path=output_path,
                created_at=started_at.timestamp(),
                recording_id=record.id,
                filename=filename,
            )
        )
        logger.info(
            "Recording camera %s from %s to %s",
            camera.id,
            resolved.masked_locator(),
            filename,
        )
        self._record(
            camera.id,
            ActivityEvent.RECORDING_STARTED,
            f"Recording started for {camera.name}",
            {"recording_id": record.id, "filename": filename, "pid": handle.pid},
        )
        return {
            "recording_id": record.id,
            "filename": filename,
            "started_at": started_at.isoformat(),
        }

    async def stop(self, camera_id: int) -> dict[str, Any]:
        """Stop the recording and wait until it has been finalised.

        Concurrent callers share the same outcome. Raises
        :class:`RecordingFailedError` when the file turned out to be invalid.
        """

        async with self.registry.lock(camera_id):
            entry = self.registry.get(camera_id)
            if entry is None:
                return {"found": False, "recording": None}
            if entry.pending_stop is None:
                entry.pending_stop = asyncio.get_running_loop().create_future()
                logger.info("Stopping recording for camera %s (pid %s)", camera_id, entry.pid)
                entry.handle.terminate()
            pending = entry.pending_stop
        record: Recording = await asyncio.shield(pending)
        return {"found": True, "recording": record.to_dict()}

    def is_recording(self, camera_id: int) -> bool:
        return int(camera_id) in self.registry

    def status(self, camera_id: int) -> dict[str, Any]:
        entry = self.registry.get(camera_id)
        if entry is None:
            return {"camera_id": int(camera_id), "recording": False}
        return {
            "camera_id": entry.camera_id,
            "recording": True,
            "recording_id": entry.recording_id,
            "filename": entry.filename,
            "started_at": entry.created_at,
            "stopping": entry.pending_stop is not None,
        }

    def active(self) -> list[dict[str, object | None]]:
        return [entry.to_dict() for entry in self.registry.active()]

    async def aclose(self, *, timeout: float = 30.0) -> None:
        """Stop every recording and wait for each to be finalised.

        A transcoder that has not exited within *timeout* seconds of SIGINT is
        killed; its exit callback then discards or finalises the file.
        """

        entries = self.registry.active()
        if not entries:
            return
        results = await asyncio.gather(
            *(asyncio.wait_for(self.stop(entry.camera_id), timeout) for entry in entries),
            return_exceptions=True,
        )
        for entry, outcome in zip(entries, results):
            if isinstance(outcome, asyncio.TimeoutError):
                logger.warning(
                    "Recording for camera %s ignored SIGINT; killing pid %s",
                    entry.camera_id,
                    entry.pid,
                )
                entry.handle.kill()
            elif isinstance(outcome, BaseException):
                logger.warning(
                    "Recording for camera %s did not finalise cleanly: %s",
                    entry.camera_id,
                    outcome,
                )

    async def _on_exit(
        self,
        camera_id: int,
        recording_id: int,
        output_path: Path,
        result: ProcessExit,
    ) -> None:
        entry = self.registry.pop_if(camera_id, result.pid)
        pending = entry.pending_stop if entry is not None else None
        try:
            if result.kind in (ExitKind.CLEAN, ExitKind.STOPPED) and has_media(output_path):
                record = await self._finalise(camera_id, recording_id, output_path)
            else:
                await self._discard(camera_id, recording_id, output_path, result, pending)
                return
        except Exception as exc:
            if pending is None or pending.done():
                raise
            logger.exception("Finalising recording %s failed", recording_id)
            pending.set_exception(exc)
            return
        if pending is not None and not pending.done():
            pending.set_result(record)

    async def _finalise(self, camera_id: int, recording_id: int, output_path: Path) -> Recording:
        thumbnail = await self._make_thumbnail(output_path)
        record = await asyncio.to_thread(
            self._recordings.finish, recording_id, thumbnail=thumbnail
        )
        logger.info("Recording %s for camera %s finished", recording_id, camera_id)
        self._record(
            camera_id,
            ActivityEvent.RECORDING_FINISHED,
            f"Recording saved as {record.filename}",
            {"recording_id": recording_id, "thumbnail": thumbnail},
        )
        return record

    async def _discard(
        self,
        camera_id: int,
        recording_id: int,
        output_path: Path,
        result: ProcessExit,
        pending: asyncio.Future | None,
    ) -> None:
        if result.kind is ExitKind.ABNORMAL:
            event = ActivityEvent.RECORDING_FAILED
            reason = f"Recording for camera {camera_id} failed: ffmpeg {result.describe()}"
        else:
            event = ActivityEvent.RECORDING_DISCARDED
            reason = (
                f"Recording for camera {camera_id} produced no output "
                f"(ffmpeg {result.describe()})"
            )
        await asyncio.to_thread(self._recordings.delete, recording_id)
        await asyncio.to_thread(output_path.unlink, missing_ok=True)
        self._record(
            camera_id,
            event,
            reason,
            {
                "recording_id": recording_id,
                "returncode": result.returncode,
                "stderr": list(result.stderr_tail) or None,
            },
        )
        if pending is not None and not pending.done():
            pending.set_exception(RecordingFailedError(reason, exit=result))
        else:
            logger.error("%s", reason)

    async def _make_thumbnail(self, output_path: Path) -> str | None:
        settings = self._config.get_recording_settings()
        name = thumbnail_filename(output_path.name)
        try:
            await asyncio.to_thread(
                extract_thumbnail,
                output_path,
                output_path.with_name(name),
                offset_seconds=settings.thumbnail_offset_seconds,
                quality=settings.thumbnail_quality,
            )
        except (RuntimeError, OSError, ValueError) as exc:
            logger.warning("Thumbnail for %s unavailable: %s", output_path.name, exc)
            return None
        return name

    def _record(
        self,
        camera_id: int,
        event: ActivityEvent,
        message: str,
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        if self._activity is not None:
            self._activity.record(camera_id, Function.RECORD, event, message, metadata=metadata)


__all__ = ["RecordingFailedError", "RecordingInProgressError", "RecordingOrchestrator"]
