"""Live HLS streaming for registered cameras."""
from __future__ import annotations

import asyncio
import itertools
import logging
import shutil
from functools import partial
from pathlib import Path
from typing import Mapping

from .activity_log import ActivityEvent, ActivityLog
from .config import ConfigManager
from .inputs import Function, InputResolver, resolver_for
from .policy import ExclusivityPolicy
from .registry import ActiveProcessEntry, ProcessRegistry
from .storage import Camera, CameraStore, CameraType
from .supervisor import ProcessExit, ProcessSupervisor, SpawnError
from .transcode import build_command, hls_output_args

logger = logging.getLogger(__name__)


def _reset_directory(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)


def _remove_directory(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


class StreamOrchestrator:
    """Start, stop and clean up one HLS transcoder per camera.

    ``start`` returns as soon as ffmpeg is launched; the playlist appears once
    the first segment is written. ``stop`` is fire-and-forget: the entry is
    removed immediately and the exit callback deletes the segment directory
    when ffmpeg is gone.
    """

    def __init__(
        self,
        *,
        cameras: CameraStore,
        resolvers: Mapping[CameraType, InputResolver],
        supervisor: ProcessSupervisor,
        config: ConfigManager,
        streams_dir: Path,
        registry: ProcessRegistry | None = None,
        policy: ExclusivityPolicy | None = None,
        activity_log: ActivityLog | None = None,
    ) -> None:
        self._cameras = cameras
        self._resolvers = resolvers
        self._supervisor = supervisor
        self._config = config
        self._streams_dir = Path(streams_dir)
        self.registry = registry or ProcessRegistry(Function.STREAM)
        self._policy = policy or ExclusivityPolicy()
        self._policy.attach(Function.STREAM, self.registry)
        self._activity = activity_log
        self._generations = itertools.count(1)
        self._owners: dict[int, int] = {}

    @property
    def streams_dir(self) -> Path:
        return self._streams_dir

    def output_dir(self, camera_id: int) -> Path:
        return self._streams_dir / str(int(camera_id))

    def location(self, camera_id: int) -> str:
        playlist = self._config.get_hls_settings().playlist_name
        return f"/streams/{int(camera_id)}/{playlist}"

    async def start(self, camera_id: int) -> dict[str, str]:
        """Ensure a stream is running for *camera_id* and return its playlist."""

        async with self.registry.lock(camera_id):
            existing = self.registry.get(camera_id)
            if existing is not None:
                return {"location": existing.location or self.location(camera_id)}

            camera = await asyncio.to_thread(self._cameras.get_camera, camera_id)
            async with self._policy.claim(camera, Function.STREAM):
                return await self._launch(camera)

    async def _launch(self, camera: Camera) -> dict[str, str]:
        resolver = resolver_for(camera.type, self._resolvers)
        resolved = await resolver.resolve(camera, Function.STREAM)

        output_dir = self.output_dir(camera.id)
        # From here on the directory belongs to this start, not to any
        # previous process still shutting down.
        generation = next(self._generations)
        self._owners[camera.id] = generation
        await asyncio.to_thread(_reset_directory, output_dir)
        argv = build_command(
            self._config.get_transcoder_settings(),
            resolved.input_args,
            hls_output_args(output_dir, self._config.get_hls_settings()),
        )
        try:
            handle = await self._supervisor.spawn(
                argv,
                partial(self._on_exit, camera.id, output_dir, generation),
                label=f"stream[{camera.id}]",
            )
        except SpawnError:
            await asyncio.to_thread(_remove_directory, output_dir)
            raise
        location = self.location(camera.id)
        self.registry.add(
            ActiveProcessEntry(
                camera_id=camera.id,
                function=Function.STREAM,
                handle=handle,
                output_path=output_dir,
                location=location,
            )
        )
        logger.info(
            "Streaming camera %s from %s to %s",
            camera.id,
            resolved.masked_locator(),
            location,
        )
        self._record(
            camera.id,
            ActivityEvent.STREAM_STARTED,
            f"Stream started for {camera.name}",
            {"pid": handle.pid, "location": location},
        )
        return {"location": location}

    async def stop(self, camera_id: int) -> dict[str, bool]:
        async with self.registry.lock(camera_id):
            entry = self.registry.pop(camera_id)
            if entry is None:
                return {"found": False}
            entry.handle.terminate()
        logger.info("Stopping stream for camera %s (pid %s)", camera_id, entry.pid)
        self._record(
            camera_id, ActivityEvent.STREAM_STOPPED, "Stream stop requested", {"pid": entry.pid}
        )
        return {"found": True}

    def is_streaming(self, camera_id: int) -> bool:
        return int(camera_id) in self.registry

    def status(self, camera_id: int) -> dict[str, object | None]:
        entry = self.registry.get(camera_id)
        if entry is None:
            return {"camera_id": int(camera_id), "streaming": False, "location": None}
        return {
            "camera_id": entry.camera_id,
            "streaming": True,
            "location": entry.location,
            "pid": entry.pid,
            "started_at": entry.created_at,
        }

    def active(self) -> list[dict[str, object | None]]:
        return [entry.to_dict() for entry in self.registry.active()]

    async def aclose(self, *, timeout: float = 10.0) -> None:
        """Stop every stream and wait briefly for the transcoders to exit."""

        entries = self.registry.active()
        for entry in entries:
            await self.stop(entry.camera_id)
        for entry in entries:
            try:
                await asyncio.wait_for(entry.handle.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Stream for camera %s ignored SIGINT; killing pid %s",
                    entry.camera_id,
                    entry.pid,
                )
                entry.handle.kill()

    async def _on_exit(
        self, camera_id: int, output_dir: Path, generation: int, result: ProcessExit
    ) -> None:
        entry = self.registry.pop_if(camera_id, result.pid)
        if entry is not None:
            logger.warning("Stream for camera %s ended unexpectedly: %s", camera_id, result.describe())
        self._record(
            camera_id,
            ActivityEvent.STREAM_EXITED,
            f"Stream transcoder {result.describe()}",
            {"pid": result.pid, "returncode": result.returncode, "kind": result.kind.value},
        )
        if self._owners.get(camera_id) != generation:
            # A newer start already owns the directory.
            return
        await asyncio.to_thread(_remove_directory, output_dir)

    def _record(
        self,
        camera_id: int,
        event: ActivityEvent,
        message: str,
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        if self._activity is not None:
            self._activity.record(camera_id, Function.STREAM, event, message, metadata=metadata)


__all__ = ["StreamOrchestrator"]
