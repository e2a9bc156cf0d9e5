"""Mutual exclusion between functions sharing a single-open device."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping

from .inputs import Function, requires_exclusive_access
from .registry import ProcessRegistry
from .storage import Camera

logger = logging.getLogger(__name__)


class ExclusivityError(RuntimeError):
    """Raised when a device is already held by the other function."""


class ExclusivityPolicy:
    """Refuse to open an exclusive device twice for the same camera.

    Each orchestrator serialises its own starts through its registry lock, so
    a stream start and a recording start for the same camera may overlap.
    :meth:`claim` closes that gap with a device lock shared by every function:
    the holder check and the registration of the new process both happen
    while it is held.
    """

    def __init__(self, registries: Mapping[Function, ProcessRegistry] | None = None) -> None:
        self._registries: dict[Function, ProcessRegistry] = dict(registries or {})
        self._device_locks: dict[int, asyncio.Lock] = {}

    def attach(self, function: Function, registry: ProcessRegistry) -> None:
        self._registries[function] = registry

    def holder(self, camera: Camera, function: Function) -> Function | None:
        """Return the other function currently holding *camera*'s device."""

        if not requires_exclusive_access(camera.type):
            return None
        for other, registry in self._registries.items():
            if other is function:
                continue
            if camera.id in registry:
                return other
        return None

    def check(self, camera: Camera, function: Function) -> None:
        other = self.holder(camera, function)
        if other is None:
            return
        logger.info(
            "Refusing %s for camera %s: device held by %s", function.value, camera.id, other.value
        )
        if function is Function.RECORD:
            raise ExclusivityError(
                "Cannot start recording: UVC camera is currently streaming. "
                "Please stop the stream first."
            )
        raise ExclusivityError(
            "Cannot start stream: UVC camera is currently recording. "
            "Please stop the recording first."
        )

    @asynccontextmanager
    async def claim(self, camera: Camera, function: Function) -> AsyncIterator[None]:
        """Check and hold *camera*'s device while a start registers its process.

        Shared-source cameras pass straight through.
        """

        if not requires_exclusive_access(camera.type):
            yield
            return
        lock = self._device_locks.get(camera.id)
        if lock is None:
            lock = self._device_locks[camera.id] = asyncio.Lock()
        async with lock:
            self.check(camera, function)
            yield


__all__ = ["ExclusivityError", "ExclusivityPolicy"]
