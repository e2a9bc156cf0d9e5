"""In-memory bookkeeping of running transcoder processes."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path

from .inputs import Function
from .supervisor import ProcessHandle


@dataclass(slots=True)
class ActiveProcessEntry:
    """One running process serving one function for one camera."""

    camera_id: int
    function: Function
    handle: ProcessHandle
    output_path: Path
    created_at: float = field(default_factory=time.time)
    location: str | None = None
    recording_id: int | None = None
    filename: str | None = None
    pending_stop: asyncio.Future | None = None

    @property
    def pid(self) -> int:
        return self.handle.pid

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "camera_id": self.camera_id,
            "function": self.function.value,
            "pid": self.pid,
            "started_at": self.created_at,
        }
        if self.location is not None:
            payload["location"] = self.location
        if self.recording_id is not None:
            payload["recording_id"] = self.recording_id
            payload["filename"] = self.filename
            payload["stopping"] = self.pending_stop is not None
        return payload


class ProcessRegistry:
    """Camera id to active entry map for a single output function.

    Start and stop for the same camera are serialised through :meth:`lock`.
    Exit callbacks do not take the lock; they only remove the entry that
    belongs to their own process via :meth:`pop_if`.
    """

    def __init__(self, function: Function) -> None:
        self.function = function
        self._entries: dict[int, ActiveProcessEntry] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    def lock(self, camera_id: int) -> asyncio.Lock:
        key = int(camera_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def get(self, camera_id: int) -> ActiveProcessEntry | None:
        return self._entries.get(int(camera_id))

    def add(self, entry: ActiveProcessEntry) -> None:
        if entry.function is not self.function:
            raise ValueError(
                f"Cannot register a {entry.function.value} process in the "
                f"{self.function.value} registry"
            )
        if entry.camera_id in self._entries:
            raise RuntimeError(
                f"Camera {entry.camera_id} already has an active {self.function.value} process"
            )
        self._entries[entry.camera_id] = entry

    def pop(self, camera_id: int) -> ActiveProcessEntry | None:
        return self._entries.pop(int(camera_id), None)

    def pop_if(self, camera_id: int, pid: int) -> ActiveProcessEntry | None:
        """Remove the entry for *camera_id* only when it belongs to *pid*."""

        entry = self._entries.get(int(camera_id))
        if entry is None or entry.pid != pid:
            return None
        del self._entries[int(camera_id)]
        return entry

    def active(self) -> list[ActiveProcessEntry]:
        return list(self._entries.values())

    def __contains__(self, camera_id: object) -> bool:
        return camera_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["ActiveProcessEntry", "ProcessRegistry"]
