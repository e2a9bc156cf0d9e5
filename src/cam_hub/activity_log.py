"""Per-camera history of stream and recording lifecycle events.

Events are kept in memory for ``GET /api/logs`` and appended to a JSON lines
file so that the history survives a restart. On start-up only the newest
``max_entries`` lines are restored, and the file is rewritten to that size
once it has grown to twice the limit.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Mapping

from .inputs import Function

logger = logging.getLogger(__name__)


class ActivityEvent(str, Enum):
    STREAM_STARTED = "stream_started"
    STREAM_STOPPED = "stream_stopped"
    STREAM_EXITED = "stream_exited"
    RECORDING_STARTED = "recording_started"
    RECORDING_FINISHED = "recording_finished"
    RECORDING_FAILED = "recording_failed"
    RECORDING_DISCARDED = "recording_discarded"


@dataclass(frozen=True, slots=True)
class ActivityEntry:
    camera_id: int
    function: Function
    event: ActivityEvent
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "camera_id": self.camera_id,
            "function": self.function.value,
            "event": self.event.value,
            "message": self.message,
        }
        if self.details:
            payload["metadata"] = dict(self.details)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ActivityEntry":
        """Rebuild an entry written by :meth:`to_dict`; raises on malformed input."""

        camera_id = payload["camera_id"]
        if not isinstance(camera_id, int) or isinstance(camera_id, bool):
            raise ValueError(f"camera_id must be an integer, got {camera_id!r}")
        message = payload["message"]
        if not isinstance(message, str):
            raise ValueError("message must be a string")
        details = payload.get("metadata") or {}
        if not isinstance(details, Mapping):
            raise ValueError("metadata must be an object")
        return cls(
            camera_id=camera_id,
            function=Function(payload["function"]),
            event=ActivityEvent(payload["event"]),
            message=message,
            details=dict(details),
            timestamp=float(payload["timestamp"]),
        )


class ActivityLog:
    def __init__(self, path: Path | str | None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path = Path(path) if path is not None else None
        self._max_entries = max_entries
        self._entries: Deque[ActivityEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._restore(self._path)

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        camera_id: int,
        function: Function | str,
        event: ActivityEvent | str,
        message: str,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> ActivityEntry:
        entry = ActivityEntry(
            camera_id=int(camera_id),
            function=Function(function),
            event=ActivityEvent(event),
            message=message,
            details={key: value for key, value in (metadata or {}).items() if value is not None},
        )
        with self._lock:
            self._entries.append(entry)
            if self._path is not None:
                try:
                    with self._path.open("a", encoding="utf-8") as handle:
                        handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
                except OSError as exc:
                    logger.warning("Unable to persist activity entry: %s", exc)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        camera_id: int | None = None,
        function: Function | str | None = None,
    ) -> list[ActivityEntry]:
        """Return the newest matching entries, oldest first."""

        wanted = Function(function) if function else None
        matches: Deque[ActivityEntry] = deque(maxlen=max(1, limit) if limit is not None else None)
        with self._lock:
            for entry in self._entries:
                if camera_id is not None and entry.camera_id != camera_id:
                    continue
                if wanted is not None and entry.function is not wanted:
                    continue
                matches.append(entry)
        return list(matches)

    def _restore(self, path: Path) -> None:
        if not path.exists():
            return
        lines: Deque[str] = deque(maxlen=self._max_entries)
        total = 0
        with path.open("r", encoding="utf-8") as handle:
            for total, line in enumerate(handle, start=1):
                lines.append(line)
        skipped = 0
        for line in lines:
            if not line.strip():
                continue
            try:
                self._entries.append(ActivityEntry.from_dict(json.loads(line)))
            except (KeyError, TypeError, ValueError):
                skipped += 1
        if skipped:
            logger.warning("Skipped %d unreadable activity entries in %s", skipped, path)
        if total >= 2 * self._max_entries:
            with path.open("w", encoding="utf-8") as handle:
                for entry in self._entries:
                    handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")


__all__ = ["ActivityEntry", "ActivityEvent", "ActivityLog"]
