"""SQLite persistence for cameras and recording metadata."""
from __future__ import annotations

from dataclasses import dataclass, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from threading import RLock
from typing import Any, Mapping

import sqlite3


class CameraType(str, Enum):
    """Camera source kinds understood by the input resolvers."""

    ONVIF = "onvif"
    UVC = "uvc"
    UVC_RTSP = "uvc_rtsp"
    RTSP = "rtsp"


class CameraNotFoundError(LookupError):
    """Raised when a camera id does not exist in the store."""

    def __init__(self, camera_id: int) -> None:
        super().__init__(f"Camera with ID {camera_id} not found.")
        self.camera_id = camera_id


@dataclass(frozen=True, slots=True)
class Camera:
    id: int
    name: str
    type: CameraType
    host: str | None = None
    port: int | None = None
    username: str | None = None
    password: str | None = None
    xaddr: str | None = None
    device_path: str | None = None
    stream_path: str | None = None

    def to_dict(self, *, include_secrets: bool = False) -> dict[str, object]:
        payload = asdict(self)
        payload["type"] = self.type.value
        if not include_secrets:
            payload["password"] = "***" if self.password else None
        return payload


@dataclass(slots=True)
class Recording:
    id: int
    camera_id: int
    filename: str
    start_time: datetime
    thumbnail: str | None = None
    end_time: datetime | None = None
    is_finished: bool = False
    camera_name: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["start_time"] = self.start_time.isoformat()
        payload["end_time"] = self.end_time.isoformat() if self.end_time else None
        if self.camera_name is None:
            payload.pop("camera_name")
        return payload


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


_CAMERA_COLUMNS = (
    "name",
    "type",
    "host",
    "port",
    "username",
    "password",
    "xaddr",
    "device_path",
    "stream_path",
)


class Database:
    """Owns the SQLite file and the schema shared by both stores."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._mutex = RLock()
        self._ensure_schema()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def mutex(self) -> RLock:
        return self._mutex

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cameras (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'onvif',
                    host TEXT,
                    port INTEGER,
                    username TEXT,
                    password TEXT,
                    xaddr TEXT,
                    device_path TEXT,
                    stream_path TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS recordings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    camera_id INTEGER NOT NULL
                        REFERENCES cameras(id) ON DELETE CASCADE,
                    filename TEXT NOT NULL,
                    thumbnail TEXT,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    is_finished INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_recordings_start ON recordings(start_time)"
            )


class CameraStore:
    """Camera lookup and registration."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def add_camera(self, payload: Mapping[str, Any]) -> Camera:
        values = {column: payload.get(column) for column in _CAMERA_COLUMNS}
        camera_type = CameraType(values["type"] or CameraType.ONVIF.value)
        values["type"] = camera_type.value
        if not values["name"]:
            raise ValueError("Camera name is required")
        with self._db.mutex:
            with self._db.connect() as conn:
                cursor = conn.execute(
                    f"INSERT INTO cameras ({', '.join(_CAMERA_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in _CAMERA_COLUMNS)})",
                    tuple(values[column] for column in _CAMERA_COLUMNS),
                )
                conn.commit()
                camera_id = int(cursor.lastrowid)
        return self.get_camera(camera_id)

    def get_camera(self, camera_id: int) -> Camera:
        with self._db.mutex:
            with self._db.connect() as conn:
                row = conn.execute(
                    "SELECT * FROM cameras WHERE id = ?", (int(camera_id),)
                ).fetchone()
        if row is None:
            raise CameraNotFoundError(int(camera_id))
        return self._row_to_camera(row)

    def list_cameras(self) -> list[Camera]:
        with self._db.mutex:
            with self._db.connect() as conn:
                rows = conn.execute("SELECT * FROM cameras ORDER BY id").fetchall()
        return [self._row_to_camera(row) for row in rows]

    def update_camera(self, camera_id: int, changes: Mapping[str, Any]) -> Camera:
        """Apply *changes* to the stored attributes; the type is fixed at creation."""

        unknown = set(changes) - set(_CAMERA_COLUMNS)
        if unknown or "type" in changes:
            fields = sorted(unknown or {"type"})
            raise ValueError(f"Cannot update camera fields: {', '.join(fields)}")
        if "name" in changes and not changes["name"]:
            raise ValueError("Camera name is required")
        columns = [column for column in _CAMERA_COLUMNS if column in changes]
        if columns:
            with self._db.mutex:
                with self._db.connect() as conn:
                    cursor = conn.execute(
                        f"UPDATE cameras SET {', '.join(f'{column} = ?' for column in columns)} "
                        "WHERE id = ?",
                        (*(changes[column] for column in columns), int(camera_id)),
                    )
                    conn.commit()
            if cursor.rowcount == 0:
                raise CameraNotFoundError(int(camera_id))
        return self.get_camera(camera_id)

    def delete_camera(self, camera_id: int) -> bool:
        with self._db.mutex:
            with self._db.connect() as conn:
                cursor = conn.execute("DELETE FROM cameras WHERE id = ?", (int(camera_id),))
                conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_camera(row: sqlite3.Row) -> Camera:
        port = row["port"]
        return Camera(
            id=int(row["id"]),
            name=str(row["name"]),
            type=CameraType(row["type"]),
            host=row["host"],
            port=int(port) if port is not None else None,
            username=row["username"],
            password=row["password"],
            xaddr=row["xaddr"],
            device_path=row["device_path"],
            stream_path=row["stream_path"],
        )


class RecordingStore:
    """Recording rows: created on start, finished or deleted on exit."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def create(
        self,
        *,
        camera_id: int,
        filename: str,
        start_time: datetime | None = None,
    ) -> Recording:
        record = Recording(
            id=-1,
            camera_id=int(camera_id),
            filename=filename,
            start_time=start_time or _utcnow(),
        )
        with self._db.mutex:
            with self._db.connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO recordings (camera_id, filename, start_time, is_finished)
                    VALUES (?, ?, ?, 0)
                    """,
                    (record.camera_id, record.filename, record.start_time.isoformat()),
                )
                conn.commit()
        return replace(record, id=int(cursor.lastrowid))

    def finish(
        self,
        recording_id: int,
        *,
        thumbnail: str | None,
        end_time: datetime | None = None,
    ) -> Recording:
        finished_at = end_time or _utcnow()
        with self._db.mutex:
            with self._db.connect() as conn:
                conn.execute(
                    """
                    UPDATE recordings
                    SET is_finished = 1, end_time = ?, thumbnail = ?
                    WHERE id = ?
                    """,
                    (finished_at.isoformat(), thumbnail, int(recording_id)),
                )
                conn.commit()
        record = self.get(recording_id)
        if record is None:
            raise LookupError(f"Recording {recording_id} disappeared while finishing")
        return record

    def delete(self, recording_id: int) -> bool:
        with self._db.mutex:
            with self._db.connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM recordings WHERE id = ?", (int(recording_id),)
                )
                conn.commit()
        return cursor.rowcount > 0

    def get(self, recording_id: int) -> Recording | None:
        with self._db.mutex:
            with self._db.connect() as conn:
                row = conn.execute(
                    "SELECT * FROM recordings WHERE id = ?", (int(recording_id),)
                ).fetchone()
        return self._row_to_recording(row) if row is not None else None

    def list_recordings(self, *, finished_only: bool = True) -> list[Recording]:
        query = (
            "SELECT recordings.*, cameras.name AS camera_name FROM recordings "
            "JOIN cameras ON recordings.camera_id = cameras.id"
        )
        if finished_only:
            query += " WHERE recordings.is_finished = 1"
        query += " ORDER BY recordings.start_time DESC"
        with self._db.mutex:
            with self._db.connect() as conn:
                rows = conn.execute(query).fetchall()
        return [self._row_to_recording(row) for row in rows]

    @staticmethod
    def _row_to_recording(row: sqlite3.Row) -> Recording:
        keys = row.keys()
        start_time = _parse_timestamp(row["start_time"])
        if start_time is None:
            raise ValueError(f"Recording {row['id']} has no start time")
        return Recording(
            id=int(row["id"]),
            camera_id=int(row["camera_id"]),
            filename=str(row["filename"]),
            thumbnail=row["thumbnail"],
            start_time=start_time,
            end_time=_parse_timestamp(row["end_time"]),
            is_finished=bool(row["is_finished"]),
            camera_name=row["camera_name"] if "camera_name" in keys else None,
        )


__all__ = [
    "Camera",
    "CameraNotFoundError",
    "CameraStore",
    "CameraType",
    "Database",
    "Recording",
    "RecordingStore",
]
