"""Configuration management for CamHub."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, asdict, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping

_LOG_LEVELS = frozenset(
    {"quiet", "panic", "fatal", "error", "warning", "info", "verbose", "debug", "trace"}
)


@dataclass(frozen=True, slots=True)
class TranscoderSettings:
    """Location and verbosity of the ffmpeg binary."""

    binary: str = "ffmpeg"
    log_level: str = "warning"

    def __post_init__(self) -> None:
        if not isinstance(self.binary, str) or not self.binary.strip():
            raise ValueError("Transcoder binary must be a non-empty string")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"Unknown ffmpeg log level: {self.log_level}")

    def to_dict(self) -> Dict[str, str]:
        return {"binary": self.binary, "log_level": self.log_level}


@dataclass(frozen=True, slots=True)
class HlsSettings:
    """Segmenting parameters for live streams."""

    segment_seconds: int = 2
    list_size: int = 3
    flags: str = "delete_segments+omit_endlist"
    playlist_name: str = "stream.m3u8"
    segment_pattern: str = "segment_%03d.ts"

    def __post_init__(self) -> None:
        if self.segment_seconds < 1 or self.segment_seconds > 30:
            raise ValueError("HLS segment duration must be between 1 and 30 seconds")
        if self.list_size < 1 or self.list_size > 50:
            raise ValueError("HLS playlist size must be between 1 and 50 segments")
        if "/" in self.playlist_name or not self.playlist_name.endswith(".m3u8"):
            raise ValueError("HLS playlist name must be a bare .m3u8 filename")
        if "/" in self.segment_pattern or "%" not in self.segment_pattern:
            raise ValueError("HLS segment pattern must be a bare filename with a % counter")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class RecordingSettings:
    """MP4 recording and finalisation options."""

    movflags: str = "frag_keyframe+empty_moov"
    thumbnail_offset_seconds: float = 1.0
    thumbnail_quality: int = 85
    stop_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        offset = float(self.thumbnail_offset_seconds)
        if not math.isfinite(offset) or offset < 0:
            raise ValueError("Thumbnail offset must be a non-negative number of seconds")
        if self.thumbnail_quality < 1 or self.thumbnail_quality > 100:
            raise ValueError("Thumbnail quality must be between 1 and 100")
        timeout = float(self.stop_timeout_seconds)
        if not math.isfinite(timeout) or timeout <= 0:
            raise ValueError("Recording stop timeout must be positive")
        object.__setattr__(self, "thumbnail_offset_seconds", offset)
        object.__setattr__(self, "stop_timeout_seconds", timeout)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class NegotiationSettings:
    """ONVIF handshake defaults."""

    timeout_seconds: float = 10.0
    default_port: int = 80

    def __post_init__(self) -> None:
        timeout = float(self.timeout_seconds)
        if not math.isfinite(timeout) or timeout <= 0:
            raise ValueError("Negotiation timeout must be positive")
        if self.default_port < 1 or self.default_port > 65535:
            raise ValueError("Port must be an integer between 1 and 65535")
        object.__setattr__(self, "timeout_seconds", timeout)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class StoragePaths:
    """Filesystem locations for artifacts and metadata."""

    streams_dir: Path = Path("public/streams")
    recordings_dir: Path = Path("recordings")
    database_path: Path = Path("data/camhub.sqlite3")
    activity_log_path: Path = Path("data/activity_log.jsonl")

    def resolve(self, base: Path) -> "StoragePaths":
        """Return a copy with relative paths anchored at *base*."""

        def _anchor(value: Path) -> Path:
            return value if value.is_absolute() else base / value

        return StoragePaths(
            streams_dir=_anchor(self.streams_dir),
            recordings_dir=_anchor(self.recordings_dir),
            database_path=_anchor(self.database_path),
            activity_log_path=_anchor(self.activity_log_path),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "streams_dir": str(self.streams_dir),
            "recordings_dir": str(self.recordings_dir),
            "database_path": str(self.database_path),
            "activity_log_path": str(self.activity_log_path),
        }


DEFAULT_TRANSCODER_SETTINGS = TranscoderSettings()
DEFAULT_HLS_SETTINGS = HlsSettings()
DEFAULT_RECORDING_SETTINGS = RecordingSettings()
DEFAULT_NEGOTIATION_SETTINGS = NegotiationSettings()
DEFAULT_STORAGE_PATHS = StoragePaths()


def _parse_int(value: Any, *, name: str) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if not math.isfinite(number) or int(number) != number:
        raise ValueError(f"{name} must be an integer")
    return int(number)


def _parse_float(value: Any, *, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    return number


def _parse_text(value: Any, *, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _parse_transcoder(value: Any, *, default: TranscoderSettings) -> TranscoderSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Transcoder settings must be provided as a mapping")
    return TranscoderSettings(
        binary=_parse_text(value.get("binary", default.binary), name="Transcoder binary"),
        log_level=_parse_text(
            value.get("log_level", default.log_level), name="Transcoder log level"
        ).lower(),
    )


def _parse_hls(value: Any, *, default: HlsSettings) -> HlsSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("HLS settings must be provided as a mapping")
    return HlsSettings(
        segment_seconds=_parse_int(
            value.get("segment_seconds", default.segment_seconds), name="HLS segment duration"
        ),
        list_size=_parse_int(value.get("list_size", default.list_size), name="HLS playlist size"),
        flags=_parse_text(value.get("flags", default.flags), name="HLS flags"),
        playlist_name=_parse_text(
            value.get("playlist_name", default.playlist_name), name="HLS playlist name"
        ),
        segment_pattern=_parse_text(
            value.get("segment_pattern", default.segment_pattern), name="HLS segment pattern"
        ),
    )


def _parse_recording(value: Any, *, default: RecordingSettings) -> RecordingSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Recording settings must be provided as a mapping")
    return RecordingSettings(
        movflags=_parse_text(value.get("movflags", default.movflags), name="MP4 movflags"),
        thumbnail_offset_seconds=_parse_float(
            value.get("thumbnail_offset_seconds", default.thumbnail_offset_seconds),
            name="Thumbnail offset",
        ),
        thumbnail_quality=_parse_int(
            value.get("thumbnail_quality", default.thumbnail_quality), name="Thumbnail quality"
        ),
        stop_timeout_seconds=_parse_float(
            value.get("stop_timeout_seconds", default.stop_timeout_seconds),
            name="Recording stop timeout",
        ),
    )


def _parse_negotiation(value: Any, *, default: NegotiationSettings) -> NegotiationSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Negotiation settings must be provided as a mapping")
    return NegotiationSettings(
        timeout_seconds=_parse_float(
            value.get("timeout_seconds", default.timeout_seconds), name="Negotiation timeout"
        ),
        default_port=_parse_int(value.get("default_port", default.default_port), name="Port"),
    )


def _parse_paths(value: Any, *, default: StoragePaths) -> StoragePaths:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Storage paths must be provided as a mapping")
    resolved: dict[str, Path] = {}
    for field_name in ("streams_dir", "recordings_dir", "database_path", "activity_log_path"):
        raw = value.get(field_name)
        if raw is None:
            resolved[field_name] = getattr(default, field_name)
        else:
            resolved[field_name] = Path(_parse_text(raw, name=field_name))
    return StoragePaths(**resolved)


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        (
            self._transcoder,
            self._hls,
            self._recording,
            self._negotiation,
            self._paths,
        ) = self._load()
        # Environment overrides apply for this process only and are never saved.
        self._path_overrides: dict[str, Path] = {}
        self._binary_override: str | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(
        self,
    ) -> tuple[
        TranscoderSettings,
        HlsSettings,
        RecordingSettings,
        NegotiationSettings,
        StoragePaths,
    ]:
        if not self._path.exists():
            return (
                DEFAULT_TRANSCODER_SETTINGS,
                DEFAULT_HLS_SETTINGS,
                DEFAULT_RECORDING_SETTINGS,
                DEFAULT_NEGOTIATION_SETTINGS,
                DEFAULT_STORAGE_PATHS,
            )
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            return (
                _parse_transcoder(payload.get("transcoder"), default=DEFAULT_TRANSCODER_SETTINGS),
                _parse_hls(payload.get("hls"), default=DEFAULT_HLS_SETTINGS),
                _parse_recording(payload.get("recording"), default=DEFAULT_RECORDING_SETTINGS),
                _parse_negotiation(
                    payload.get("negotiation"), default=DEFAULT_NEGOTIATION_SETTINGS
                ),
                _parse_paths(payload.get("paths"), default=DEFAULT_STORAGE_PATHS),
            )
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "transcoder": self._transcoder.to_dict(),
            "hls": self._hls.to_dict(),
            "recording": self._recording.to_dict(),
            "negotiation": self._negotiation.to_dict(),
            "paths": self._paths.to_dict(),
        }
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def get_transcoder_settings(self) -> TranscoderSettings:
        with self._lock:
            if self._binary_override:
                return replace(self._transcoder, binary=self._binary_override)
            return self._transcoder

    def get_hls_settings(self) -> HlsSettings:
        with self._lock:
            return self._hls

    def set_hls_settings(self, data: Mapping[str, Any]) -> HlsSettings:
        with self._lock:
            settings = _parse_hls(data, default=self._hls)
            self._hls = settings
            self._save()
        return settings

    def get_recording_settings(self) -> RecordingSettings:
        with self._lock:
            return self._recording

    def set_recording_settings(self, data: Mapping[str, Any]) -> RecordingSettings:
        with self._lock:
            settings = _parse_recording(data, default=self._recording)
            self._recording = settings
            self._save()
        return settings

    def get_negotiation_settings(self) -> NegotiationSettings:
        with self._lock:
            return self._negotiation

    def get_storage_paths(self) -> StoragePaths:
        """Return storage paths anchored at the configuration file's directory."""

        with self._lock:
            paths = replace(self._paths, **self._path_overrides)
        return paths.resolve(self._path.parent)

    def override_storage_paths(self, **overrides: Path | str | None) -> StoragePaths:
        """Apply non-persistent path overrides, e.g. from the environment."""

        cleaned = {key: Path(value) for key, value in overrides.items() if value}
        with self._lock:
            self._path_overrides.update(cleaned)
        return self.get_storage_paths()

    def override_transcoder_binary(self, binary: str | None) -> TranscoderSettings:
        if binary:
            with self._lock:
                self._binary_override = binary
        return self.get_transcoder_settings()


__all__ = [
    "ConfigManager",
    "DEFAULT_HLS_SETTINGS",
    "DEFAULT_NEGOTIATION_SETTINGS",
    "DEFAULT_RECORDING_SETTINGS",
    "DEFAULT_STORAGE_PATHS",
    "DEFAULT_TRANSCODER_SETTINGS",
    "HlsSettings",
    "NegotiationSettings",
    "RecordingSettings",
    "StoragePaths",
    "TranscoderSettings",
]
