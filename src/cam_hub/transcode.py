"""ffmpeg command lines and post-processing of recorded media."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable, Sequence

import av
from av.error import FFmpegError
import numpy as np

try:  # pragma: no cover - dependency availability varies on CI
    import simplejpeg
except ImportError as exc:  # pragma: no cover - dependency availability varies on CI
    simplejpeg = None  # type: ignore[assignment]
    _SIMPLEJPEG_ERROR = exc
else:  # pragma: no cover - dependency availability varies on CI
    _SIMPLEJPEG_ERROR = None

from .config import HlsSettings, RecordingSettings, TranscoderSettings


class ThumbnailError(RuntimeError):
    """Raised when no frame could be extracted from a recording."""


def global_args(settings: TranscoderSettings) -> list[str]:
    return ["-hide_banner", "-nostats", "-loglevel", settings.log_level, "-nostdin"]


def build_command(
    settings: TranscoderSettings,
    input_args: Iterable[str],
    output_args: Iterable[str],
) -> list[str]:
    """Assemble the full ffmpeg argv: binary, global, input then output args."""

    return [settings.binary, *global_args(settings), *input_args, *output_args]


def hls_output_args(output_dir: Path, settings: HlsSettings) -> list[str]:
    return [
        "-f", "hls",
        "-hls_time", str(settings.segment_seconds),
        "-hls_list_size", str(settings.list_size),
        "-hls_flags", settings.flags,
        "-hls_segment_filename", str(output_dir / settings.segment_pattern),
        str(output_dir / settings.playlist_name),
    ]


def mp4_output_args(output_file: Path, settings: RecordingSettings) -> list[str]:
    # Fragmented MP4 stays playable when ffmpeg is interrupted mid-write.
    return ["-f", "mp4", "-movflags", settings.movflags, str(output_file)]


def recording_filename(camera_id: int, started_at: datetime) -> str:
    timestamp = started_at.isoformat().replace(":", "-").replace(".", "-")
    return f"camera_{int(camera_id)}_{timestamp}.mp4"


def thumbnail_filename(recording_file: str) -> str:
    return f"{Path(recording_file).stem}.jpg"


def has_media(path: Path) -> bool:
    """Return ``True`` when *path* exists and holds at least one byte."""

    try:
        return path.stat().st_size > 0
    except OSError:
        return False


def ensure_rgb_frame(frame: np.ndarray | Sequence) -> np.ndarray:
    """Return a contiguous uint8 RGB frame suitable for JPEG encoding."""

    array = np.asarray(frame)
    if array.ndim == 2:
        array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
    elif array.ndim == 3:
        if array.shape[2] == 1:
            array = np.repeat(array, 3, axis=2)
        elif array.shape[2] > 3:
            array = array[:, :, :3]
    else:
        raise ValueError("Expected a 2D or 3D frame for encoding")

    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)

    if not array.flags["C_CONTIGUOUS"]:
        array = np.ascontiguousarray(array)

    return array


def write_thumbnail(path: Path, frame: np.ndarray | Sequence, *, quality: int = 85) -> None:
    """Persist *frame* as a JPEG thumbnail."""

    if simplejpeg is None:  # pragma: no cover - dependency availability varies
        raise RuntimeError("simplejpeg is required for thumbnail generation") from _SIMPLEJPEG_ERROR
    rgb = ensure_rgb_frame(frame)
    payload = simplejpeg.encode_jpeg(rgb, quality=int(quality), colorspace="RGB")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)


def _frame_at_offset(video_path: Path, offset_seconds: float) -> np.ndarray:
    """Decode the first frame at or after *offset_seconds*.

    Recordings shorter than the offset fall back to their last decoded frame.
    """

    try:
        container = av.open(video_path.as_posix(), mode="r")
    except (FFmpegError, OSError) as exc:
        raise ThumbnailError(f"Unable to open {video_path.name}: {exc}") from exc
    with container:
        if not container.streams.video:
            raise ThumbnailError(f"{video_path.name} has no video stream")
        stream = container.streams.video[0]
        candidate = None
        try:
            for frame in container.decode(stream):
                candidate = frame
                if frame.time is not None and frame.time >= offset_seconds:
                    break
        except FFmpegError as exc:
            if candidate is None:
                raise ThumbnailError(f"Unable to decode {video_path.name}: {exc}") from exc
        if candidate is None:
            raise ThumbnailError(f"{video_path.name} contains no decodable frames")
        return candidate.to_ndarray(format="rgb24")


def extract_thumbnail(
    video_path: Path,
    thumbnail_path: Path,
    *,
    offset_seconds: float = 1.0,
    quality: int = 85,
) -> Path:
    """Write a JPEG of the frame *offset_seconds* into *video_path*."""

    frame = _frame_at_offset(video_path, max(0.0, float(offset_seconds)))
    write_thumbnail(thumbnail_path, frame, quality=quality)
    return thumbnail_path


__all__ = [
    "ThumbnailError",
    "build_command",
    "ensure_rgb_frame",
    "extract_thumbnail",
    "global_args",
    "has_media",
    "hls_output_args",
    "mp4_output_args",
    "recording_filename",
    "thumbnail_filename",
    "write_thumbnail",
]
