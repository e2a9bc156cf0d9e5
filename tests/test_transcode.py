from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

np = pytest.importorskip("numpy")
av = pytest.importorskip("av")

from cam_hub.config import HlsSettings, RecordingSettings, TranscoderSettings
from cam_hub.transcode import (
    ThumbnailError,
    build_command,
    ensure_rgb_frame,
    extract_thumbnail,
    has_media,
    hls_output_args,
    mp4_output_args,
    recording_filename,
    thumbnail_filename,
)


def _encode_clip(path: Path, *, frames: int = 20, rate: int = 10) -> None:
    container = av.open(path.as_posix(), mode="w")
    stream = container.add_stream("mpeg4", rate=rate)
    stream.width = 64
    stream.height = 48
    stream.pix_fmt = "yuv420p"
    for index in range(frames):
        image = np.full((48, 64, 3), (index * 12) % 256, dtype=np.uint8)
        frame = av.VideoFrame.from_ndarray(image, format="rgb24")
        for packet in stream.encode(frame):
            container.mux(packet)
    for packet in stream.encode():
        container.mux(packet)
    container.close()


def test_build_command_orders_global_input_and_output_args(tmp_path: Path) -> None:
    argv = build_command(
        TranscoderSettings(binary="/usr/bin/ffmpeg", log_level="error"),
        ["-i", "rtsp://cam/s"],
        mp4_output_args(tmp_path / "out.mp4", RecordingSettings()),
    )

    assert argv == [
        "/usr/bin/ffmpeg",
        "-hide_banner", "-nostats", "-loglevel", "error", "-nostdin",
        "-i", "rtsp://cam/s",
        "-f", "mp4", "-movflags", "frag_keyframe+empty_moov", str(tmp_path / "out.mp4"),
    ]


def test_hls_args_follow_settings(tmp_path: Path) -> None:
    args = hls_output_args(tmp_path, HlsSettings(segment_seconds=4, list_size=5))

    assert args[args.index("-hls_time") + 1] == "4"
    assert args[args.index("-hls_list_size") + 1] == "5"
    assert args[-1] == str(tmp_path / "stream.m3u8")


def test_recording_and_thumbnail_names() -> None:
    started = datetime(2024, 5, 1, 12, 30, 15, 250000, tzinfo=timezone.utc)

    name = recording_filename(7, started)

    assert name == "camera_7_2024-05-01T12-30-15-250000+00-00.mp4"
    assert thumbnail_filename(name) == "camera_7_2024-05-01T12-30-15-250000+00-00.jpg"


def test_has_media(tmp_path: Path) -> None:
    empty = tmp_path / "empty.mp4"
    empty.write_bytes(b"")
    full = tmp_path / "full.mp4"
    full.write_bytes(b"\x00")

    assert has_media(full)
    assert not has_media(empty)
    assert not has_media(tmp_path / "missing.mp4")


def test_ensure_rgb_frame_expands_grayscale() -> None:
    frame = ensure_rgb_frame(np.zeros((4, 6), dtype=np.float32))

    assert frame.shape == (4, 6, 3)
    assert frame.dtype == np.uint8


def test_extract_thumbnail_from_encoded_clip(tmp_path: Path) -> None:
    pytest.importorskip("simplejpeg")
    clip = tmp_path / "clip.mp4"
    _encode_clip(clip)

    thumb = extract_thumbnail(clip, tmp_path / "clip.jpg", offset_seconds=1.0)

    assert thumb.exists()
    assert thumb.read_bytes()[:2] == b"\xff\xd8"


def test_extract_thumbnail_short_clip_uses_last_frame(tmp_path: Path) -> None:
    pytest.importorskip("simplejpeg")
    clip = tmp_path / "short.mp4"
    _encode_clip(clip, frames=3)

    thumb = extract_thumbnail(clip, tmp_path / "short.jpg", offset_seconds=5.0)

    assert thumb.stat().st_size > 0


def test_extract_thumbnail_rejects_garbage(tmp_path: Path) -> None:
    clip = tmp_path / "broken.mp4"
    clip.write_bytes(b"definitely not an mp4")

    with pytest.raises(ThumbnailError):
        extract_thumbnail(clip, tmp_path / "broken.jpg")
    assert not (tmp_path / "broken.jpg").exists()
