from __future__ import annotations

import json
from pathlib import Path

import pytest

from cam_hub.config import (
    ConfigManager,
    DEFAULT_HLS_SETTINGS,
    HlsSettings,
    RecordingSettings,
    TranscoderSettings,
)


def test_defaults_when_file_missing(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")

    assert manager.get_hls_settings() == DEFAULT_HLS_SETTINGS
    assert manager.get_transcoder_settings().binary == "ffmpeg"
    recording = manager.get_recording_settings()
    assert recording.movflags == "frag_keyframe+empty_moov"
    assert recording.thumbnail_offset_seconds == 1.0
    negotiation = manager.get_negotiation_settings()
    assert negotiation.timeout_seconds == 10.0
    assert negotiation.default_port == 80


def test_relative_paths_resolve_against_config_directory(tmp_path: Path) -> None:
    config_path = tmp_path / "etc" / "config.json"
    config_path.parent.mkdir()
    config_path.write_text(
        json.dumps({"paths": {"recordings_dir": "media", "streams_dir": "/srv/hls"}}),
        encoding="utf-8",
    )

    paths = ConfigManager(config_path).get_storage_paths()

    assert paths.recordings_dir == tmp_path / "etc" / "media"
    assert paths.streams_dir == Path("/srv/hls")
    assert paths.database_path == tmp_path / "etc" / "data" / "camhub.sqlite3"


def test_settings_round_trip(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    manager = ConfigManager(config_path)

    updated = manager.set_hls_settings({"segment_seconds": 4, "list_size": 6})
    manager.set_recording_settings({"thumbnail_offset_seconds": 2.5})

    assert updated.segment_seconds == 4
    reloaded = ConfigManager(config_path)
    assert reloaded.get_hls_settings().list_size == 6
    assert reloaded.get_hls_settings().flags == "delete_segments+omit_endlist"
    assert reloaded.get_recording_settings().thumbnail_offset_seconds == 2.5


def test_environment_style_overrides_are_not_persisted(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    manager = ConfigManager(config_path)

    paths = manager.override_storage_paths(streams_dir=str(tmp_path / "hls"), recordings_dir=None)
    manager.override_transcoder_binary("/opt/ffmpeg/bin/ffmpeg")

    assert paths.streams_dir == tmp_path / "hls"
    assert paths.recordings_dir == tmp_path / "recordings"
    assert manager.get_transcoder_settings().binary == "/opt/ffmpeg/bin/ffmpeg"
    assert not config_path.exists()


def test_invalid_file_raises_runtime_error(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"hls": {"segment_seconds": 0}}), encoding="utf-8")

    with pytest.raises(RuntimeError, match="Failed to load configuration"):
        ConfigManager(config_path)


def test_malformed_json_raises_runtime_error(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not json", encoding="utf-8")

    with pytest.raises(RuntimeError, match="Failed to load configuration"):
        ConfigManager(config_path)


@pytest.mark.parametrize(
    "factory",
    [
        lambda: HlsSettings(playlist_name="nested/stream.m3u8"),
        lambda: HlsSettings(segment_pattern="segment.ts"),
        lambda: RecordingSettings(thumbnail_quality=0),
        lambda: RecordingSettings(stop_timeout_seconds=0),
        lambda: TranscoderSettings(log_level="loud"),
        lambda: TranscoderSettings(binary=" "),
    ],
)
def test_settings_validation(factory) -> None:
    with pytest.raises(ValueError):
        factory()


def test_setter_rejects_invalid_values(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")

    with pytest.raises(ValueError):
        manager.set_hls_settings({"segment_seconds": "two"})
    assert manager.get_hls_settings() == DEFAULT_HLS_SETTINGS


def test_saving_settings_keeps_overrides_out_of_the_file(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    manager = ConfigManager(config_path)
    manager.override_storage_paths(streams_dir=str(tmp_path / "hls"))
    manager.override_transcoder_binary("/opt/ffmpeg/bin/ffmpeg")

    manager.set_recording_settings({"stop_timeout_seconds": 12})

    saved = json.loads(config_path.read_text(encoding="utf-8"))
    assert saved["paths"]["streams_dir"] == "public/streams"
    assert saved["transcoder"]["binary"] == "ffmpeg"
    assert saved["recording"]["stop_timeout_seconds"] == 12.0
    assert manager.get_storage_paths().streams_dir == tmp_path / "hls"
    assert manager.get_transcoder_settings().binary == "/opt/ffmpeg/bin/ffmpeg"
