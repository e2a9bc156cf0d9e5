from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

import cam_hub.recordings as recordings_module
from cam_hub.policy import ExclusivityError
from cam_hub.recordings import RecordingFailedError, RecordingInProgressError
from cam_hub.supervisor import SpawnError
from cam_hub.transcode import ThumbnailError


CAMERA_TYPES = ["onvif", "uvc", "uvc_rtsp", "rtsp"]


@pytest.fixture
def fake_thumbnails(monkeypatch: pytest.MonkeyPatch) -> list[tuple[Path, float]]:
    calls: list[tuple[Path, float]] = []

    def _extract(video_path: Path, thumbnail_path: Path, *, offset_seconds: float, quality: int) -> Path:
        calls.append((video_path, offset_seconds))
        thumbnail_path.write_bytes(b"\xff\xd8\xff\xd9")
        return thumbnail_path

    monkeypatch.setattr(recordings_module, "extract_thumbnail", _extract)
    return calls


def _output_file(hub, handle) -> Path:
    return Path(handle.argv[-1])


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_start_creates_row_and_spawns_mp4_transcoder(hub, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554, stream_path="cam")

    result = await hub.recordings.start(camera.id)

    assert result["filename"].startswith(f"camera_{camera.id}_")
    assert result["filename"].endswith(".mp4")
    assert ":" not in result["filename"]
    record = hub.recording_store.get(result["recording_id"])
    assert record is not None
    assert record.is_finished is False
    assert record.end_time is None
    (handle,) = hub.supervisor.handles
    assert handle.argv[-5:] == [
        "-f", "mp4",
        "-movflags", "frag_keyframe+empty_moov",
        str(hub.root / "recordings" / result["filename"]),
    ]
    assert "rtsp://10.0.0.5:8554/cam" in handle.argv
    assert handle.argv[handle.argv.index("-c:v") + 1] == "copy"
    assert hub.recordings.is_recording(camera.id)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
@pytest.mark.parametrize("camera_type", CAMERA_TYPES)
async def test_second_start_is_rejected(hub, camera_type, anyio_backend) -> None:
    camera = hub.add_camera_of_type(camera_type)
    await hub.recordings.start(camera.id)

    with pytest.raises(RecordingInProgressError):
        await hub.recordings.start(camera.id)

    assert len(hub.supervisor.handles) == 1


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
@pytest.mark.parametrize("camera_type", CAMERA_TYPES)
async def test_stop_without_recording_is_noop(hub, camera_type, anyio_backend) -> None:
    camera = hub.add_camera_of_type(camera_type)

    assert await hub.recordings.stop(camera.id) == {"found": False, "recording": None}


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_stop_resolves_only_after_finalisation(hub, fake_thumbnails, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554)
    started = await hub.recordings.start(camera.id)
    (handle,) = hub.supervisor.handles
    output = _output_file(hub, handle)
    output.write_bytes(b"\x00" * 128)

    stopper = asyncio.create_task(hub.recordings.stop(camera.id))
    for _ in range(5):
        await asyncio.sleep(0)

    assert handle.terminated
    assert not stopper.done()
    assert hub.recordings.status(camera.id)["stopping"] is True

    await handle.exit(255)
    result = await stopper

    assert result["found"] is True
    recording = result["recording"]
    assert recording["id"] == started["recording_id"]
    assert recording["is_finished"] is True
    assert recording["end_time"] is not None
    assert recording["thumbnail"] == output.with_suffix(".jpg").name
    assert fake_thumbnails == [(output, 1.0)]
    assert not hub.recordings.is_recording(camera.id)
    finished = hub.recording_store.list_recordings()
    assert [item.id for item in finished] == [started["recording_id"]]
    assert finished[0].camera_name == "Test camera"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_concurrent_stops_share_one_outcome(hub, fake_thumbnails, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554)
    await hub.recordings.start(camera.id)
    (handle,) = hub.supervisor.handles
    _output_file(hub, handle).write_bytes(b"\x00" * 64)

    first = asyncio.create_task(hub.recordings.stop(camera.id))
    second = asyncio.create_task(hub.recordings.stop(camera.id))
    for _ in range(5):
        await asyncio.sleep(0)
    await handle.exit(0)

    one, two = await asyncio.gather(first, second)
    assert one == two
    assert len(fake_thumbnails) == 1


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_abnormal_exit_fails_stop_and_deletes_row(hub, fake_thumbnails, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554)
    started = await hub.recordings.start(camera.id)
    (handle,) = hub.supervisor.handles
    output = _output_file(hub, handle)
    output.write_bytes(b"\x00" * 32)

    stopper = asyncio.create_task(hub.recordings.stop(camera.id))
    for _ in range(5):
        await asyncio.sleep(0)
    await handle.exit(1, "Invalid data found when processing input")

    with pytest.raises(RecordingFailedError, match="code 1") as excinfo:
        await stopper

    assert "Invalid data found" in str(excinfo.value)
    assert hub.recording_store.get(started["recording_id"]) is None
    assert not output.exists()
    assert fake_thumbnails == []
    assert hub.activity.tail(1)[0].event == "recording_failed"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_unattended_failure_is_logged(hub, anyio_backend, caplog) -> None:
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554)
    started = await hub.recordings.start(camera.id)
    (handle,) = hub.supervisor.handles

    await handle.exit(1, "Connection timed out")

    assert hub.recording_store.get(started["recording_id"]) is None
    assert not hub.recordings.is_recording(camera.id)
    assert "failed" in caplog.text


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_clean_exit_with_empty_file_discards_recording(hub, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554)
    started = await hub.recordings.start(camera.id)
    (handle,) = hub.supervisor.handles
    _output_file(hub, handle).write_bytes(b"")

    stopper = asyncio.create_task(hub.recordings.stop(camera.id))
    for _ in range(5):
        await asyncio.sleep(0)
    await handle.exit(255)

    with pytest.raises(RecordingFailedError, match="no output"):
        await stopper
    assert hub.recording_store.get(started["recording_id"]) is None
    assert hub.activity.tail(1)[0].event == "recording_discarded"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_thumbnail_failure_still_finishes_recording(hub, monkeypatch, anyio_backend) -> None:
    def _broken(*args, **kwargs):
        raise ThumbnailError("no frames")

    monkeypatch.setattr(recordings_module, "extract_thumbnail", _broken)
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554)
    started = await hub.recordings.start(camera.id)
    (handle,) = hub.supervisor.handles
    _output_file(hub, handle).write_bytes(b"\x00" * 16)

    await handle.exit(0)

    record = hub.recording_store.get(started["recording_id"])
    assert record is not None
    assert record.is_finished is True
    assert record.thumbnail is None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_recording_refused_while_uvc_device_streams(hub, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc", device_path=str(hub.device))
    await hub.streams.start(camera.id)

    with pytest.raises(ExclusivityError, match="currently streaming"):
        await hub.recordings.start(camera.id)

    assert hub.recording_store.list_recordings(finished_only=False) == []
    assert len(hub.supervisor.handles) == 1


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_relayed_camera_may_stream_and_record(hub, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554)

    await hub.streams.start(camera.id)
    await hub.recordings.start(camera.id)

    assert len(hub.supervisor.handles) == 2


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_spawn_failure_rolls_back_row(hub, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554)
    hub.supervisor.fail_with = "Failed to launch ffmpeg"

    with pytest.raises(SpawnError):
        await hub.recordings.start(camera.id)

    assert hub.recording_store.list_recordings(finished_only=False) == []
    assert not hub.recordings.is_recording(camera.id)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_uvc_recording_uses_fast_preset(hub, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc", device_path=str(hub.device))

    await hub.recordings.start(camera.id)

    (handle,) = hub.supervisor.handles
    argv = handle.argv
    assert argv[argv.index("-f") : argv.index("-f") + 4] == ["-f", "v4l2", "-i", str(hub.device)]
    assert argv[argv.index("-preset") + 1] == "fast"
    assert "-an" in argv


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_aclose_waits_for_finalisation(hub, fake_thumbnails, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554)
    await hub.recordings.start(camera.id)
    (handle,) = hub.supervisor.handles
    _output_file(hub, handle).write_bytes(b"\x00" * 16)

    async def _exit_when_signalled() -> None:
        while not handle.terminated:
            await asyncio.sleep(0)
        await handle.exit(255)

    waiter = asyncio.create_task(_exit_when_signalled())
    await hub.recordings.aclose()
    await waiter

    assert hub.recordings.active() == []
    assert len(hub.recording_store.list_recordings()) == 1


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
@pytest.mark.parametrize("camera_type", CAMERA_TYPES)
async def test_concurrent_starts_record_once(hub, camera_type, anyio_backend) -> None:
    camera = hub.add_camera_of_type(camera_type)

    results = await asyncio.gather(
        hub.recordings.start(camera.id),
        hub.recordings.start(camera.id),
        return_exceptions=True,
    )

    assert sum(isinstance(item, RecordingInProgressError) for item in results) == 1
    assert len(hub.supervisor.handles) == 1
    assert len(hub.recording_store.list_recordings(finished_only=False)) == 1


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_cancelled_start_leaves_no_row(hub, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554)
    spawning = asyncio.Event()

    async def _hang() -> None:
        spawning.set()
        await asyncio.Event().wait()

    hub.supervisor.before_spawn = _hang
    task = asyncio.create_task(hub.recordings.start(camera.id))
    await spawning.wait()
    assert len(hub.recording_store.list_recordings(finished_only=False)) == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert hub.recording_store.list_recordings(finished_only=False) == []
    assert not hub.recordings.is_recording(camera.id)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_aclose_kills_recorder_that_ignores_sigint(hub, anyio_backend) -> None:
    camera = hub.add_camera(type="uvc_rtsp", host="10.0.0.5", port=8554)
    await hub.recordings.start(camera.id)
    (handle,) = hub.supervisor.handles

    await hub.recordings.aclose(timeout=0.05)

    assert handle.terminated
    assert handle.killed

    await handle.exit(-9)

    assert hub.recordings.active() == []
    assert hub.recording_store.list_recordings(finished_only=False) == []
