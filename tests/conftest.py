from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from cam_hub.activity_log import ActivityLog
from cam_hub.config import ConfigManager
from cam_hub.inputs import build_input_resolvers
from cam_hub.policy import ExclusivityPolicy
from cam_hub.recordings import RecordingOrchestrator
from cam_hub.storage import CameraStore, Database, RecordingStore
from cam_hub.streams import StreamOrchestrator

from fakes import FakeNegotiator, FakeSupervisor


@dataclass
class Hub:
    root: Path
    cameras: CameraStore
    recording_store: RecordingStore
    config: ConfigManager
    supervisor: FakeSupervisor
    negotiator: FakeNegotiator
    activity: ActivityLog
    streams: StreamOrchestrator
    recordings: RecordingOrchestrator
    device: Path

    def add_camera(self, **values: Any):
        values.setdefault("name", "Test camera")
        return self.cameras.add_camera(values)

    def add_camera_of_type(self, camera_type: str):
        fields = {
            "onvif": {"host": "192.168.1.20", "username": "admin", "password": "pw"},
            "uvc": {"device_path": str(self.device)},
            "uvc_rtsp": {"host": "10.0.0.5", "port": 8554},
            "rtsp": {"host": "10.0.0.9", "port": 554},
        }[camera_type]
        return self.add_camera(type=camera_type, **fields)


@pytest.fixture
def hub(tmp_path: Path) -> Hub:
    database = Database(tmp_path / "camhub.sqlite3")
    cameras = CameraStore(database)
    recording_store = RecordingStore(database)
    config = ConfigManager(tmp_path / "config.json")
    supervisor = FakeSupervisor()
    negotiator = FakeNegotiator()
    activity = ActivityLog(tmp_path / "activity.jsonl")
    resolvers = build_input_resolvers(negotiator)
    policy = ExclusivityPolicy()
    streams = StreamOrchestrator(
        cameras=cameras,
        resolvers=resolvers,
        supervisor=supervisor,
        config=config,
        streams_dir=tmp_path / "streams",
        policy=policy,
        activity_log=activity,
    )
    recordings = RecordingOrchestrator(
        cameras=cameras,
        recordings=recording_store,
        resolvers=resolvers,
        supervisor=supervisor,
        config=config,
        recordings_dir=tmp_path / "recordings",
        policy=policy,
        activity_log=activity,
    )
    device = tmp_path / "video0"
    device.write_bytes(b"")
    return Hub(
        root=tmp_path,
        cameras=cameras,
        recording_store=recording_store,
        config=config,
        supervisor=supervisor,
        negotiator=negotiator,
        activity=activity,
        streams=streams,
        recordings=recordings,
        device=device,
    )
