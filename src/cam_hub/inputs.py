"""Input resolution for each camera type.

Every resolver answers the same question for a camera and an output function:
which locator does ffmpeg open, and which input/codec arguments does it need.
The central trade-off is copy versus re-encode. Copying (``-c:v copy``) costs
no CPU but only works when the source already satisfies the destination's
structure, for HLS that means a short and regular keyframe cadence.
Re-encoding with libx264 guarantees that structure at CPU cost.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Protocol
from urllib.parse import quote, urlsplit, urlunsplit

from .negotiation import ConnectionParams, NegotiationError, StreamUriNegotiator
from .storage import Camera, CameraType

logger = logging.getLogger(__name__)

DEFAULT_RELAY_PATH = "/uvc_camera_1"
DEFAULT_RTSP_PATH = "/"
DEFAULT_ONVIF_PORT = 80


class Function(str, Enum):
    """Long-running output functions a camera can serve."""

    STREAM = "stream"
    RECORD = "record"


class InputResolutionError(RuntimeError):
    """Raised when no input locator can be determined for a camera."""


class DeviceNotFoundError(InputResolutionError):
    """Raised when a direct-capture device path does not exist."""


@dataclass(frozen=True, slots=True)
class ResolvedInput:
    locator: str
    input_args: tuple[str, ...]

    def masked_locator(self) -> str:
        return mask_url_password(self.locator)


class InputResolver(Protocol):
    async def resolve(self, camera: Camera, function: Function) -> ResolvedInput:
        """Return the ffmpeg input for *camera* serving *function*."""


def mask_url_password(url: str) -> str:
    """Replace the password in *url* with asterisks for logging."""

    if not url:
        return url
    parsed = urlsplit(url)
    if not parsed.netloc or "@" not in parsed.netloc:
        return url
    userinfo, _, hostport = parsed.netloc.rpartition("@")
    username, sep, password = userinfo.partition(":")
    masked = f"{username}:{'*' * 3}" if sep and password else userinfo
    return urlunsplit(parsed._replace(netloc=f"{masked}@{hostport}"))


def _userinfo(username: str | None, password: str | None) -> str:
    if username and password:
        return f"{quote(username, safe='')}:{quote(password, safe='')}@"
    if username:
        return f"{quote(username, safe='')}@"
    return ""


def embed_credentials(uri: str, username: str | None, password: str | None) -> str:
    """Return *uri* with credentials embedded and everything else untouched."""

    text = (uri or "").strip()
    if not text:
        raise InputResolutionError("Stream URI is empty in the response.")
    parsed = urlsplit(text)
    if not parsed.scheme or not parsed.netloc:
        raise InputResolutionError(f"Malformed stream URI returned by device: {text!r}")
    hostport = parsed.netloc.rpartition("@")[2]
    if not hostport:
        raise InputResolutionError(f"Stream URI has no host: {text!r}")
    netloc = f"{_userinfo(username, password)}{hostport}"
    return urlunsplit(parsed._replace(netloc=netloc))


def _rtsp_input(locator: str) -> list[str]:
    return ["-rtsp_transport", "tcp", "-i", locator]


@dataclass(frozen=True, slots=True)
class OnvifInput:
    """Network cameras negotiated over ONVIF.

    The camera already emits H.264, so video is always copied. Streaming
    re-encodes audio to AAC for player compatibility; recording drops audio
    because camera audio codecs (G.711 and friends) do not fit in MP4.
    """

    negotiator: StreamUriNegotiator
    timeout_seconds: float = 10.0
    default_port: int = DEFAULT_ONVIF_PORT

    async def resolve(self, camera: Camera, function: Function) -> ResolvedInput:
        if not camera.host:
            raise InputResolutionError("ONVIF cameras require a host")
        params = ConnectionParams(
            host=camera.host,
            port=camera.port or self.default_port,
            username=camera.username,
            password=camera.password,
            xaddr=camera.xaddr,
            timeout_seconds=self.timeout_seconds,
        )
        try:
            raw_uri = await self.negotiator.negotiate_stream_uri(params)
        except NegotiationError as exc:
            raise InputResolutionError(f"[ONVIF] {exc}") from exc
        locator = embed_credentials(raw_uri, camera.username, camera.password)
        logger.info(
            "Resolved ONVIF stream for camera %s: %s", camera.id, mask_url_password(locator)
        )
        args = _rtsp_input(locator) + ["-c:v", "copy"]
        if function is Function.STREAM:
            args += ["-c:a", "aac"]
        else:
            args += ["-an"]
        return ResolvedInput(locator, tuple(args))


@dataclass(frozen=True, slots=True)
class UvcInput:
    """USB cameras opened directly through V4L2.

    Raw V4L2 frames (YUYV or MJPEG) cannot be muxed into HLS or MP4 as-is, so
    video is always re-encoded with libx264. Streaming trades quality for
    latency (``ultrafast`` + ``zerolatency``); recording is not latency
    sensitive and uses ``fast``. The device is opened exclusively.
    """

    async def resolve(self, camera: Camera, function: Function) -> ResolvedInput:
        device_path = camera.device_path
        if not device_path or not os.path.exists(device_path):
            raise DeviceNotFoundError(
                f"UVC device {device_path} not found. Please check if the camera is connected."
            )
        logger.info("Using UVC device %s for camera %s", device_path, camera.id)
        args = ["-f", "v4l2", "-i", device_path, "-c:v", "libx264"]
        if function is Function.STREAM:
            args += ["-preset", "ultrafast", "-tune", "zerolatency"]
        else:
            args += ["-preset", "fast"]
        args.append("-an")
        return ResolvedInput(device_path, tuple(args))


def build_relay_uri(camera: Camera, default_path: str = DEFAULT_RELAY_PATH) -> str:
    """Compose the RTSP URI of a relayed camera from stored attributes."""

    tag = camera.type.value.upper()
    if not camera.host:
        raise InputResolutionError(f"[{tag}] Camera host is required")
    if not camera.port:
        raise InputResolutionError(f"[{tag}] Camera port is required")
    path = camera.stream_path or default_path
    if not path.startswith("/"):
        path = f"/{path}"
    userinfo = _userinfo(camera.username, camera.password)
    return f"rtsp://{userinfo}{camera.host}:{camera.port}{path}"


@dataclass(frozen=True, slots=True)
class RelayInput:
    """Cameras reached through a plain RTSP URL, relays such as MediaMTX included.

    Recording copies the source H.264 untouched. Streaming re-encodes with a
    bounded bitrate and a keyframe every 30 frames because the source encoder
    gives no guarantee on GOP length and HLS segments can only cut on
    keyframes. Audio is disabled on both paths.
    """

    default_path: str = DEFAULT_RELAY_PATH

    async def resolve(self, camera: Camera, function: Function) -> ResolvedInput:
        locator = build_relay_uri(camera, self.default_path)
        logger.info(
            "Constructed RTSP stream for camera %s: %s", camera.id, mask_url_password(locator)
        )
        args = _rtsp_input(locator)
        if function is Function.STREAM:
            args += [
                "-c:v", "libx264",
                "-preset", "veryfast",
                "-b:v", "2000k",
                "-maxrate", "2000k",
                "-bufsize", "4000k",
                "-g", "30",
            ]
        else:
            args += ["-c:v", "copy"]
        args.append("-an")
        return ResolvedInput(locator, tuple(args))


# Cameras whose source can only be opened by one process at a time.
EXCLUSIVE_DEVICE_TYPES: frozenset[CameraType] = frozenset({CameraType.UVC})

CAMERA_CAPABILITIES: Mapping[CameraType, Mapping[str, bool]] = {
    CameraType.ONVIF: {
        "streaming": True,
        "recording": True,
        "thumbnails": True,
        "exclusive_device": False,
        "discovery": True,
        "time_sync": True,
        "remote_access": True,
    },
    CameraType.UVC: {
        "streaming": True,
        "recording": True,
        "thumbnails": True,
        "exclusive_device": True,
        "discovery": False,
        "time_sync": False,
        "remote_access": False,
    },
    CameraType.UVC_RTSP: {
        "streaming": True,
        "recording": True,
        "thumbnails": True,
        "exclusive_device": False,
        "discovery": False,
        "time_sync": False,
        "remote_access": False,
    },
    CameraType.RTSP: {
        "streaming": True,
        "recording": True,
        "thumbnails": True,
        "exclusive_device": False,
        "discovery": False,
        "time_sync": False,
        "remote_access": False,
    },
}


def build_input_resolvers(
    negotiator: StreamUriNegotiator,
    *,
    timeout_seconds: float = 10.0,
    default_port: int = DEFAULT_ONVIF_PORT,
) -> dict[CameraType, InputResolver]:
    """Return the dispatch table mapping every camera type to its resolver."""

    return {
        CameraType.ONVIF: OnvifInput(
            negotiator, timeout_seconds=timeout_seconds, default_port=default_port
        ),
        CameraType.UVC: UvcInput(),
        CameraType.UVC_RTSP: RelayInput(),
        CameraType.RTSP: RelayInput(default_path=DEFAULT_RTSP_PATH),
    }


def resolver_for(
    camera_type: CameraType | str, resolvers: Mapping[CameraType, InputResolver]
) -> InputResolver:
    try:
        return resolvers[CameraType(camera_type)]
    except (KeyError, ValueError) as exc:
        raise InputResolutionError(f"Unsupported camera type: {camera_type}") from exc


def requires_exclusive_access(camera_type: CameraType | str) -> bool:
    return CameraType(camera_type) in EXCLUSIVE_DEVICE_TYPES


def describe_capabilities(camera_type: CameraType | str) -> dict[str, bool]:
    return dict(CAMERA_CAPABILITIES[CameraType(camera_type)])


# Types whose reachability can be confirmed before the camera is saved.
_VERIFIED_TYPES: frozenset[CameraType] = frozenset({CameraType.ONVIF, CameraType.UVC})


async def check_connection(camera: Camera, resolvers: Mapping[CameraType, InputResolver]) -> None:
    """Confirm *camera* answers before it is registered or re-addressed.

    ONVIF devices must complete the stream URI handshake and UVC devices must
    exist on this host. RTSP sources are only contacted by ffmpeg itself.
    Raises :class:`InputResolutionError` on failure.
    """

    if camera.type not in _VERIFIED_TYPES:
        return
    await resolver_for(camera.type, resolvers).resolve(camera, Function.STREAM)


__all__ = [
    "CAMERA_CAPABILITIES",
    "DEFAULT_RELAY_PATH",
    "DEFAULT_RTSP_PATH",
    "DeviceNotFoundError",
    "EXCLUSIVE_DEVICE_TYPES",
    "Function",
    "InputResolutionError",
    "InputResolver",
    "OnvifInput",
    "RelayInput",
    "ResolvedInput",
    "UvcInput",
    "build_input_resolvers",
    "build_relay_uri",
    "check_connection",
    "describe_capabilities",
    "embed_credentials",
    "mask_url_password",
    "requires_exclusive_access",
    "resolver_for",
]
