"""Interface to the ONVIF device-management handshake.

The core never speaks SOAP itself. It asks a :class:`StreamUriNegotiator` for
the RTSP URI of a camera's first media profile and reacts to two failure
shapes: the device could not be reached, or it answered without a usable
profile. :class:`OnvifNegotiator` adapts the blocking ``onvif-zeep`` client to
that contract when the optional dependency is installed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlsplit

try:  # pragma: no cover - dependency availability varies by deployment
    from onvif import ONVIFCamera
except ImportError as exc:  # pragma: no cover - dependency availability varies
    ONVIFCamera = None  # type: ignore[assignment]
    _ONVIF_IMPORT_ERROR: ImportError | None = exc
else:  # pragma: no cover - dependency availability varies
    _ONVIF_IMPORT_ERROR = None

logger = logging.getLogger(__name__)


class NegotiationError(RuntimeError):
    """Base class for device-management handshake failures."""


class DeviceConnectError(NegotiationError):
    """The device could not be reached or rejected the credentials."""


class NoStreamProfileError(NegotiationError):
    """The device answered but exposed no usable stream profile."""


@dataclass(frozen=True, slots=True)
class ConnectionParams:
    host: str
    port: int = 80
    username: str | None = None
    password: str | None = None
    xaddr: str | None = None
    timeout_seconds: float = 10.0

    def endpoint(self) -> tuple[str, int]:
        """Return the host and port to contact, honouring an xaddr override."""

        if self.xaddr:
            parsed = urlsplit(self.xaddr)
            if parsed.hostname:
                return parsed.hostname, parsed.port or self.port
        return self.host, self.port


class StreamUriNegotiator(Protocol):
    async def negotiate_stream_uri(self, params: ConnectionParams) -> str:
        """Return the raw RTSP URI advertised by the device."""


class OnvifNegotiator:
    """Negotiate RTSP URIs using the ``onvif-zeep`` client in a worker thread."""

    def __init__(self, *, wsdl_dir: str | None = None) -> None:
        self._wsdl_dir = wsdl_dir

    async def negotiate_stream_uri(self, params: ConnectionParams) -> str:
        if ONVIFCamera is None:  # pragma: no cover - dependency availability varies
            raise DeviceConnectError(
                "onvif-zeep is required for ONVIF cameras"
            ) from _ONVIF_IMPORT_ERROR
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._negotiate_blocking, params),
                timeout=params.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise DeviceConnectError(
                f"Connection to {params.host} timed out after {params.timeout_seconds:g}s"
            ) from exc

    def _negotiate_blocking(self, params: ConnectionParams) -> str:  # pragma: no cover - requires a device
        host, port = params.endpoint()
        logger.info("Connecting to ONVIF device %s:%s", host, port)
        kwargs: dict[str, object] = {}
        if self._wsdl_dir:
            kwargs["wsdl_dir"] = self._wsdl_dir
        try:
            camera = ONVIFCamera(
                host, port, params.username or "", params.password or "", **kwargs
            )
            media = camera.create_media_service()
            profiles = media.GetProfiles()
        except Exception as exc:
            raise DeviceConnectError(f"Connection failed: {exc}") from exc
        if not profiles:
            raise NoStreamProfileError("Device reported no media profiles")
        try:
            request = media.create_type("GetStreamUri")
            request.ProfileToken = profiles[0].token
            request.StreamSetup = {
                "Stream": "RTP-Unicast",
                "Transport": {"Protocol": "RTSP"},
            }
            response = media.GetStreamUri(request)
        except Exception as exc:
            raise NoStreamProfileError(f"Could not get stream URI: {exc}") from exc
        uri = getattr(response, "Uri", None)
        if not uri:
            raise NoStreamProfileError("Stream URI is empty in the response.")
        return str(uri)


__all__ = [
    "ConnectionParams",
    "DeviceConnectError",
    "NegotiationError",
    "NoStreamProfileError",
    "OnvifNegotiator",
    "StreamUriNegotiator",
]
