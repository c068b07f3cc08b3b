"""Exception types raised by the build pipeline."""
from __future__ import annotations

from typing import Any


class PanelForgeError(Exception):
    """Base class for every failure surfaced by the build pipeline."""


class UpstreamHTTPError(PanelForgeError):
    """A model endpoint answered with a non-2xx status or an unusable body."""

    def __init__(self, status_code: int, detail: Any = "", *, url: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        self.url = url
        location = f" from {url}" if url else ""
        super().__init__(f"Upstream request{location} failed with HTTP {status_code}: {detail}")


class StreamTransportError(PanelForgeError):
    """The connection to a model endpoint could not be used or dropped mid-stream."""


class ProvisioningError(PanelForgeError):
    """A sandbox container could not be started."""


class ReadinessTimeoutError(ProvisioningError):
    """A started container never answered its health endpoint."""

    def __init__(self, port: int, attempts: int) -> None:
        self.port = port
        self.attempts = attempts
        super().__init__(f"Container failed to become ready on port {port} after {attempts} attempts")


class ContainerStopError(PanelForgeError):
    """The container runtime refused to stop a container."""


class ArtifactNotFoundError(PanelForgeError):
    """Enhancement was requested for a panel that has no generated content."""

    def __init__(self, panel_id: str) -> None:
        self.panel_id = panel_id
        super().__init__(f"Panel {panel_id!r} has no generated content to enhance")


class MalformedMetadataError(PanelForgeError):
    """Thinker output could not be interpreted as panel metadata."""


class PanelNotFoundError(PanelForgeError, KeyError):
    """No panel or applet is registered under the given identifier."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Panel not found"


__all__ = [
    "ArtifactNotFoundError",
    "ContainerStopError",
    "MalformedMetadataError",
    "PanelForgeError",
    "PanelNotFoundError",
    "ProvisioningError",
    "ReadinessTimeoutError",
    "StreamTransportError",
    "UpstreamHTTPError",
]
