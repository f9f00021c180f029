"""Exception taxonomy for the language server supervisor."""

from __future__ import annotations


class SliceClientError(Exception):
    """Base class for every error raised by sliceclient."""


class UnsupportedPlatformError(SliceClientError):
    """No server executable is known for the current OS/architecture."""

    def __init__(self, platform: str, architecture: str, reason: str | None = None) -> None:
        self.platform = platform
        self.architecture = architecture
        message = f"Unsupported platform: {platform} ({architecture})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ProcessSpawnError(SliceClientError):
    """The server executable could not be launched."""


class TransportError(SliceClientError):
    """The JSON-RPC transport failed or the handshake did not complete."""


class NotificationDecodeError(SliceClientError):
    """An inbound server notification was malformed."""


class ConfigurationValidationError(SliceClientError):
    """A configuration snapshot is internally inconsistent."""
