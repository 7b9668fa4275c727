"""Error taxonomy for model acquisition, lifecycle and generation."""

from __future__ import annotations

from enum import Enum


class InferenceError(Exception):
    """Base class for every error the core reports to its caller.

    ``operation`` names the public call that failed; the message is the
    underlying (often native) message, preserved as-is.
    """

    def __init__(self, message: str, *, operation: str | None = None):
        super().__init__(message)
        self.message = message
        self.operation = operation

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation} failed: {self.message}"
        return self.message


class EngineError(Exception):
    """Raised by Engine implementations; wrapped by the core before surfacing."""


# --- Lifecycle --- #

class LifecycleError(InferenceError):
    pass


class FileMissing(LifecycleError):
    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        download_error: "DownloadError | None" = None,
    ):
        super().__init__(message, operation=operation)
        self.download_error = download_error


class FileEmpty(LifecycleError):
    pass


class LoadFailed(LifecycleError):
    pass


class ModelNotLoaded(LifecycleError):
    pass


class UnsupportedPlatform(LifecycleError):
    pass


class InvalidStateTransition(LifecycleError):
    pass


class UnloadFailed(InferenceError):
    """Non-fatal: logged during unload, never raised out of it."""


# --- Session --- #

class SessionError(InferenceError):
    pass


class Busy(SessionError):
    pass


class InvalidPrompt(SessionError):
    pass


class InvalidImage(SessionError):
    pass


class GenerationFailed(SessionError):
    pass


class GenerationTimeout(GenerationFailed):
    pass


class GenerationCancelled(SessionError):
    pass


class StopFailed(SessionError):
    pass


# --- Network --- #

class NetworkErrorKind(Enum):
    NO_CONNECTION = "no_connection"
    HOST_UNRESOLVABLE = "host_unresolvable"
    TIMEOUT = "timeout"
    OTHER = "other"


NO_CONNECTION_MESSAGE = "No internet connection. Please check your network and try again."


class DownloadError(InferenceError):
    def __init__(
        self,
        message: str,
        *,
        kind: NetworkErrorKind = NetworkErrorKind.OTHER,
        status_code: int | None = None,
        operation: str | None = "download",
    ):
        super().__init__(message, operation=operation)
        self.kind = kind
        self.status_code = status_code

    @property
    def user_message(self) -> str:
        """Text suitable for showing next to a retry action."""
        if self.kind is NetworkErrorKind.OTHER:
            return self.message
        return NO_CONNECTION_MESSAGE


__all__ = [
    "Busy",
    "DownloadError",
    "EngineError",
    "FileEmpty",
    "FileMissing",
    "GenerationCancelled",
    "GenerationFailed",
    "GenerationTimeout",
    "InferenceError",
    "InvalidImage",
    "InvalidPrompt",
    "InvalidStateTransition",
    "LifecycleError",
    "LoadFailed",
    "ModelNotLoaded",
    "NetworkErrorKind",
    "NO_CONNECTION_MESSAGE",
    "SessionError",
    "StopFailed",
    "UnloadFailed",
    "UnsupportedPlatform",
]
