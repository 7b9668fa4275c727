"""Shared data types for the inference session manager."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import InvalidImage, InvalidPrompt


class ModelState(Enum):
    UNINITIALIZED = "uninitialized"
    CHECKING_LOCAL = "checking_local"
    DOWNLOADING = "downloading"
    LOADING = "loading"
    READY = "ready"
    GENERATING = "generating"
    STOPPING = "stopping"
    UNLOADED = "unloaded"
    FAILED = "failed"


class SessionState(Enum):
    RUNNING = "running"
    STOP_REQUESTED = "stop_requested"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED)


class CancelStyle(Enum):
    """How an engine honours a stop request.

    HARD engines abort the native call and acknowledge once it has stopped.
    SOFT engines have no abort primitive: the native call keeps running and
    the session discards whatever it still produces.
    """

    HARD = "hard"
    SOFT = "soft"


@dataclass(frozen=True)
class DownloadProgress:
    bytes_written: int
    total_bytes: int
    percent: float

    @classmethod
    def from_counts(cls, bytes_written: int, total_bytes: int) -> "DownloadProgress":
        percent = (bytes_written / total_bytes * 100) if total_bytes > 0 else 0.0
        return cls(bytes_written=bytes_written, total_bytes=total_bytes, percent=percent)


def normalize_path(path: str | Path) -> Path:
    """Strip a ``file://`` scheme from picker-style references."""
    raw = str(path)
    if raw.startswith("file://"):
        raw = raw[len("file://"):]
    return Path(raw).expanduser()


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    image: Path | None = None

    @classmethod
    def build(cls, prompt: str, image: str | Path | None = None) -> "GenerationRequest":
        if image is not None and not str(image).strip():
            image = None
        return cls(prompt=prompt, image=normalize_path(image) if image is not None else None)

    @property
    def has_image(self) -> bool:
        return self.image is not None

    def validate(self) -> None:
        """Raise before anything is dispatched to an engine."""
        if not self.prompt or not self.prompt.strip():
            raise InvalidPrompt("Prompt cannot be empty", operation="generate")
        if self.image is None:
            return
        if not self.image.is_file():
            raise InvalidImage(f"Image file does not exist at {self.image}", operation="generate")
        _check_image_format(self.image)


def _check_image_format(path: Path) -> None:
    from PIL import Image, UnidentifiedImageError

    try:
        with Image.open(path) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise InvalidImage(f"Failed to decode image {path}: {e}", operation="generate") from e


@dataclass(frozen=True)
class TokenEvent:
    text: str
    sequence_number: int


@dataclass
class ModelInfo:
    platform: str
    model_name: str
    is_loaded: bool
    state: ModelState
