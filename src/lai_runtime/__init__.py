"""On-device vision-language model session manager."""

from .core import ModelLifecycleController, StreamingGenerationSession, VLMInference
from .download import DownloadManager
from .engines import Engine, PlatformDispatcher
from .shared.token_filter import TokenFilter
from .types import (
    CancelStyle,
    DownloadProgress,
    GenerationRequest,
    ModelInfo,
    ModelState,
    SessionState,
    TokenEvent,
)
from .utils.config import Settings

__version__ = "0.1.0"

__all__ = [
    "CancelStyle",
    "DownloadManager",
    "DownloadProgress",
    "Engine",
    "GenerationRequest",
    "ModelInfo",
    "ModelLifecycleController",
    "ModelState",
    "PlatformDispatcher",
    "SessionState",
    "Settings",
    "StreamingGenerationSession",
    "TokenEvent",
    "TokenFilter",
    "VLMInference",
]
