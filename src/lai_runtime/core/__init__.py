"""Core session management components.

This package provides the stateful half of lai-runtime:
- ModelLifecycleController: acquisition, load and unload of the engine
- StreamingGenerationSession: one cancellable token stream at a time
- TokenChannel: thread-to-asyncio hand-off that drops events after close
- VLMInference: caller-facing facade over all of the above
"""

from .channel import TokenChannel
from .inference import VLMInference
from .model_lifecycle import ModelLifecycleController
from .session import GenerationStream, Session, StreamingGenerationSession, collect

__all__ = [
    "GenerationStream",
    "ModelLifecycleController",
    "Session",
    "StreamingGenerationSession",
    "TokenChannel",
    "VLMInference",
    "collect",
]
