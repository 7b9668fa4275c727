"""Engine capability interface.

An engine wraps one native inference backend. The core never touches model
weights itself: it asks an engine to load a file, to stream a response for a
prompt (optionally with an image), to stop, and to unload.

Every method is blocking. The core calls them from a worker thread and never
from the event loop.

Third-party packages can provide engines through entry points:

    [project.entry-points."lai_runtime.engines"]
    myengine = "mypackage.engines:MyEngine"
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

from ..errors import EngineError
from ..types import CancelStyle
from ..utils.config import Settings

TokenCallback = Callable[[str, bool], None]
"""``(fragment, is_final)``; called from the engine's own thread."""


class Engine(ABC):
    """Plugin interface for native inference backends."""

    name: str = "base"
    model_name: str = "unknown"
    SUPPORTS_VISION = False
    CANCEL_STYLE = CancelStyle.HARD
    REQUIRES_MODEL_FILE = True

    def __init__(self, settings: Settings):
        self.settings = settings

    @classmethod
    def is_available(cls, settings: Settings) -> bool:
        """Return True if this engine can run in the current process."""
        return True

    @abstractmethod
    def load_model(self, path: str | None) -> str:
        """Load the model and return an acknowledgement message.

        ``path`` is None for engines with REQUIRES_MODEL_FILE = False.
        """
        ...

    @abstractmethod
    def generate(self, prompt: str, on_token: TokenCallback) -> str:
        """Stream a text-only response, returning once generation has ended."""
        ...

    def generate_with_image(self, prompt: str, image_path: str, on_token: TokenCallback) -> str:
        raise EngineError(f"Engine '{self.name}' does not support image input")

    @abstractmethod
    def stop_generation(self) -> str:
        """Request the in-flight generation to stop.

        HARD engines return only after the native call has aborted. SOFT
        engines acknowledge immediately and let the call run to completion.
        """
        ...

    @abstractmethod
    def unload_model(self) -> str:
        """Release the native model."""
        ...
