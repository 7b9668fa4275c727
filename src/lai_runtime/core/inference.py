"""Caller-facing inference API.

VLMInference ties the pieces together for an application: the dispatcher
picks the engine for this platform, the lifecycle controller loads it, and
the streaming session runs generations against it. An application builds
one instance and passes it around; nothing here is global.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import AsyncIterator, Callable

from ..download import DownloadManager, ProgressCallback
from ..engines.registry import PlatformDispatcher
from ..types import GenerationRequest, ModelInfo, ModelState, TokenEvent
from ..utils.config import Settings
from .model_lifecycle import ModelLifecycleController
from .session import GenerationStream, StreamingGenerationSession

logger = logging.getLogger(__name__)

TokenHandler = Callable[[str], None]


class VLMInference:
    def __init__(
        self,
        settings: Settings | None = None,
        dispatcher: PlatformDispatcher | None = None,
        downloader: DownloadManager | None = None,
    ):
        self.settings = settings or Settings()
        self.dispatcher = dispatcher or PlatformDispatcher(self.settings)
        self.lifecycle = ModelLifecycleController(self.settings, dispatcher=self.dispatcher, downloader=downloader)
        self.session = StreamingGenerationSession(self.lifecycle)

    async def initialize(self, on_progress: ProgressCallback | None = None) -> ModelState:
        return await self.lifecycle.initialize(on_progress=on_progress)

    async def stream(self, prompt: str, image: str | Path | None = None) -> GenerationStream:
        """Start a generation and return its TokenEvent stream."""
        return await self.session.generate(GenerationRequest.build(prompt, image))

    async def generate_streaming(
        self,
        prompt: str,
        on_token: TokenHandler,
        image: str | Path | None = None,
    ) -> str:
        """Generate a response, calling ``on_token`` for every fragment.

        Returns the text delivered before the generation ended, which is the
        whole response unless ``stop_generation()`` cut it short.
        """
        stream = await self.stream(prompt, image)
        try:
            async for event in stream:
                on_token(event.text)
        finally:
            await stream.aclose()
        return stream.text

    async def iter_tokens(self, prompt: str, image: str | Path | None = None) -> AsyncIterator[TokenEvent]:
        stream = await self.stream(prompt, image)
        try:
            async for event in stream:
                yield event
        finally:
            await stream.aclose()

    async def stop_generation(self) -> None:
        """Stop the running generation; a no-op when nothing is running."""
        if not self.session.is_generating:
            logger.debug("stop_generation() called with no active generation")
            return
        await self.session.stop()

    async def unload(self) -> ModelState:
        return await self.lifecycle.unload()

    def is_model_loaded(self) -> bool:
        return self.lifecycle.is_model_loaded

    def get_platform(self) -> str:
        return self.dispatcher.platform_name

    def get_model_name(self) -> str:
        return self.dispatcher.model_name

    def get_model_info(self) -> ModelInfo:
        return ModelInfo(
            platform=self.get_platform(),
            model_name=self.get_model_name(),
            is_loaded=self.is_model_loaded(),
            state=self.lifecycle.state,
        )
