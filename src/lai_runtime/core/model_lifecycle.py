"""Model lifecycle management - acquisition, load and unload of the engine.

The ModelLifecycleController owns the single EngineHandle of the process:
1. Checks for the local model artifact and downloads it when missing
2. Loads it into the engine resolved by the PlatformDispatcher
3. Hands the loaded engine to one generation at a time
4. Cancels any active generation before releasing the engine on unload
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Protocol

from ..download import DownloadManager, ProgressCallback
from ..engines.base import Engine
from ..engines.registry import PlatformDispatcher
from ..errors import (
    DownloadError,
    EngineError,
    FileEmpty,
    FileMissing,
    InvalidStateTransition,
    LoadFailed,
    ModelNotLoaded,
    UnloadFailed,
)
from ..shared.logging import EventCategory, EventLevel, emit_event, log_operation
from ..types import DownloadProgress, ModelState
from ..utils.config import Settings

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ModelState, frozenset[ModelState]] = {
    ModelState.UNINITIALIZED: frozenset({ModelState.CHECKING_LOCAL, ModelState.LOADING, ModelState.FAILED}),
    ModelState.CHECKING_LOCAL: frozenset({ModelState.DOWNLOADING, ModelState.LOADING, ModelState.FAILED}),
    ModelState.DOWNLOADING: frozenset({ModelState.LOADING, ModelState.FAILED}),
    ModelState.LOADING: frozenset({ModelState.READY, ModelState.FAILED}),
    ModelState.READY: frozenset({ModelState.GENERATING, ModelState.UNLOADED}),
    ModelState.GENERATING: frozenset({ModelState.READY, ModelState.STOPPING}),
    ModelState.STOPPING: frozenset({ModelState.READY}),
    ModelState.UNLOADED: frozenset({ModelState.CHECKING_LOCAL, ModelState.LOADING, ModelState.FAILED}),
    ModelState.FAILED: frozenset({ModelState.CHECKING_LOCAL, ModelState.LOADING, ModelState.UNLOADED}),
}

LOADED_STATES = frozenset({ModelState.READY, ModelState.GENERATING, ModelState.STOPPING})


class GenerationOwner(Protocol):
    async def cancel_active(self, reason: str) -> None: ...


StateListener = Callable[[ModelState, ModelState], None]


class ModelLifecycleController:
    """State machine for the model: Uninitialized -> ... -> Ready -> Unloaded.

    One instance per application, passed explicitly to whatever needs it.
    """

    def __init__(
        self,
        settings: Settings,
        dispatcher: PlatformDispatcher | None = None,
        downloader: DownloadManager | None = None,
    ):
        self.settings = settings
        self.dispatcher = dispatcher or PlatformDispatcher(settings)
        self.downloader = downloader or DownloadManager(chunk_size=settings.DOWNLOAD_CHUNK_SIZE)
        self._state = ModelState.UNINITIALIZED
        self._engine: Engine | None = None
        self._lock = asyncio.Lock()
        self._generation_owner: GenerationOwner | None = None
        self._native_call: asyncio.Future | None = None
        self._listeners: list[StateListener] = []
        self.last_error: Exception | None = None
        self.last_progress: DownloadProgress | None = None

    # --- State --- #

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def is_model_loaded(self) -> bool:
        return self._state in LOADED_STATES

    @property
    def is_transitioning(self) -> bool:
        """True while initialize() or unload() holds the controller."""
        return self._lock.locked()

    def on_state_change(self, listener: StateListener) -> None:
        """Register a callback invoked as ``listener(previous, current)``."""
        self._listeners.append(listener)

    def _transition(self, new_state: ModelState) -> None:
        previous = self._state
        if new_state not in _TRANSITIONS[previous]:
            raise InvalidStateTransition(
                f"Cannot move from {previous.value} to {new_state.value}",
                operation="state transition",
            )
        self._state = new_state
        logger.debug(f"Model state: {previous.value} -> {new_state.value}")
        emit_event(EventCategory.MODEL, f"{previous.value} -> {new_state.value}", level=EventLevel.DETAIL)
        for listener in self._listeners:
            try:
                listener(previous, new_state)
            except Exception as e:
                logger.warning(f"Error in state listener: {e}")

    @property
    def engine(self) -> Engine:
        """The loaded engine; only valid while the model is loaded."""
        if self._engine is None or not self.is_model_loaded:
            raise ModelNotLoaded("Model not initialized. Call initialize() first.", operation="generate")
        return self._engine

    # --- Acquisition and load --- #

    def _progress_sink(self, on_progress: ProgressCallback | None) -> ProgressCallback:
        def sink(progress: DownloadProgress) -> None:
            if self._state is not ModelState.DOWNLOADING:
                return
            self.last_progress = progress
            if on_progress is not None:
                on_progress(progress)

        return sink

    @log_operation(EventCategory.MODEL, "initialize")
    async def initialize(self, on_progress: ProgressCallback | None = None) -> ModelState:
        """Make the model Ready, downloading it first if needed.

        Idempotent: returns immediately when the model is already loaded.
        """
        async with self._lock:
            if self.is_model_loaded:
                logger.debug("initialize() called while model already loaded")
                return self._state

            engine = self.dispatcher.resolve()
            self.last_error = None
            try:
                path = None
                if engine.REQUIRES_MODEL_FILE:
                    path = await self._ensure_artifact(on_progress)
                self._transition(ModelState.LOADING)
                logger.info(f"Loading model into '{engine.name}' engine from {path or 'bundled weights'}")
                try:
                    ack = await asyncio.to_thread(engine.load_model, str(path) if path else None)
                except EngineError as e:
                    raise LoadFailed(str(e), operation="load model") from e
            except BaseException as e:
                self.last_error = e if isinstance(e, Exception) else None
                if self._state is not ModelState.FAILED:
                    self._state_on_failure()
                raise

            self._engine = engine
            self._transition(ModelState.READY)
            logger.info(f"Model ready: {ack}")
            return self._state

    def _state_on_failure(self) -> None:
        if ModelState.FAILED in _TRANSITIONS[self._state]:
            self._transition(ModelState.FAILED)
        else:
            self._state = ModelState.FAILED

    async def _ensure_artifact(self, on_progress: ProgressCallback | None) -> Path:
        self._transition(ModelState.CHECKING_LOCAL)
        path = self.settings.model_path

        if not self.downloader.exists(path):
            self._transition(ModelState.DOWNLOADING)
            try:
                await self.downloader.download(
                    self.settings.MODEL_URL,
                    path,
                    auth_token=self.settings.MODEL_AUTH_TOKEN or None,
                    on_progress=self._progress_sink(on_progress),
                )
            except DownloadError as e:
                if not self.downloader.exists(path):
                    raise FileMissing(
                        f"Model file not found at {path} and download failed: {e.user_message}",
                        operation="initialize",
                        download_error=e,
                    ) from e

        if not self.downloader.exists(path):
            raise FileMissing(f"Model file not found at {path}", operation="initialize")

        if path.stat().st_size == 0:
            logger.warning(f"Removing empty model artifact {path}")
            path.unlink(missing_ok=True)
            raise FileEmpty(f"Model file is empty: {path}", operation="initialize")

        return path

    # --- Generation hand-off --- #

    def begin_generation(self, owner: GenerationOwner) -> Engine:
        """Claim the engine for one generation (Ready -> Generating)."""
        engine = self.engine
        self._transition(ModelState.GENERATING)
        self._generation_owner = owner
        return engine

    def request_stop(self) -> None:
        if self._state is ModelState.GENERATING:
            self._transition(ModelState.STOPPING)

    def end_generation(self) -> None:
        """Return to Ready after a generation completed, failed or was stopped."""
        self._generation_owner = None
        if self._state in (ModelState.GENERATING, ModelState.STOPPING):
            self._transition(ModelState.READY)

    def track_native_call(self, future: asyncio.Future) -> None:
        """Remember the in-flight native generation so nothing overlaps it."""
        self._native_call = future

    async def wait_native_idle(self, timeout: float | None) -> bool:
        """Wait for a previous (possibly soft-cancelled) native call to finish."""
        future = self._native_call
        if future is None or future.done():
            return True
        logger.debug("Waiting for previous native generation to drain")
        done, _ = await asyncio.wait({future}, timeout=timeout)
        return bool(done)

    # --- Unload --- #

    @log_operation(EventCategory.MODEL, "unload")
    async def unload(self) -> ModelState:
        """Release the engine. Idempotent and never fails on engine errors."""
        async with self._lock:
            if self._state in (ModelState.UNINITIALIZED, ModelState.UNLOADED):
                logger.debug("No model currently loaded to unload")
                return self._state

            if self._generation_owner is not None:
                logger.info("Cancelling active generation before unload")
                await self._generation_owner.cancel_active("Model unloaded during generation")
            if self._state in (ModelState.GENERATING, ModelState.STOPPING):
                self.end_generation()

            if not await self.wait_native_idle(self.settings.GENERATION_TIMEOUT_SECONDS):
                logger.warning("Native generation still running at unload; releasing engine anyway")

            engine = self._engine or self.dispatcher.resolved
            self._engine = None
            if engine is not None:
                try:
                    ack = await asyncio.to_thread(engine.unload_model)
                    logger.info(f"Model unloaded: {ack}")
                except Exception as e:
                    logger.warning(str(UnloadFailed(str(e) or type(e).__name__, operation="unload")))

            self._native_call = None
            self._transition(ModelState.UNLOADED)
            return self._state


