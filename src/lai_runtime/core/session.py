"""Streaming generation with cooperative cancellation.

One generation at a time runs against the loaded engine. The engine's token
callbacks fire on a worker thread; each fragment is filtered and handed to
the caller through a TokenChannel, which the caller drains as an async
iterator of TokenEvents.

Stopping is a two-phase handshake. ``stop()`` marks the session
STOP_REQUESTED and closes the channel, so nothing further reaches the
caller, then asks the engine to cancel and waits for its acknowledgement
before the session becomes CANCELLED. Hard-cancel engines abort the native
call; soft-cancel engines let it finish in the background while its tokens
are dropped. The controller keeps track of that background call so the
next generation or an unload does not overlap it.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import uuid
from typing import AsyncIterator

from ..engines.base import Engine
from ..errors import (
    Busy,
    GenerationCancelled,
    GenerationFailed,
    GenerationTimeout,
    InferenceError,
    ModelNotLoaded,
    StopFailed,
)
from ..shared.logging import EventCategory, emit_event
from ..shared.token_filter import TokenFilter
from ..types import GenerationRequest, ModelState, SessionState, TokenEvent
from .channel import TokenChannel
from .model_lifecycle import ModelLifecycleController

logger = logging.getLogger(__name__)


# Tokens queued before the engine finished or failed are still delivered;
# anything arriving after a stop is not.
_DELIVERING = frozenset({SessionState.RUNNING, SessionState.COMPLETED, SessionState.FAILED})


class _End:
    pass


class _Failure:
    def __init__(self, error: InferenceError):
        self.error = error


class Session:
    """One in-flight generation and its token stream."""

    def __init__(self, request: GenerationRequest, channel: TokenChannel, token_filter: TokenFilter):
        self.id = uuid.uuid4().hex[:8]
        self.request = request
        self.state = SessionState.RUNNING
        self.last_sequence_number = 0
        self.engine_signaled_final = False
        self.error: InferenceError | None = None
        self._channel = channel
        self._filter = token_filter
        self._seq_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, state={self.state.value}, last_seq={self.last_sequence_number})"

    @property
    def accepting(self) -> bool:
        return self.state is SessionState.RUNNING and not self._channel.closed

    def on_native_token(self, fragment: str, is_final: bool) -> None:
        """TokenCallback handed to the engine; runs on the engine thread."""
        if is_final:
            self.engine_signaled_final = True
        if not self.accepting:
            return
        text = self._filter(fragment)
        if not text:
            return
        with self._seq_lock:
            self.last_sequence_number += 1
            event = TokenEvent(text=text, sequence_number=self.last_sequence_number)
        if not self._channel.send(event):
            logger.debug(f"Session {self.id}: dropped token #{event.sequence_number} after close")


class GenerationStream:
    """Async iterator over the TokenEvents of one Session.

    Finite and not restartable. Ends quietly after ``stop()``; raises
    GenerationFailed on an engine error and GenerationCancelled when the
    model is unloaded underneath it.
    """

    def __init__(self, session: Session, channel: TokenChannel):
        self.session = session
        self._channel = channel
        self._finished = False
        self._parts: list[str] = []

    @property
    def text(self) -> str:
        """Concatenation of every event yielded so far."""
        return "".join(self._parts)

    def __aiter__(self) -> "GenerationStream":
        return self

    async def __anext__(self) -> TokenEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._channel.receive()

        if isinstance(item, TokenEvent) and self.session.state in _DELIVERING:
            self._parts.append(item.text)
            return item

        self._finished = True
        self._channel.close()
        error = item.error if isinstance(item, _Failure) else self.session.error
        if error is not None:
            raise error
        raise StopAsyncIteration

    async def aclose(self) -> None:
        """Stop listening. Events still arriving are dropped."""
        self._finished = True
        self._channel.close()


class StreamingGenerationSession:
    """Issues one generation at a time against the controller's engine."""

    def __init__(
        self,
        lifecycle: ModelLifecycleController,
        token_filter: TokenFilter | None = None,
        timeout: float | None = None,
    ):
        self._lifecycle = lifecycle
        self._filter = token_filter or TokenFilter(lifecycle.settings.FILTER_TOKENS)
        self._timeout = timeout if timeout is not None else lifecycle.settings.GENERATION_TIMEOUT_SECONDS
        self._active: Session | None = None
        self._channel: TokenChannel | None = None
        self._engine: Engine | None = None
        self._driver: asyncio.Task | None = None

    @property
    def active(self) -> Session | None:
        if self._active is not None and self._active.state.is_terminal:
            return None
        return self._active

    @property
    def is_generating(self) -> bool:
        return self.active is not None

    async def generate(self, request: GenerationRequest) -> GenerationStream:
        """Start a generation and return its event stream.

        Raises ModelNotLoaded, Busy, InvalidPrompt or InvalidImage before
        anything reaches the engine.
        """
        state = self._lifecycle.state
        if self._lifecycle.is_transitioning:
            raise Busy("Model is being loaded or unloaded", operation="generate")
        if state in (ModelState.GENERATING, ModelState.STOPPING) or self.active is not None:
            raise Busy("Generation already in progress", operation="generate")
        if state is not ModelState.READY:
            raise ModelNotLoaded("Model not initialized. Call initialize() first.", operation="generate")
        request.validate()

        loop = asyncio.get_running_loop()
        channel: TokenChannel = TokenChannel(loop)
        session = Session(request, channel, self._filter)

        self._engine = self._lifecycle.begin_generation(self)
        self._active = session
        self._channel = channel
        logger.debug(f"Session {session.id} started (image={request.has_image})")
        emit_event(EventCategory.GENERATION, "generation started", session=session.id, image=request.has_image)
        self._driver = asyncio.create_task(self._drive(session, channel, self._engine))
        return GenerationStream(session, channel)

    def _native_call(self, engine: Engine, session: Session) -> str:
        request = session.request
        if request.image is not None:
            return engine.generate_with_image(request.prompt, str(request.image), session.on_native_token)
        return engine.generate(request.prompt, session.on_native_token)

    async def _drive(self, session: Session, channel: TokenChannel, engine: Engine) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        try:
            if not await self._lifecycle.wait_native_idle(self._timeout):
                raise GenerationTimeout(
                    "Previous generation is still running on the engine",
                    operation="generate",
                )
            if session.state is not SessionState.RUNNING:
                return

            future = loop.run_in_executor(None, functools.partial(self._native_call, engine, session))
            future.add_done_callback(_consume_result)
            self._lifecycle.track_native_call(future)

            remaining = max(deadline - loop.time(), 0.0)
            try:
                ack = await asyncio.wait_for(asyncio.shield(future), timeout=remaining)
            except asyncio.TimeoutError:
                raise GenerationTimeout(
                    f"Generation did not complete within {self._timeout:.0f}s",
                    operation="generate",
                ) from None
            except GenerationFailed:
                raise
            except Exception as e:
                raise GenerationFailed(str(e) or type(e).__name__, operation="generate") from e
        except GenerationFailed as e:
            if session.state is not SessionState.RUNNING:
                logger.debug(f"Session {session.id}: ignoring engine error after stop: {e}")
                return
            await self._fail(session, channel, engine, e)
            return

        if session.state is not SessionState.RUNNING:
            return
        session.state = SessionState.COMPLETED
        self._lifecycle.end_generation()
        emit_event(
            EventCategory.GENERATION,
            "generation completed",
            session=session.id,
            events=session.last_sequence_number,
        )
        logger.debug(
            f"Session {session.id} completed: {ack} "
            f"({session.last_sequence_number} events, final={session.engine_signaled_final})"
        )
        await channel.asend(_End())

    async def _fail(self, session: Session, channel: TokenChannel, engine: Engine, error: GenerationFailed) -> None:
        logger.warning(f"Session {session.id} failed: {error}")
        session.state = SessionState.FAILED
        session.error = error
        self._lifecycle.end_generation()
        emit_event(EventCategory.GENERATION, "generation failed", session=session.id, error=error.message)
        if isinstance(error, GenerationTimeout):
            # Bound the native call as far as the engine allows.
            try:
                await asyncio.to_thread(engine.stop_generation)
            except Exception as e:
                logger.warning(f"Stop after timeout failed: {e}")
        await channel.asend(_Failure(error))

    async def stop(self) -> None:
        """Request the running generation to stop.

        Once this returns, the caller receives no further TokenEvents for the
        session. Raises StopFailed when nothing is running or the engine
        rejects the request; the session is CANCELLED either way.
        """
        session = self.active
        if session is None or session.state is not SessionState.RUNNING:
            raise StopFailed("No generation in progress", operation="stop")
        await self._cancel(session, reason=None)

    async def cancel_active(self, reason: str) -> None:
        """Force-cancel the active session (used by unload)."""
        session = self.active
        if session is None:
            return
        if session.state is SessionState.RUNNING:
            try:
                await self._cancel(session, reason=reason)
            except StopFailed as e:
                logger.warning(f"Engine stop failed during forced cancel: {e}")
        elif self._driver is not None and not self._driver.done():
            # A stop is already in flight; let it finish.
            await asyncio.wait({self._driver}, timeout=self._timeout)

    async def _cancel(self, session: Session, reason: str | None) -> None:
        channel = self._channel
        engine = self._engine
        session.state = SessionState.STOP_REQUESTED
        if reason is not None:
            session.error = GenerationCancelled(reason, operation="generate")
        self._lifecycle.request_stop()
        if channel is not None:
            channel.close()
        logger.debug(f"Session {session.id}: stop requested ({engine.CANCEL_STYLE.value}-cancel engine)")

        stop_error: StopFailed | None = None
        try:
            ack = await asyncio.wait_for(asyncio.to_thread(engine.stop_generation), timeout=self._timeout)
            logger.debug(f"Session {session.id}: engine acknowledged stop: {ack}")
        except asyncio.TimeoutError:
            stop_error = StopFailed("Engine did not acknowledge the stop request", operation="stop")
        except Exception as e:
            stop_error = StopFailed(str(e) or type(e).__name__, operation="stop")
        finally:
            session.state = SessionState.CANCELLED
            self._lifecycle.end_generation()
            emit_event(EventCategory.GENERATION, "generation cancelled", session=session.id, cancel=engine.CANCEL_STYLE.value)

        if stop_error is not None:
            raise stop_error


def _consume_result(future: asyncio.Future) -> None:
    # The driver may stop awaiting after a timeout or stop; retrieve the
    # outcome so asyncio does not report it as never retrieved.
    if not future.cancelled():
        future.exception()


async def collect(stream: AsyncIterator[TokenEvent]) -> str:
    """Drain ``stream`` and return the concatenated text."""
    parts = []
    async for event in stream:
        parts.append(event.text)
    return "".join(parts)
