"""Tests for streaming generation, stop and unload-during-generation."""

import asyncio

import pytest
from PIL import Image

from lai_runtime.core import VLMInference, collect
from lai_runtime.errors import (
    Busy,
    EngineError,
    GenerationCancelled,
    GenerationFailed,
    GenerationTimeout,
    InvalidImage,
    InvalidPrompt,
    ModelNotLoaded,
    StopFailed,
)
from lai_runtime.types import ModelState, SessionState


async def _wait(event, timeout=5):
    assert await asyncio.to_thread(event.wait, timeout), "engine never reached the expected point"


class TestStreaming:

    @pytest.mark.asyncio
    async def test_events_arrive_in_order(self, inference, hard_engine):
        hard_engine.script = ["The", " cat", " sat", "."]
        await inference.initialize()

        stream = await inference.stream("Describe")
        events = [event async for event in stream]

        assert [e.text for e in events] == ["The", " cat", " sat", "."]
        assert [e.sequence_number for e in events] == [1, 2, 3, 4]
        assert stream.text == "The cat sat."
        assert stream.session.state is SessionState.COMPLETED
        assert stream.session.engine_signaled_final
        assert inference.lifecycle.state is ModelState.READY

    @pytest.mark.asyncio
    async def test_generate_streaming_returns_concatenation(self, inference, hard_engine):
        await inference.initialize()
        received = []

        text = await inference.generate_streaming("Hi", on_token=received.append)

        assert received == ["Hello", " world"]
        assert text == "Hello world"
        assert hard_engine.prompts == ["Hi"]

    @pytest.mark.asyncio
    async def test_control_tokens_are_filtered(self, inference, hard_engine):
        hard_engine.script = ["Hel", "lo<end_of_turn>", "<eos>"]
        await inference.initialize()

        stream = await inference.stream("Hi")
        events = [event async for event in stream]

        assert [e.text for e in events] == ["Hel", "lo"]
        assert [e.sequence_number for e in events] == [1, 2]

    @pytest.mark.asyncio
    async def test_iter_tokens(self, inference):
        await inference.initialize()
        texts = [event.text async for event in inference.iter_tokens("Hi")]
        assert texts == ["Hello", " world"]

    @pytest.mark.asyncio
    async def test_collect_helper(self, inference):
        await inference.initialize()
        assert await collect(await inference.stream("Hi")) == "Hello world"

    @pytest.mark.asyncio
    async def test_sequential_generations(self, inference, hard_engine):
        await inference.initialize()
        first = await collect(await inference.stream("one"))
        second = await collect(await inference.stream("two"))

        assert first == second == "Hello world"
        assert hard_engine.prompts == ["one", "two"]


class TestPreconditions:

    @pytest.mark.asyncio
    async def test_generate_before_initialize(self, inference, hard_engine):
        with pytest.raises(ModelNotLoaded):
            await inference.stream("Hi")
        assert hard_engine.prompts == []

    @pytest.mark.asyncio
    async def test_generate_after_unload(self, inference):
        await inference.initialize()
        await inference.unload()
        with pytest.raises(ModelNotLoaded):
            await inference.stream("Hi")

    @pytest.mark.asyncio
    async def test_empty_prompt_never_reaches_engine(self, inference, hard_engine):
        await inference.initialize()

        with pytest.raises(InvalidPrompt):
            await inference.stream("   ")

        assert hard_engine.prompts == []
        assert inference.lifecycle.state is ModelState.READY

    @pytest.mark.asyncio
    async def test_missing_image(self, inference, hard_engine, tmp_path):
        await inference.initialize()

        with pytest.raises(InvalidImage):
            await inference.stream("What is this?", image=tmp_path / "missing.png")

        assert hard_engine.images == []
        assert inference.lifecycle.state is ModelState.READY

    @pytest.mark.asyncio
    async def test_undecodable_image(self, inference, hard_engine, tmp_path):
        bogus = tmp_path / "notes.png"
        bogus.write_text("definitely not a png")
        await inference.initialize()

        with pytest.raises(InvalidImage):
            await inference.stream("What is this?", image=bogus)
        assert hard_engine.images == []

    @pytest.mark.asyncio
    async def test_second_generation_is_busy(self, inference, hard_engine):
        hard_engine.pause_after = 1
        await inference.initialize()

        stream = await inference.stream("first")
        await stream.__anext__()
        await _wait(hard_engine.paused)

        with pytest.raises(Busy):
            await inference.stream("second")

        await inference.stop_generation()
        assert hard_engine.prompts == ["first"]


class TestImageInput:

    @pytest.mark.asyncio
    async def test_image_path_reaches_engine(self, inference, hard_engine, tmp_path):
        image_path = tmp_path / "photo.png"
        Image.new("RGB", (4, 4), color=(200, 30, 30)).save(image_path)
        await inference.initialize()

        text = await inference.generate_streaming(
            "What is in this image?",
            on_token=lambda _: None,
            image=f"file://{image_path}",
        )

        assert text == "Hello world"
        assert hard_engine.images == [str(image_path)]
        assert hard_engine.prompts == ["What is in this image?"]

    @pytest.mark.asyncio
    async def test_blank_image_reference_means_text_only(self, inference, hard_engine):
        await inference.initialize()
        await collect(await inference.stream("Hi", image=""))
        assert hard_engine.images == []


class TestStop:

    @pytest.mark.asyncio
    async def test_hard_stop_delivers_nothing_further(self, inference, hard_engine):
        hard_engine.script = ["one", "two", "three"]
        hard_engine.pause_after = 1
        await inference.initialize()

        stream = await inference.stream("count")
        first = await stream.__anext__()
        await _wait(hard_engine.paused)

        await inference.stop_generation()
        rest = [event async for event in stream]

        assert first.text == "one"
        assert rest == []
        assert stream.session.state is SessionState.CANCELLED
        assert hard_engine.stop_calls == 1
        assert inference.lifecycle.state is ModelState.READY
        assert inference.is_model_loaded()

    @pytest.mark.asyncio
    async def test_soft_stop_drops_remaining_tokens(self, soft_inference, soft_engine):
        soft_engine.script = ["one", "two", "three"]
        soft_engine.pause_after = 1
        await soft_inference.initialize()

        stream = await soft_inference.stream("count")
        await stream.__anext__()
        await _wait(soft_engine.paused)

        await soft_inference.stop_generation()
        soft_engine.resume.set()
        await _wait(soft_engine.finished)
        rest = [event async for event in stream]

        assert rest == []
        assert stream.text == "one"
        assert stream.session.state is SessionState.CANCELLED
        assert soft_inference.lifecycle.state is ModelState.READY

    @pytest.mark.asyncio
    async def test_next_generation_waits_for_soft_cancelled_call(self, soft_inference, soft_engine):
        soft_engine.pause_after = 1
        await soft_inference.initialize()

        stream = await soft_inference.stream("first")
        await stream.__anext__()
        await _wait(soft_engine.paused)
        await soft_inference.stop_generation()

        soft_engine.pause_after = None
        next_stream = await soft_inference.stream("second")
        await asyncio.sleep(0.05)
        assert soft_engine.prompts == ["first"]

        soft_engine.resume.set()
        assert await collect(next_stream) == "Hello world"
        assert soft_engine.prompts == ["first", "second"]

    @pytest.mark.asyncio
    async def test_stop_without_generation_is_noop(self, inference, hard_engine):
        await inference.initialize()
        await inference.stop_generation()
        assert hard_engine.stop_calls == 0

    @pytest.mark.asyncio
    async def test_session_stop_without_generation_raises(self, inference):
        await inference.initialize()
        with pytest.raises(StopFailed):
            await inference.session.stop()


class TestFailures:

    @pytest.mark.asyncio
    async def test_engine_error_surfaces_after_delivered_tokens(self, inference, hard_engine):
        hard_engine.error = EngineError("decode failed")
        await inference.initialize()

        stream = await inference.stream("Hi")
        received = []
        with pytest.raises(GenerationFailed) as exc_info:
            async for event in stream:
                received.append(event.text)

        assert received == ["Hello", " world"]
        assert exc_info.value.message == "decode failed"
        assert stream.session.state is SessionState.FAILED
        assert inference.lifecycle.state is ModelState.READY

        # The session recovers for the next request.
        hard_engine.error = None
        assert await collect(await inference.stream("again")) == "Hello world"

    @pytest.mark.asyncio
    async def test_generation_timeout(self, settings, hard_dispatcher, model_file):
        settings.GENERATION_TIMEOUT_SECONDS = 0.3
        engine = hard_dispatcher.resolved
        engine.pause_after = 1
        inference = VLMInference(settings, dispatcher=hard_dispatcher)
        await inference.initialize()

        stream = await inference.stream("slow")
        with pytest.raises(GenerationTimeout):
            async for _ in stream:
                pass

        assert engine.stop_calls == 1
        assert inference.lifecycle.state is ModelState.READY


class TestUnloadDuringGeneration:

    @pytest.mark.asyncio
    async def test_unload_cancels_active_stream(self, inference, hard_engine):
        hard_engine.pause_after = 1
        await inference.initialize()

        stream = await inference.stream("Hi")
        await stream.__anext__()
        await _wait(hard_engine.paused)

        assert await inference.unload() is ModelState.UNLOADED

        with pytest.raises(GenerationCancelled):
            await stream.__anext__()
        assert stream.session.state is SessionState.CANCELLED
        assert hard_engine.stop_calls == 1
        assert hard_engine.unload_calls == 1
        assert not inference.is_model_loaded()

    @pytest.mark.asyncio
    async def test_unload_waits_for_soft_cancelled_call(self, soft_inference, soft_engine):
        soft_engine.pause_after = 1
        await soft_inference.initialize()

        stream = await soft_inference.stream("Hi")
        await stream.__anext__()
        await _wait(soft_engine.paused)

        unload = asyncio.create_task(soft_inference.unload())
        await asyncio.sleep(0.05)
        assert not unload.done()
        assert soft_engine.unload_calls == 0

        soft_engine.resume.set()
        assert await unload is ModelState.UNLOADED
        assert soft_engine.finished.is_set()
        assert soft_engine.unload_calls == 1

    @pytest.mark.asyncio
    async def test_generate_while_unloading_is_busy(self, soft_inference, soft_engine):
        soft_engine.pause_after = 1
        await soft_inference.initialize()

        stream = await soft_inference.stream("Hi")
        await stream.__anext__()
        await _wait(soft_engine.paused)

        unload = asyncio.create_task(soft_inference.unload())
        await asyncio.sleep(0.05)
        with pytest.raises(Busy):
            await soft_inference.stream("again")

        soft_engine.resume.set()
        await unload
