"""Tests for the thread-to-asyncio TokenChannel."""

import asyncio

import pytest

from lai_runtime.core.channel import TokenChannel


class TestTokenChannel:

    @pytest.mark.asyncio
    async def test_thread_producer_in_order(self):
        channel = TokenChannel(asyncio.get_running_loop())

        def produce():
            return [channel.send(i) for i in range(5)]

        producer = asyncio.create_task(asyncio.to_thread(produce))
        received = [await channel.receive() for _ in range(5)]

        assert received == [0, 1, 2, 3, 4]
        assert await producer == [True] * 5

    @pytest.mark.asyncio
    async def test_close_releases_blocked_producer(self):
        channel = TokenChannel(asyncio.get_running_loop())

        def produce():
            return [channel.send("a"), channel.send("b")]

        producer = asyncio.create_task(asyncio.to_thread(produce))
        await asyncio.sleep(0.1)
        channel.close()

        # "a" filled the single slot, "b" was blocked and is dropped.
        assert await asyncio.wait_for(producer, timeout=2) == [True, False]
        assert await channel.receive() is None
        assert await channel.receive() is None

    @pytest.mark.asyncio
    async def test_send_after_close_is_dropped(self):
        channel = TokenChannel(asyncio.get_running_loop())
        channel.close()
        assert channel.closed
        assert await asyncio.to_thread(channel.send, "late") is False
        assert await channel.asend("late") is False
