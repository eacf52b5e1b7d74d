"""
Payload generator tests
"""

import asyncio
import zlib

import pytest

from velocity.payload import MIN_CHUNK_SIZE, PayloadGenerator


def test_fill_is_deterministic_for_a_seed():
    first = PayloadGenerator(seed=42).fill(bytearray(4096), 4096)
    second = PayloadGenerator(seed=42).fill(bytearray(4096), 4096)
    other = PayloadGenerator(seed=7).fill(bytearray(4096), 4096)

    assert first == second
    assert first != other


def test_fill_only_touches_requested_prefix():
    buffer = bytearray(b"\x00" * 64)
    PayloadGenerator(seed=1).fill(buffer, 16)
    assert buffer[16:] == b"\x00" * 48

    with pytest.raises(ValueError):
        PayloadGenerator().fill(bytearray(8), 16)


def test_block_resists_compression():
    block = PayloadGenerator(seed=3).block(128 * 1024)
    assert len(zlib.compress(block, 9)) > 0.99 * len(block)


def test_stream_sends_the_same_block():
    sent = []

    async def send(chunk):
        sent.append(chunk)

    async def take(n):
        sizes = []
        stream = PayloadGenerator(seed=5).stream(send, chunk_size=1024)
        async for size in stream:
            sizes.append(size)
            if len(sizes) == n:
                break
        await stream.aclose()
        return sizes

    sizes = asyncio.run(take(40))
    assert sizes == [1024] * 40
    assert len(sent) == 40
    assert all(chunk is sent[0] for chunk in sent)


def test_sink_counts_and_discards():
    async def incoming():
        for size in (10, 0, 2048, 5):
            yield b"x" * size

    assert asyncio.run(PayloadGenerator().sink(incoming())) == 2063


def test_stream_adapts_chunk_size_to_send_time(clock):
    rate = {'bps': 1_000_000}

    async def send(chunk):
        clock.advance(len(chunk) * 8 / rate['bps'])

    async def take(stream, n):
        items = []
        async for item in stream:
            items.append(item)
            if len(items) == n:
                break
        return items

    async def scenario():
        stream = PayloadGenerator(seed=5).stream(send, chunk_size=64 * 1024, clock=clock, target=0.05)
        slow = await take(stream, 6)
        rate['bps'] = 100_000_000
        fast = await take(stream, 5)
        await stream.aclose()
        return slow, fast

    slow, fast = asyncio.run(scenario())

    assert [size for size, _ in slow] == [65536, 32768, 16384, 8192, MIN_CHUNK_SIZE, MIN_CHUNK_SIZE]
    assert slow[0][1] == 1000.0
    assert slow[1][1] == pytest.approx(1000.0 + 65536 * 8 / 1_000_000)
    assert [size for size, _ in fast] == [4096, 8192, 16384, 32768, 65536]
