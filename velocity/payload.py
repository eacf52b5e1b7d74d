"""
Payload Generator
=================

Produces incompressible pseudo-random payload for download tests and
counts/discards uploaded bytes for upload tests. A single block is
generated per stream and re-sent for every chunk.
"""

import asyncio
import random
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Optional, Tuple, Union

# 128KB chunks
CHUNK_SIZE = 128 * 1024
# Smallest slice sent on slow links
MIN_CHUNK_SIZE = 4 * 1024


class PayloadGenerator:
    """Seeded byte source shared by the download and upload phases"""

    def __init__(self, seed: Optional[int] = None, chunk_size: int = CHUNK_SIZE):
        self.chunk_size = chunk_size
        # Unseeded generators draw their state from os.urandom
        self._rng = random.Random(seed)

    def fill(self, buffer: bytearray, size: int) -> bytearray:
        """Fill the first ``size`` bytes of ``buffer`` with pseudo-random data"""
        if size > len(buffer):
            raise ValueError(f"Buffer of {len(buffer)} bytes cannot hold {size} bytes")
        buffer[:size] = self._rng.randbytes(size)
        return buffer

    def block(self, size: Optional[int] = None) -> bytes:
        size = size or self.chunk_size
        return bytes(self.fill(bytearray(size), size))

    async def stream(self, send: Callable[[bytes], Awaitable[None]],
                     chunk_size: Optional[int] = None,
                     clock: Optional[Callable[[], float]] = None,
                     target: Optional[float] = None) -> AsyncIterator[Union[int, Tuple[int, float]]]:
        """
        Push the same random block through ``send`` until the consumer stops
        iterating, yielding the number of bytes handed over per send.

        With a ``clock`` each item is ``(bytes, started)`` instead, and with a
        ``target`` send time the chunk is halved while sends take longer than
        ``target`` and doubled back while they take under a quarter of it, so
        a slow link still completes a send every fraction of a window.
        """
        block = self.block(chunk_size)
        pieces = {len(block): block}
        size = len(block)
        sent = 0
        while True:
            piece = pieces.get(size)
            if piece is None:
                piece = pieces[size] = block[:size]

            if clock is None:
                await send(piece)
                yield size
            else:
                started = clock()
                await send(piece)
                yield size, started
                if target:
                    took = clock() - started
                    if took > target and size > MIN_CHUNK_SIZE:
                        size = max(MIN_CHUNK_SIZE, size // 2)
                    elif took < target / 4 and size < len(block):
                        size = min(len(block), size * 2)

            sent += 1
            # Let disconnect and cancel signals through on buffered transports
            if sent % 16 == 0:
                await asyncio.sleep(0)

    async def drain(self, stream: AsyncIterable[bytes]) -> AsyncIterator[int]:
        """Yield the size of each incoming chunk and drop the chunk"""
        async for chunk in stream:
            if chunk:
                yield len(chunk)

    async def sink(self, stream: AsyncIterable[bytes]) -> int:
        """Count and discard a whole stream"""
        total = 0
        async for size in self.drain(stream):
            total += size
        return total
