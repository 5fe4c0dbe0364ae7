"""Producer/consumer channel carrying stream chunks to the caller."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from open_channel.types import Content, StreamChunk

if TYPE_CHECKING:
    from .accumulator import StreamAccumulator

_logger = logging.getLogger(__name__)

_CLOSED = object()


class ChunkChannel:
    """Bounded single-producer/single-consumer queue.

    ``send`` suspends while the queue is full.  ``close`` never blocks; the
    consumer stops after the queued chunks are drained, raising the close
    error (if any) at that point.
    """

    def __init__(self, maxsize: int = 64) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._error: BaseException | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, item: Any) -> None:
        if self._closed:
            raise RuntimeError("send on closed ChunkChannel")
        await self._queue.put(item)

    def close(self, error: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        # A full queue means the consumer is not waiting; it sees the close
        # once the queue runs empty.
        if not self._queue.full():
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> ChunkChannel:
        return self

    async def __anext__(self) -> Any:
        if self._closed and self._queue.empty():
            self._end()
        item = await self._queue.get()
        if item is _CLOSED:
            self._end()
        return item

    def _end(self) -> None:
        if self._error is not None:
            error, self._error = self._error, None
            raise error
        raise StopAsyncIteration


class ChunkStream:
    """Consumer end of a streaming generation.

    Iterate it to receive chunks in arrival order.  Errors raised by the
    producer (including ``CANCELLED_ERROR``) surface from the iteration once
    every chunk sent before the failure was delivered.  Leaving the loop
    early (``break``, an exception in the loop body) stops the producer and
    closes the HTTP response, so a stream is consumed at most once.

    A retried stream restarts from the first byte, so chunks of a failed
    attempt may be followed by the full replay.  ``attempt`` tells which
    attempt the last received chunk belongs to; ``collect`` uses it to start
    over when it changes.
    """

    def __init__(self, channel: ChunkChannel, producer: asyncio.Task[None]) -> None:
        self._channel = channel
        self._producer = producer
        self.attempt = 0

    async def __aiter__(self) -> AsyncIterator[StreamChunk]:
        try:
            async for attempt, chunk in self._channel:
                self.attempt = attempt
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Stop the producer and release its network resources."""
        if not self._producer.done():
            self._producer.cancel()
        await asyncio.gather(self._producer, return_exceptions=True)

    async def __aenter__(self) -> ChunkStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def collect(
        self,
        accumulator: StreamAccumulator,
        on_chunk: Callable[[StreamChunk], None] | None = None,
        on_restart: Callable[[int], None] | None = None,
    ) -> Content:
        """Feed every chunk into *accumulator* and return its ``Content``.

        *on_chunk* sees each chunk after it was accumulated; *on_restart*
        gets the new attempt number when a retried stream starts over.
        """
        seen = 0
        try:
            async for chunk in self:
                if seen and self.attempt != seen:
                    _logger.info("Stream restarted on attempt %d, dropping partial answer", self.attempt)
                    start = accumulator.request_start_time
                    accumulator.reset()
                    if start is not None:
                        accumulator.set_request_start_time(start)
                    if on_restart is not None:
                        on_restart(self.attempt)
                seen = self.attempt
                accumulator.add(chunk)
                if on_chunk is not None:
                    on_chunk(chunk)
        finally:
            await self.aclose()
        return accumulator.get_content()
