"""Dispatch, transport and stream accumulation for open-channel."""

from open_channel.channel.accumulator import StreamAccumulator
from open_channel.channel.parser import ParsedBuffer, parse_stream_buffer
from open_channel.channel.stream import ChunkChannel, ChunkStream
from open_channel.channel.transport import HttpTransport, StreamSession

__all__ = [
    "ChunkChannel",
    "ChunkStream",
    "HttpTransport",
    "ParsedBuffer",
    "StreamAccumulator",
    "StreamSession",
    "parse_stream_buffer",
]
