"""Multiplexed framing and stream transports for tunnel traffic."""

from __future__ import annotations

import asyncio
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass

_HEADER = struct.Struct(">QI")
FRAME_HEADER_LEN = _HEADER.size

_U32_MAX = 0xFFFFFFFF


class FrameError(ValueError):
    """A multiplexed frame could not be encoded or decoded."""


class TransportClosed(ConnectionError):
    """The transport can no longer carry frames."""


def encode_multiplexed_frame(stream_id: int, payload: bytes) -> bytes:
    """Encode a frame as big-endian u64 stream id, u32 length, then payload."""
    if len(payload) > _U32_MAX:
        raise FrameError("payload too large for websocket multiplex frame")
    try:
        header = _HEADER.pack(stream_id, len(payload))
    except struct.error as exc:
        raise FrameError(f"invalid stream id {stream_id}") from exc
    return header + bytes(payload)


def decode_multiplexed_frame(data: bytes) -> tuple[int, bytes]:
    """Decode a frame produced by :func:`encode_multiplexed_frame`."""
    if len(data) < FRAME_HEADER_LEN:
        raise FrameError("frame too short")
    stream_id, length = _HEADER.unpack_from(data)
    end = FRAME_HEADER_LEN + length
    if len(data) < end:
        raise FrameError("incomplete frame payload")
    return stream_id, bytes(data[FRAME_HEADER_LEN:end])


class Transport(ABC):
    """A bidirectional carrier of (stream id, payload) frames."""

    @abstractmethod
    async def send(self, stream_id: int, data: bytes) -> None:
        """Send a payload on a stream."""

    @abstractmethod
    async def recv(self) -> tuple[int, bytes]:
        """Receive the next (stream id, payload) pair."""

    @abstractmethod
    async def close(self) -> None:
        """Close the transport."""


@dataclass
class QuicTransportHandle:
    """The far side of a :class:`QuicTransport`: frames sent and frames to deliver."""

    outbound_rx: asyncio.Queue
    inbound_tx: asyncio.Queue


class QuicTransport(Transport):
    """A transport backed by a pair of bounded queues."""

    def __init__(self, outbound: asyncio.Queue, inbound: asyncio.Queue) -> None:
        self._outbound = outbound
        self._inbound = inbound

    @classmethod
    def create(cls, buffer: int) -> tuple[QuicTransport, QuicTransportHandle]:
        """Build a transport and the handle that feeds and drains it."""
        if buffer <= 0:
            raise ValueError("buffer must be positive")
        outbound: asyncio.Queue = asyncio.Queue(maxsize=buffer)
        inbound: asyncio.Queue = asyncio.Queue(maxsize=buffer)
        return cls(outbound, inbound), QuicTransportHandle(outbound, inbound)

    async def send(self, stream_id: int, data: bytes) -> None:
        await self._outbound.put((stream_id, bytes(data)))

    async def recv(self) -> tuple[int, bytes]:
        item = await self._inbound.get()
        if item is None:
            raise TransportClosed("QUIC transport closed")
        stream_id, payload = item
        return stream_id, bytes(payload)

    async def close(self) -> None:
        return None