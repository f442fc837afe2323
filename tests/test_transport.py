import asyncio
import struct

import pytest

from pikerelay.transport import (
    FrameError,
    QuicTransport,
    Transport,
    TransportClosed,
    decode_multiplexed_frame,
    encode_multiplexed_frame,
)


def test_multiplex_frame_roundtrip():
    encoded = encode_multiplexed_frame(8, b"hello")
    stream_id, payload = decode_multiplexed_frame(encoded)
    assert stream_id == 8
    assert payload == b"hello"


def test_multiplex_frame_layout():
    encoded = encode_multiplexed_frame(16, b"stream-payload")
    assert encoded[:8] == (16).to_bytes(8, "big")
    assert encoded[8:12] == (14).to_bytes(4, "big")
    assert encoded[12:] == b"stream-payload"


def test_multiplex_frame_empty_payload():
    encoded = encode_multiplexed_frame(0, b"")
    assert len(encoded) == 12
    assert decode_multiplexed_frame(encoded) == (0, b"")


def test_multiplex_frame_ignores_trailing_bytes():
    encoded = encode_multiplexed_frame(3, b"abc") + b"extra"
    assert decode_multiplexed_frame(encoded) == (3, b"abc")


def test_multiplex_frame_rejects_short_input():
    with pytest.raises(FrameError, match="short"):
        decode_multiplexed_frame(bytes([0, 1, 2]))


def test_multiplex_frame_rejects_truncated_payload():
    data = struct.pack(">Q", 4) + struct.pack(">I", 32) + b"tiny"
    with pytest.raises(FrameError, match="incomplete"):
        decode_multiplexed_frame(data)


def test_encode_rejects_negative_stream_id():
    with pytest.raises(FrameError):
        encode_multiplexed_frame(-1, b"x")


def test_transport_is_abstract():
    with pytest.raises(TypeError):
        Transport()


def test_create_rejects_nonpositive_buffer():
    with pytest.raises(ValueError):
        QuicTransport.create(0)


@pytest.mark.asyncio
async def test_quic_transport_trait_roundtrip():
    transport, handle = QuicTransport.create(8)
    await transport.send(4, b"outbound")
    stream_id, outbound = await handle.outbound_rx.get()
    assert stream_id == 4
    assert outbound == b"outbound"

    await handle.inbound_tx.put((12, b"inbound"))
    inbound_stream_id, inbound = await transport.recv()
    assert inbound_stream_id == 12
    assert inbound == b"inbound"


@pytest.mark.asyncio
async def test_transport_delegates_through_abstract_interface():
    quic, handle = QuicTransport.create(4)
    transport: Transport = quic
    await transport.send(20, b"delegated")
    stream_id, payload = await asyncio.wait_for(handle.outbound_rx.get(), 1)
    assert (stream_id, payload) == (20, b"delegated")


@pytest.mark.asyncio
async def test_recv_raises_when_closed():
    transport, handle = QuicTransport.create(2)
    await handle.inbound_tx.put(None)
    with pytest.raises(TransportClosed):
        await transport.recv()


@pytest.mark.asyncio
async def test_close_keeps_queued_frames():
    transport, handle = QuicTransport.create(2)
    await transport.send(1, b"a")
    await transport.close()
    assert handle.outbound_rx.get_nowait() == (1, b"a")