import asyncio
from collections import deque

import pytest

from pikerelay.tcp import (
    COPY_BUFFER_SIZE,
    PortExhausted,
    PortPool,
    QuicConnectionIo,
    Shutdown,
    StreamDone,
    TcpError,
    TcpTunnelManager,
    copy_with_backpressure,
    send_with_backpressure,
)


class MockQuicConn(QuicConnectionIo):
    def __init__(self, capacity=COPY_BUFFER_SIZE, recv_chunks=(), done_first=0, limit=None):
        self.capacity = capacity
        self.recv_chunks = deque(recv_chunks)
        self.sent_payloads = []
        self.fins = []
        self.shutdowns = []
        self.done_first = done_first
        self.limit = limit

    def stream_capacity(self, stream_id):
        return self.capacity

    def stream_send(self, stream_id, data, fin):
        if fin:
            self.fins.append(stream_id)
            return 0
        if self.done_first > 0:
            self.done_first -= 1
            raise StreamDone()
        if self.capacity == 0:
            raise StreamDone()
        taken = data if self.limit is None else data[: self.limit]
        self.sent_payloads.append(bytes(taken))
        return len(taken)

    def stream_recv(self, stream_id, max_len):
        if self.recv_chunks:
            chunk, fin = self.recv_chunks.popleft()
            return chunk[:max_len], fin
        raise StreamDone()

    def stream_shutdown(self, stream_id, direction, error_code):
        self.shutdowns.append((stream_id, direction))


class FailingQuicConn(MockQuicConn):
    def stream_send(self, stream_id, data, fin):
        raise RuntimeError("connection reset")


def test_port_pool_allocates_preferred_and_releases():
    pool = PortPool()
    assert pool.allocate(12_345) == 12_345
    assert pool.allocate(12_345) is None
    pool.release(12_345)
    assert pool.allocate(12_345) == 12_345


def test_port_pool_exhaustion():
    pool = PortPool([20_001, 20_002])
    first = pool.allocate()
    second = pool.allocate()
    assert {first, second} == {20_001, 20_002}
    assert pool.allocate() is None


def test_port_pool_rejects_out_of_range_preferred():
    pool = PortPool()
    assert pool.allocate(80) is None
    assert pool.allocate(65_001) is None
    assert len(pool) == 65_000 - 10_000 + 1


def test_port_pool_release_unknown_port_is_ignored():
    pool = PortPool([20_001])
    pool.release(20_005)
    assert len(pool) == 1
    assert pool.allocate() == 20_001
    assert len(pool) == 0
    pool.release(20_001)
    assert len(pool) == 1


def test_port_pool_preferred_not_in_pool():
    pool = PortPool([20_001])
    assert pool.allocate(20_002) is None
    assert pool.allocate(20_001) == 20_001


@pytest.mark.asyncio
async def test_send_with_backpressure_waits_and_splits():
    conn = MockQuicConn(done_first=2, limit=3)
    await send_with_backpressure(conn, 4, b"abcdefgh", True)
    assert b"".join(conn.sent_payloads) == b"abcdefgh"
    assert conn.sent_payloads[0] == b"abc"
    assert conn.fins == [4]


@pytest.mark.asyncio
async def test_send_with_backpressure_wraps_errors():
    conn = FailingQuicConn()
    with pytest.raises(TcpError, match="QUIC error"):
        await send_with_backpressure(conn, 4, b"data")


@pytest.mark.asyncio
async def test_copy_with_backpressure_moves_data_both_directions():
    accepted = asyncio.Queue()

    async def on_accept(reader, writer):
        await accepted.put((reader, writer))

    server = await asyncio.start_server(on_accept, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    async def client():
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"ping")
        await writer.drain()
        writer.write_eof()
        inbound = await reader.read()
        writer.close()
        return inbound

    client_task = asyncio.ensure_future(client())
    reader, writer = await asyncio.wait_for(accepted.get(), 5)
    conn = MockQuicConn(recv_chunks=[(b"pong", True)])

    await asyncio.wait_for(copy_with_backpressure(reader, writer, conn, 4), 5)
    received = await asyncio.wait_for(client_task, 5)
    writer.close()
    server.close()

    assert received == b"pong"
    assert b"ping" in conn.sent_payloads
    assert (4, Shutdown.WRITE) in conn.shutdowns


@pytest.mark.asyncio
async def test_listener_dispatches_connections_and_closes():
    pool = PortPool()
    manager = TcpTunnelManager(host="127.0.0.1", port_pool=pool)
    dispatcher = asyncio.Queue()
    handle = await manager.create_listener_with_dispatcher("tunnel-1", None, dispatcher)
    port = handle.local_addr[1]
    assert 10_000 <= port <= 65_000
    assert manager.active_listeners() == [("tunnel-1", handle.local_addr)]
    assert len(pool) == 65_000 - 10_000

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    server_reader, server_writer = await asyncio.wait_for(dispatcher.get(), 5)
    writer.write(b"hello")
    await writer.drain()
    assert await asyncio.wait_for(server_reader.readexactly(5), 5) == b"hello"
    writer.close()
    server_writer.close()

    await manager.close_listener("tunnel-1")
    assert manager.active_listeners() == []
    assert len(pool) == 65_000 - 10_000 + 1


@pytest.mark.asyncio
async def test_recreating_listener_replaces_previous():
    manager = TcpTunnelManager(host="127.0.0.1")
    await manager.create_listener("tunnel-1")
    second = await manager.create_listener("tunnel-1")
    assert manager.active_listeners() == [("tunnel-1", second.local_addr)]
    await manager.close_listener("tunnel-1")
    assert manager.active_listeners() == []


@pytest.mark.asyncio
async def test_empty_pool_is_exhausted():
    manager = TcpTunnelManager(host="127.0.0.1", port_pool=PortPool([]))
    with pytest.raises(PortExhausted):
        await manager.create_listener("tunnel-1")


@pytest.mark.asyncio
async def test_preferred_port_in_use_fails_to_bind():
    first = TcpTunnelManager(host="127.0.0.1")
    handle = await first.create_listener("tunnel-1")
    port = handle.local_addr[1]

    pool = PortPool()
    second = TcpTunnelManager(host="127.0.0.1", port_pool=pool)
    with pytest.raises(TcpError) as excinfo:
        await second.create_listener("tunnel-2", port)
    assert not isinstance(excinfo.value, PortExhausted)
    assert pool.allocate(port) == port

    await first.close_listener("tunnel-1")
    assert first.active_listeners() == []