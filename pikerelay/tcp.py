"""Raw TCP tunnels: port allocation, listeners and QUIC stream copying."""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Iterable

logger = logging.getLogger(__name__)

PORT_MIN = 10_000
PORT_MAX = 65_000
COPY_BUFFER_SIZE = 16 * 1024
BACKPRESSURE_WAIT = 0.010
_RANDOM_BIND_ATTEMPTS = 64


class TcpError(Exception):
    """A TCP tunnel operation failed."""


class PortExhausted(TcpError):
    """No port in the pool could be allocated and bound."""

    def __init__(self) -> None:
        super().__init__("no available TCP port in pool")


class StreamDone(Exception):
    """A QUIC stream has nothing to read or no room to write right now."""


class Shutdown(enum.Enum):
    """Direction of a QUIC stream shutdown."""

    READ = "read"
    WRITE = "write"


class QuicConnectionIo(ABC):
    """The stream operations of a QUIC connection used to carry TCP traffic."""

    @abstractmethod
    def stream_capacity(self, stream_id: int) -> int:
        """Return how many bytes may be sent on the stream now."""

    @abstractmethod
    def stream_send(self, stream_id: int, data: bytes, fin: bool) -> int:
        """Send bytes and return how many were accepted; raise StreamDone when full."""

    @abstractmethod
    def stream_recv(self, stream_id: int, max_len: int) -> tuple[bytes, bool]:
        """Return up to ``max_len`` bytes and a fin flag; raise StreamDone when empty."""

    @abstractmethod
    def stream_shutdown(self, stream_id: int, direction: Shutdown, error_code: int) -> None:
        """Shut down one direction of the stream."""


def _quic(call: Callable[..., Any], *args: Any, allow_done: bool = False) -> Any:
    try:
        return call(*args)
    except StreamDone as exc:
        if allow_done:
            raise
        raise TcpError(f"QUIC error: {exc or 'done'}") from exc
    except TcpError:
        raise
    except Exception as exc:  # noqa: BLE001 - any connection failure is a QUIC error
        raise TcpError(f"QUIC error: {exc}") from exc


class PortPool:
    """Ports that may be handed out to TCP tunnels, and those in use."""

    def __init__(self, ports: Iterable[int] | None = None) -> None:
        self._available: list[int] = (
            list(range(PORT_MIN, PORT_MAX + 1)) if ports is None else list(ports)
        )
        self._in_use: set[int] = set()

    def __len__(self) -> int:
        """Number of ports still available."""
        return len(self._available)

    def _take(self, idx: int) -> int:
        port = self._available[idx]
        self._available[idx] = self._available[-1]
        self._available.pop()
        self._in_use.add(port)
        return port

    def allocate(self, preferred: int | None = None) -> int | None:
        """Take the preferred port, or a random one; return None if impossible."""
        if preferred is not None:
            if not PORT_MIN <= preferred <= PORT_MAX or preferred in self._in_use:
                return None
            try:
                idx = self._available.index(preferred)
            except ValueError:
                return None
            return self._take(idx)

        if not self._available:
            return None
        return self._take(random.randrange(len(self._available)))

    def release(self, port: int) -> None:
        """Return a port in use to the pool; unknown ports are ignored."""
        if port in self._in_use:
            self._in_use.remove(port)
            self._available.append(port)


@dataclass
class TcpListenerHandle:
    """A listening socket bound for one tunnel."""

    tunnel_id: Hashable
    local_addr: tuple[str, int]
    _server: asyncio.AbstractServer = field(repr=False, compare=False)


class TcpTunnelManager:
    """Binds one TCP listener per tunnel and hands accepted connections to dispatchers."""

    def __init__(self, host: str = "0.0.0.0", port_pool: PortPool | None = None) -> None:
        self._host = host
        self._pool = port_pool if port_pool is not None else PortPool()
        self._pool_lock = asyncio.Lock()
        self._listeners: dict[Hashable, TcpListenerHandle] = {}
        self._dispatchers: dict[Hashable, asyncio.Queue] = {}

    async def create_listener(
        self, tunnel_id: Hashable, preferred_port: int | None = None
    ) -> TcpListenerHandle:
        """Bind a listener whose accepted connections are closed straight away."""
        return await self._create(tunnel_id, preferred_port, None)

    async def create_listener_with_dispatcher(
        self,
        tunnel_id: Hashable,
        preferred_port: int | None,
        dispatcher: asyncio.Queue,
    ) -> TcpListenerHandle:
        """Bind a listener that puts each accepted (reader, writer) pair on ``dispatcher``."""
        return await self._create(tunnel_id, preferred_port, dispatcher)

    async def close_listener(self, tunnel_id: Hashable) -> None:
        """Stop the tunnel's listener, release its port and forget its dispatcher."""
        handle = self._listeners.pop(tunnel_id, None)
        if handle is not None:
            handle._server.close()
            async with self._pool_lock:
                self._pool.release(handle.local_addr[1])
        self._dispatchers.pop(tunnel_id, None)

    def active_listeners(self) -> list[tuple[Hashable, tuple[str, int]]]:
        """Return (tunnel id, bound address) for every open listener."""
        return [(tid, handle.local_addr) for tid, handle in self._listeners.items()]

    async def _create(
        self,
        tunnel_id: Hashable,
        preferred_port: int | None,
        dispatcher: asyncio.Queue | None,
    ) -> TcpListenerHandle:
        if tunnel_id in self._listeners:
            await self.close_listener(tunnel_id)
        if dispatcher is not None:
            self._dispatchers[tunnel_id] = dispatcher

        async def on_accept(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            queue = self._dispatchers.get(tunnel_id) if dispatcher is not None else None
            if queue is None:
                writer.close()
                return
            await queue.put((reader, writer))

        server = await self._bind(on_accept, preferred_port)
        sockname = server.sockets[0].getsockname()
        handle = TcpListenerHandle(tunnel_id, (sockname[0], sockname[1]), server)
        self._listeners[tunnel_id] = handle
        return handle

    async def _bind(
        self, on_accept: Callable[..., Any], preferred_port: int | None
    ) -> asyncio.AbstractServer:
        async with self._pool_lock:
            if preferred_port is not None:
                port = self._pool.allocate(preferred_port)
                if port is not None:
                    try:
                        return await asyncio.start_server(on_accept, self._host, port)
                    except OSError as exc:
                        self._pool.release(port)
                        raise TcpError(
                            f"failed to bind TCP listener on {self._host}:{port}: {exc}"
                        ) from exc

            for _ in range(_RANDOM_BIND_ATTEMPTS):
                port = self._pool.allocate(None)
                if port is None:
                    break
                try:
                    return await asyncio.start_server(on_accept, self._host, port)
                except OSError:
                    self._pool.release(port)

        raise PortExhausted()


async def send_with_backpressure(
    quic_conn: QuicConnectionIo, stream_id: int, data: bytes, fin: bool = False
) -> None:
    """Send all of ``data`` on the stream, waiting while it has no room."""
    view = memoryview(bytes(data))
    offset = 0
    while offset < len(view):
        try:
            written = _quic(
                quic_conn.stream_send, stream_id, bytes(view[offset:]), False, allow_done=True
            )
        except StreamDone:
            await asyncio.sleep(BACKPRESSURE_WAIT)
            continue
        offset += written
    if fin:
        _quic(quic_conn.stream_send, stream_id, b"", True)


async def copy_with_backpressure(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    quic_conn: QuicConnectionIo,
    stream_id: int,
) -> None:
    """Copy bytes between a TCP connection and a QUIC stream until both sides finish."""
    tcp_read_closed = False
    quic_read_closed = False

    while True:
        progressed = False

        while not quic_read_closed:
            try:
                data, fin = _quic(
                    quic_conn.stream_recv, stream_id, COPY_BUFFER_SIZE, allow_done=True
                )
            except StreamDone:
                break
            progressed = True
            try:
                if data:
                    writer.write(data)
                    await writer.drain()
                if fin:
                    quic_read_closed = True
                    if writer.can_write_eof():
                        writer.write_eof()
            except OSError as exc:
                raise TcpError(f"I/O error: {exc}") from exc

        if not tcp_read_closed:
            try:
                capacity = quic_conn.stream_capacity(stream_id)
            except Exception:  # noqa: BLE001 - treated as no capacity
                capacity = 0
            if capacity <= 0:
                await asyncio.sleep(BACKPRESSURE_WAIT)
            else:
                max_read = min(capacity, COPY_BUFFER_SIZE)
                try:
                    chunk = await asyncio.wait_for(reader.read(max_read), BACKPRESSURE_WAIT)
                except asyncio.TimeoutError:
                    chunk = None
                except OSError as exc:
                    raise TcpError(f"I/O error: {exc}") from exc
                if chunk is not None:
                    progressed = True
                    if not chunk:
                        tcp_read_closed = True
                        _quic(quic_conn.stream_shutdown, stream_id, Shutdown.WRITE, 0)
                    else:
                        await send_with_backpressure(quic_conn, stream_id, chunk, False)

        if tcp_read_closed and quic_read_closed:
            return

        if not progressed:
            await asyncio.sleep(BACKPRESSURE_WAIT)