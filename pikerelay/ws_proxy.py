"""Transparent relaying of WebSocket upgrades through a tunnel stream."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import hashlib
import logging
from typing import Iterable, Mapping, Tuple, Union

logger = logging.getLogger(__name__)

WS_GUID = "258EAFA5-E914-47DA-95CA-5AB5B13F4088"
_READ_CHUNK = 64 * 1024

HeaderValue = Union[str, bytes]
Headers = Union[Mapping[str, HeaderValue], Iterable[Tuple[str, HeaderValue]]]


def compute_accept_key(key: str) -> str:
    """Compute the Sec-WebSocket-Accept value for a client's Sec-WebSocket-Key."""
    digest = hashlib.sha1((key + WS_GUID).encode()).digest()
    return base64.b64encode(digest).decode("ascii")


def _visible_ascii(value: HeaderValue) -> str | None:
    if isinstance(value, bytes):
        try:
            value = value.decode("ascii")
        except UnicodeDecodeError:
            return None
    if all(ch == "\t" or " " <= ch <= "~" for ch in value):
        return value
    return None


def build_raw_upgrade_request(method: str, target: str, headers: Headers) -> bytes:
    """Rebuild the raw HTTP/1.1 upgrade request; header values that are not visible ASCII are dropped."""
    pairs = headers.items() if isinstance(headers, Mapping) else headers
    lines = [f"{method} {target or '/'} HTTP/1.1"]
    for name, value in pairs:
        text = _visible_ascii(value)
        if text is not None:
            lines.append(f"{name.lower()}: {text}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


async def relay_raw(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    from_tunnel: asyncio.Queue,
    to_tunnel: asyncio.Queue,
) -> None:
    """Relay raw bytes both ways until either direction ends.

    Bytes read from ``reader`` are put on ``to_tunnel``; items taken from
    ``from_tunnel`` are written to ``writer``. A ``None`` item on
    ``from_tunnel`` marks the tunnel side as closed.
    """

    async def browser_to_tunnel() -> None:
        while True:
            try:
                chunk = await reader.read(_READ_CHUNK)
            except (OSError, asyncio.IncompleteReadError) as exc:
                logger.warning("browser read error in WS relay: %s", exc)
                return
            if not chunk:
                return
            await to_tunnel.put(bytes(chunk))

    async def tunnel_to_browser() -> None:
        while True:
            data = await from_tunnel.get()
            if data is None:
                return
            if not data:
                continue
            try:
                writer.write(data)
                await writer.drain()
            except (OSError, ConnectionError):
                return

    tasks = [
        asyncio.ensure_future(browser_to_tunnel()),
        asyncio.ensure_future(tunnel_to_browser()),
    ]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
    logger.info("WebSocket raw byte relay ended")