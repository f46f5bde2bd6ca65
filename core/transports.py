"""Reqbench Plugin Bridge — Line Transports

A transport moves whole protocol messages (one JSON document per line)
between two endpoints. Three implementations:

- StreamTransport: asyncio StreamReader/StreamWriter pair (plugin
  subprocess stdin/stdout, or the plugin's own stdio)
- MemoryTransport: in-process queue pair, for in-process plugins and tests
- WebSocketTransport: one message per text frame, via ``websockets``
"""

from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger("reqbench.transport")

MAX_LINE_BYTES = 2 * 1024 * 1024  # 2 MB per protocol message
DRAIN_TIMEOUT = 10.0              # Seconds to wait for writer.drain()


class Transport(ABC):
    """Duplex, message-oriented link. ``receive`` returns None at EOF."""

    name: str = "transport"

    @abstractmethod
    async def send(self, line: str) -> None:
        """Send one message. Raises ConnectionError if the link is gone."""

    @abstractmethod
    async def receive(self) -> Optional[str]:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class StreamTransport(Transport):
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        name: str = "stream",
    ):
        self.reader = reader
        self.writer = writer
        self.name = name
        self._closed = False

    async def send(self, line: str) -> None:
        if self._closed:
            raise ConnectionError(f"{self.name}: transport closed")
        data = (line + "\n").encode("utf-8")
        if len(data) > MAX_LINE_BYTES:
            raise ValueError(
                f"Outbound message too large ({len(data):,} bytes, max {MAX_LINE_BYTES:,})"
            )
        try:
            self.writer.write(data)
            await asyncio.wait_for(self.writer.drain(), timeout=DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            raise ConnectionError(f"{self.name}: drain timed out (peer not reading)")
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            raise ConnectionError(f"{self.name}: pipe broken: {e}")

    async def receive(self) -> Optional[str]:
        while not self._closed:
            try:
                line_bytes = await self.reader.readline()
            except ValueError:
                # StreamReader limit overrun; the oversized line is discarded
                logger.warning("%s: oversized line discarded", self.name)
                continue
            except (ConnectionResetError, BrokenPipeError):
                return None

            if not line_bytes:
                return None
            if len(line_bytes) > MAX_LINE_BYTES:
                logger.warning(
                    "%s: oversized line (%d bytes) discarded",
                    self.name, len(line_bytes),
                )
                continue
            line = line_bytes.decode("utf-8", errors="replace").strip()
            if line:
                return line
        return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=DRAIN_TIMEOUT)
        except (asyncio.TimeoutError, BrokenPipeError, ConnectionResetError, OSError):
            pass  # Peer already gone, nothing left to flush


class MemoryTransport(Transport):
    """One end of an in-process transport pair. Closing either end delivers
    EOF to both."""

    def __init__(self, inbox: asyncio.Queue, outbox: asyncio.Queue, name: str = "memory"):
        self._inbox = inbox
        self._outbox = outbox
        self.name = name
        self._closed = False

    @classmethod
    def pair(cls, name: str = "memory") -> Tuple["MemoryTransport", "MemoryTransport"]:
        a_to_b: asyncio.Queue = asyncio.Queue()
        b_to_a: asyncio.Queue = asyncio.Queue()
        return (
            cls(inbox=b_to_a, outbox=a_to_b, name=f"{name}:a"),
            cls(inbox=a_to_b, outbox=b_to_a, name=f"{name}:b"),
        )

    async def send(self, line: str) -> None:
        if self._closed:
            raise ConnectionError(f"{self.name}: transport closed")
        await self._outbox.put(line)

    async def receive(self) -> Optional[str]:
        if self._closed and self._inbox.empty():
            return None
        line = await self._inbox.get()
        if line is None:
            self._closed = True
        return line

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._outbox.put_nowait(None)  # EOF for the peer
        self._inbox.put_nowait(None)   # wake our own receiver


class WebSocketTransport(Transport):
    def __init__(self, websocket, name: str = "websocket"):
        self.websocket = websocket
        self.name = name

    async def send(self, line: str) -> None:
        if len(line.encode("utf-8")) > MAX_LINE_BYTES:
            raise ValueError(f"Outbound message too large (max {MAX_LINE_BYTES:,} bytes)")
        try:
            await self.websocket.send(line)
        except ConnectionClosed as e:
            raise ConnectionError(f"{self.name}: websocket closed: {e}")

    async def receive(self) -> Optional[str]:
        try:
            message = await self.websocket.recv()
        except ConnectionClosed:
            return None
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        return message

    async def close(self) -> None:
        await self.websocket.close()


async def connect_websocket(url: str) -> WebSocketTransport:
    """Open a client transport to a host serving ``serve_websocket``."""
    websocket = await websockets.connect(url, max_size=MAX_LINE_BYTES)
    logger.info("Connected to host at %s", url)
    return WebSocketTransport(websocket, name=f"ws:{url}")


async def serve_websocket(
    host: str,
    port: int,
    on_transport: Callable[[WebSocketTransport], Awaitable[None]],
):
    """Accept plugin connections. ``on_transport`` must return only when the
    connection is finished; the socket is closed when it does."""

    async def _handler(websocket):
        peer = getattr(websocket, "remote_address", None)
        transport = WebSocketTransport(websocket, name=f"ws-peer:{peer}")
        logger.info("Plugin connected from %s", peer)
        try:
            await on_transport(transport)
        finally:
            logger.info("Plugin disconnected from %s", peer)

    return await websockets.serve(_handler, host, port, max_size=MAX_LINE_BYTES)
