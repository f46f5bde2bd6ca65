"""Reqbench Plugin Bridge — Plugin Runtime

Ways for plugin code to get a PluginContext:

- ``run_plugin(main)``: the entry point of a subprocess plugin launched by
  the host. The event protocol runs on stdin/stdout; logs go to stderr.
- ``connect_local(host)``: an in-process pair wired to a HostDispatcher.
  The tool server and the tests use this.
- ``connect_remote(url)``: a WebSocket connection to ``reqbench_server.py
  --serve``.
"""

from __future__ import annotations
import asyncio
import logging
import sys
from typing import Awaitable, Callable, Optional

from core.api import PluginContext
from core.channel import DEFAULT_REQUEST_TIMEOUT, EventChannel
from core.host_dispatcher import HostDispatcher
from core.plugin_dispatcher import PluginDispatcher
from core.transports import (
    MAX_LINE_BYTES, MemoryTransport, StreamTransport, Transport, connect_websocket,
)

logger = logging.getLogger("reqbench.plugin_runtime")

PluginMain = Callable[[PluginContext], Awaitable[None]]


class PluginConnection:
    """A live PluginContext plus the channel(s) behind it."""

    def __init__(
        self,
        context: PluginContext,
        channel: EventChannel,
        host_channel: Optional[EventChannel] = None,
    ):
        self.context = context
        self.channel = channel
        self.host_channel = host_channel

    async def close(self, reason: str = "Plugin disconnected") -> None:
        await self.channel.close(reason)
        if self.host_channel is not None:
            await self.host_channel.close(reason)

    async def __aenter__(self) -> "PluginConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def _plugin_side(transport: Transport, request_timeout: float, name: str) -> PluginConnection:
    channel = EventChannel(transport, request_timeout=request_timeout, name=name).start()
    return PluginConnection(PluginContext(PluginDispatcher(channel)), channel)


def connect_local(
    host: HostDispatcher,
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> PluginConnection:
    """Must be called from a running loop."""
    plugin_end, host_end = MemoryTransport.pair("local")
    host_channel = EventChannel(
        host_end, handler=host.handle, request_timeout=request_timeout, name="host-local"
    ).start()
    connection = _plugin_side(plugin_end, request_timeout, "plugin-local")
    connection.host_channel = host_channel
    return connection


async def connect_remote(
    url: str, request_timeout: float = DEFAULT_REQUEST_TIMEOUT
) -> PluginConnection:
    transport = await connect_websocket(url)
    return _plugin_side(transport, request_timeout, f"plugin-ws:{url}")


async def open_stdio_transport() -> StreamTransport:
    """stdin/stdout as a StreamTransport (the subprocess side of a plugin)."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    w_transport, w_protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout
    )
    writer = asyncio.StreamWriter(w_transport, w_protocol, reader, loop)
    return StreamTransport(reader, writer, name="stdio")


async def serve_plugin(
    main: PluginMain, request_timeout: float = DEFAULT_REQUEST_TIMEOUT
) -> None:
    transport = await open_stdio_transport()
    connection = _plugin_side(transport, request_timeout, "plugin-stdio")
    try:
        await main(connection.context)
    finally:
        await connection.close("Plugin finished")


def run_plugin(
    main: PluginMain,
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    log_level: str = "INFO",
) -> None:
    """Entry point for subprocess plugins::

        async def main(context):
            for ws in await context.workspace.list():
                ...

        if __name__ == "__main__":
            run_plugin(main)
    """
    # stdout carries the protocol
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        asyncio.run(serve_plugin(main, request_timeout))
    except KeyboardInterrupt:
        logger.info("Plugin interrupted")
