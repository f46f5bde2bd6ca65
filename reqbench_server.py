"""Reqbench Plugin Bridge — Main Entry Point

Modes:
- default: in-process entity store + host dispatcher; the MCP server on
  stdio drives the tool catalog through a local plugin connection.
  ``--plugins-dir`` additionally launches subprocess plugins against the
  same store.
- ``--connect ws://...``: MCP server only; tools talk to a remote host.
- ``--serve ws://host:port``: host only; plugins connect over WebSocket.

Logging goes to stderr (stdout is reserved for MCP JSON-RPC).
"""

from __future__ import annotations
import argparse
import asyncio
import logging
import os
import signal
import stat
import sys
from typing import List, Optional
from urllib.parse import urlsplit

# Ensure the project directory is on sys.path when launched by an external host
_REQBENCH_DIR = os.path.dirname(os.path.abspath(__file__))
if _REQBENCH_DIR not in sys.path:
    sys.path.insert(0, _REQBENCH_DIR)

from core.channel import EventChannel
from core.governance import GovernanceGate
from core.host_dispatcher import HostDispatcher
from core.mcp_server import ReqbenchMCPServer
from core.plugin_bridge import PluginBridge
from core.plugin_runtime import PluginConnection, connect_local, connect_remote
from core.store import MemoryEntityStore
from core.task_logger import TaskLogger
from core.tool_registry import ToolRegistry
from core.tool_server import DEFAULT_MAX_CONCURRENT, ToolServer
from core.transports import serve_websocket
from models.models import MANIFEST_FILENAME, PluginDescriptor, PolicyMode
from modules.environment_tools import EnvironmentToolsModule
from modules.request_tools import RequestToolsModule
from modules.workspace_tools import WorkspaceToolsModule

__version__ = "0.1.0"

AUTH_TOKEN_ENV = "REQBENCH_MCP_AUTH_TOKEN"
REQUEST_TIMEOUT_ENV = "REQBENCH_REQUEST_TIMEOUT"
TOOL_MODULES = (WorkspaceToolsModule, RequestToolsModule, EnvironmentToolsModule)
_MAX_TOKEN_BYTES = 4096


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Set up logging to stderr (stdout is reserved for MCP JSON-RPC)."""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        # O_NOFOLLOW: refuse to log through a symlink
        log_path = os.path.realpath(log_file)
        try:
            open_flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
            if hasattr(os, 'O_NOFOLLOW'):
                open_flags |= os.O_NOFOLLOW
            log_fd = os.open(log_path, open_flags, 0o644)
            fd_stat = os.fstat(log_fd)
            if not stat.S_ISREG(fd_stat.st_mode):
                os.close(log_fd)
                print(f"WARNING: --log-file {log_file!r} is not a regular file, ignoring",
                      file=sys.stderr)
            else:
                handlers.append(logging.StreamHandler(os.fdopen(log_fd, "a")))
        except OSError as e:
            print(f"WARNING: --log-file {log_file!r} open failed: {e}, ignoring",
                  file=sys.stderr)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=handlers,
    )


def read_auth_token(path: str) -> str:
    """Read a token file. Raises ValueError for anything but a small,
    non-empty regular file."""
    open_flags = os.O_RDONLY
    if hasattr(os, 'O_NOFOLLOW'):
        open_flags |= os.O_NOFOLLOW
    if hasattr(os, 'O_NONBLOCK'):
        open_flags |= os.O_NONBLOCK  # a FIFO would block open() forever
    fd = os.open(path, open_flags)
    with os.fdopen(fd, "rb") as f:
        fd_stat = os.fstat(f.fileno())
        if not stat.S_ISREG(fd_stat.st_mode):
            raise ValueError(f"Auth token file {path!r} is not a regular file")
        if os.name != 'nt' and fd_stat.st_mode & 0o077:
            logging.getLogger("reqbench.server").warning(
                "Auth token file %r has overly permissive permissions (mode %s). "
                "Recommend chmod 600.", path, oct(fd_stat.st_mode & 0o777),
            )
        raw = f.read(_MAX_TOKEN_BYTES + 1)
    if len(raw) > _MAX_TOKEN_BYTES:
        raise ValueError(f"Auth token file too large (max {_MAX_TOKEN_BYTES} bytes)")
    token = raw.decode("utf-8", errors="replace").strip()
    if not token:
        raise ValueError(f"Auth token file is empty: {path!r}")
    return token


def resolve_auth_token(token_file: Optional[str]) -> Optional[str]:
    """File > env var. An empty token fails closed."""
    if token_file:
        return read_auth_token(token_file)
    if AUTH_TOKEN_ENV in os.environ:
        token = os.environ[AUTH_TOKEN_ENV].strip()
        if not token:
            raise ValueError(f"{AUTH_TOKEN_ENV} is set but empty; refusing to start")
        return token
    return None


def parse_ws_address(url: str):
    """``ws://host:port`` -> (host, port)."""
    parts = urlsplit(url)
    if parts.scheme not in ("ws", "wss") or not parts.hostname or parts.port is None:
        raise ValueError(f"Expected ws://host:port, got {url!r}")
    return parts.hostname, parts.port


def build_registry(context) -> ToolRegistry:
    registry = ToolRegistry()
    for module_cls in TOOL_MODULES:
        registry.register_module(module_cls(context))
    return registry


def discover_plugins(plugins_dirs: List[str], logger: logging.Logger) -> List[PluginDescriptor]:
    """Scan each directory's subfolders for a plugin manifest. Later
    duplicates of a plugin name are skipped."""
    descriptors: List[PluginDescriptor] = []
    seen = set()
    for plugins_dir in plugins_dirs:
        if not os.path.isdir(plugins_dir):
            logger.warning("Plugins dir not found: %r", plugins_dir)
            continue
        real_pdir = os.path.realpath(plugins_dir)
        for entry in sorted(os.scandir(plugins_dir), key=lambda e: e.name):
            if entry.is_symlink():
                logger.warning("Skipping symlink in plugins dir: %r", entry.name)
                continue
            if not entry.is_dir():
                continue
            real_entry = os.path.realpath(entry.path)
            if os.path.commonpath([real_pdir, real_entry]) != real_pdir:
                logger.warning("Plugin dir %r resolves outside plugins dir, skipping", entry.name)
                continue
            manifest = os.path.join(real_entry, MANIFEST_FILENAME)
            if not os.path.exists(manifest):
                continue
            try:
                desc = PluginDescriptor.from_json(manifest)
            except (OSError, ValueError) as e:
                logger.error("Bad manifest %r: %s", manifest, e)
                continue
            if desc.name in seen:
                logger.error("Duplicate plugin %r from %r, skipping", desc.name, desc.working_dir)
                continue
            seen.add(desc.name)
            descriptors.append(desc)
    return descriptors


async def launch_plugins(
    plugins_dirs: List[str], host: HostDispatcher, logger: logging.Logger
) -> List[PluginBridge]:
    bridges = []
    for desc in discover_plugins(plugins_dirs, logger):
        bridge = PluginBridge(desc, host)
        if await bridge.start():
            bridges.append(bridge)
        else:
            logger.error("Plugin %r failed to start", desc.name)
    return bridges


async def shutdown_plugins(
    plugins: List[PluginBridge], logger: logging.Logger, timeout: float = 10.0
) -> None:
    for bridge in plugins:
        try:
            await asyncio.wait_for(bridge.stop(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Plugin %r stop timed out", bridge.descriptor.name)


async def serve_host(
    address: str,
    host: HostDispatcher,
    request_timeout: float,
    stop: asyncio.Event,
    logger: logging.Logger,
) -> None:
    bind_host, bind_port = parse_ws_address(address)

    async def on_transport(transport):
        channel = EventChannel(
            transport, handler=host.handle, request_timeout=request_timeout
        ).start()
        await channel.wait_closed()

    server = await serve_websocket(bind_host, bind_port, on_transport)
    logger.info("Host listening on ws://%s:%d", bind_host, bind_port)
    try:
        await stop.wait()
    finally:
        server.close()
        await server.wait_closed()


async def run(args, auth_token: Optional[str], logger: logging.Logger) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    host: Optional[HostDispatcher] = None
    connection: Optional[PluginConnection] = None
    plugins: List[PluginBridge] = []
    mcp_server: Optional[ReqbenchMCPServer] = None
    tool_server: Optional[ToolServer] = None

    def shutdown(sig=None, frame=None):
        sig_name = signal.Signals(sig).name if sig else "manual"
        logger.info("Shutting down (signal=%s)...", sig_name)
        if mcp_server is not None:
            mcp_server.request_shutdown()
        loop.call_soon_threadsafe(stop.set)

    signal.signal(signal.SIGINT, shutdown)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, shutdown)

    try:
        if not args.connect:
            host = HostDispatcher(MemoryEntityStore())
            if args.plugins_dir:
                plugins = await launch_plugins(args.plugins_dir, host, logger)

        if args.serve:
            logger.info("Reqbench host started: plugins=%d", len(plugins))
            await serve_host(args.serve, host, args.request_timeout, stop, logger)
            return

        if args.connect:
            connection = await connect_remote(args.connect, args.request_timeout)
        else:
            connection = connect_local(host, args.request_timeout)

        registry = build_registry(connection.context)
        governance = GovernanceGate(PolicyMode[args.policy])
        task_logger = TaskLogger(log_dir=args.audit_dir)
        tool_server = ToolServer(
            registry, governance, task_logger, max_concurrent=args.max_concurrent_tools
        )
        mcp_server = ReqbenchMCPServer(
            tool_server, registry, auth_token=auth_token, server_version=__version__
        )

        logger.info(
            "Reqbench MCP server started: policy=%s tools=%d plugins=%d auth=%s "
            "host=%s audit_log=%s",
            args.policy, registry.tool_count, len(plugins),
            "enabled" if auth_token else "disabled",
            args.connect or "local", task_logger.current_log_path,
        )
        await mcp_server.run_stdio()
    finally:
        if tool_server is not None:
            await tool_server.close()
        if connection is not None:
            await connection.close("Server shutting down")
        if plugins:
            await shutdown_plugins(plugins, logger)
        if host is not None:
            await host.close()


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be a positive number")
    return number


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reqbench Plugin Bridge")
    parser.add_argument(
        "--policy", type=str, choices=[m.name for m in PolicyMode], default="READ_WRITE",
        help="Governance policy mode (default: READ_WRITE)",
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", type=str, default=None,
                        help="Log file path (in addition to stderr)")
    parser.add_argument("--audit-dir", type=str, default="logs",
                        help="Tool invocation audit log directory")
    parser.add_argument(
        "--request-timeout", type=_positive_float,
        default=os.environ.get(REQUEST_TIMEOUT_ENV, "30"),
        help=f"Seconds to wait for each host response (env {REQUEST_TIMEOUT_ENV}, default 30)",
    )
    parser.add_argument(
        "--max-concurrent-tools", type=_positive_int, default=DEFAULT_MAX_CONCURRENT,
        help=f"Tool invocations run at once (default {DEFAULT_MAX_CONCURRENT})",
    )
    parser.add_argument(
        "--auth-token-file", type=str, default=None,
        help=f"File containing the MCP auth token (or set {AUTH_TOKEN_ENV})",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--connect", type=str, default=None, metavar="WS_URL",
                      help="Use a remote host started with --serve")
    mode.add_argument("--serve", type=str, default=None, metavar="WS_URL",
                      help="Run as host only, accepting plugins on ws://host:port")
    parser.add_argument(
        "--plugins-dir", action="append", default=[],
        help=f"Directory of plugin folders with {MANIFEST_FILENAME} (repeatable)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.connect and args.plugins_dir:
        parser.error("--plugins-dir needs a local host; it cannot be combined with --connect")
    if args.serve:
        try:
            parse_ws_address(args.serve)
        except ValueError as e:
            parser.error(str(e))

    configure_logging(args.log_level, args.log_file)
    logger = logging.getLogger("reqbench.server")

    try:
        auth_token = resolve_auth_token(args.auth_token_file)
    except (OSError, ValueError) as e:
        logger.error("Auth token: %s", e)
        sys.exit(1)

    try:
        asyncio.run(run(args, auth_token, logger))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.critical("Server failed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
