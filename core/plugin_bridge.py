"""Reqbench Plugin Bridge — Plugin Subprocess Manager

Runs an out-of-process plugin described by a ``reqbench-plugin.json``
manifest. The plugin speaks the event protocol (newline-delimited JSON
envelopes) on its stdin/stdout; the host answers its requests through a
HostDispatcher. stderr is captured for diagnostics.

Security model:
- Subprocess env: only allowlisted keys (+ PATH, Windows essentials);
  denylisted keys (PYTHONPATH, LD_PRELOAD, the MCP auth token...) never pass
- Own session / process group so the whole tree can be killed
- Line size limit on the protocol stream
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from collections import deque
from typing import List, Optional

from core.channel import EventChannel
from core.host_dispatcher import HostDispatcher
from core.transports import MAX_LINE_BYTES, StreamTransport
from models.models import PluginDescriptor

logger = logging.getLogger("reqbench.plugin_bridge")

GRACEFUL_STOP_TIMEOUT = 5.0   # Seconds for the plugin to exit after EOF
POSIX_KILL_GRACE = 3.0        # Seconds between SIGTERM and SIGKILL
STDERR_BUFFER_LINES = 50


def _safe_exc(e: BaseException, max_len: int = 200) -> str:
    """Sanitize exception for logging: strip CR/LF, truncate."""
    return str(e)[:max_len].replace('\r', ' ').replace('\n', ' ')


class PluginBridge:
    """Lifecycle of one subprocess plugin."""

    def __init__(self, descriptor: PluginDescriptor, host: HostDispatcher):
        self.descriptor = descriptor
        self.host = host
        self.channel: Optional[EventChannel] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_reader: Optional[asyncio.Task] = None
        self._watcher: Optional[asyncio.Task] = None
        self._stderr_buffer: deque = deque(maxlen=STDERR_BUFFER_LINES)

    # --- Public API ---

    async def start(self) -> bool:
        """Spawn the plugin and attach the host channel.

        Returns True if the process started, False on any failure.
        """
        if self._process is not None:
            raise RuntimeError(f"Plugin '{self.descriptor.name}' already started")
        if not await self._spawn_process():
            return False

        transport = StreamTransport(
            self._process.stdout, self._process.stdin, name=f"plugin:{self.descriptor.name}"
        )
        self.channel = EventChannel(
            transport,
            handler=self.host.handle,
            request_timeout=self.descriptor.timeout_seconds,
        ).start()
        self._stderr_reader = asyncio.create_task(
            self._stderr_reader_loop(), name=f"plugin-{self.descriptor.name}-stderr"
        )
        self._watcher = asyncio.create_task(
            self._watch_process(), name=f"plugin-{self.descriptor.name}-watch"
        )
        logger.info("Plugin %r v%s started (PID %d)",
                    self.descriptor.name, self.descriptor.version, self._process.pid)
        return True

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for the plugin to exit. Returns its exit code, or None if
        it is still running after ``timeout`` seconds."""
        if self._process is None:
            return None
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def stop(self) -> None:
        """Close the channel (EOF on the plugin's stdin), give it a grace
        period, then kill the process tree."""
        if self._process is None:
            return
        logger.info("Stopping plugin %r...", self.descriptor.name)
        if self.channel is not None:
            await self.channel.close("Plugin stopping")
        if self._process.returncode is None:
            if await self.wait(GRACEFUL_STOP_TIMEOUT) is None:
                await self._kill_process_tree()
        await self._cleanup_tasks()
        logger.info("Plugin %r stopped (exit code %s)",
                    self.descriptor.name, self._process.returncode)

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    def stderr_tail(self) -> List[str]:
        return list(self._stderr_buffer)

    # --- Subprocess lifecycle ---

    async def _spawn_process(self) -> bool:
        try:
            kwargs = {
                'stdin': asyncio.subprocess.PIPE,
                'stdout': asyncio.subprocess.PIPE,
                'stderr': asyncio.subprocess.PIPE,
                'env': self.descriptor.build_subprocess_env(),
                'cwd': self.descriptor.working_dir,
                # Match protocol line limit: the 64KB default would overrun
                # on valid lines
                'limit': MAX_LINE_BYTES,
            }
            if sys.platform == 'win32':
                kwargs['creationflags'] = 0x00000200  # CREATE_NEW_PROCESS_GROUP
            else:
                kwargs['start_new_session'] = True

            cmd = [self.descriptor.command] + self.descriptor.args
            self._process = await asyncio.create_subprocess_exec(*cmd, **kwargs)
            logger.debug("Plugin %r spawned (PID %d)", self.descriptor.name, self._process.pid)
            return True
        except (OSError, ValueError) as e:
            logger.error("Plugin %r spawn failed: %s", self.descriptor.name, _safe_exc(e))
            self._process = None
            return False

    async def _watch_process(self) -> None:
        returncode = await self._process.wait()
        level = logging.INFO if returncode == 0 else logging.WARNING
        logger.log(level, "Plugin %r exited with code %s", self.descriptor.name, returncode)
        if returncode != 0 and self._stderr_buffer:
            logger.warning("Plugin %r last stderr: %s",
                           self.descriptor.name, " | ".join(list(self._stderr_buffer)[-5:]))
        if self.channel is not None:
            await self.channel.close("Plugin process exited")

    async def _stderr_reader_loop(self) -> None:
        """Captures stderr for diagnostics."""
        stream = self._process.stderr
        while True:
            try:
                line_bytes = await stream.readline()
            except ValueError:
                logger.warning("Plugin %r: oversized stderr line discarded", self.descriptor.name)
                continue
            except (ConnectionResetError, BrokenPipeError):
                break
            if not line_bytes:
                break

            line_str = line_bytes.decode('utf-8', errors='replace').rstrip()
            if line_str:
                # Strip CR/LF to prevent log injection
                safe_line = line_str.replace('\r', ' ').replace('\n', ' ')
                buffered = safe_line[:1000] + "..." if len(safe_line) > 1000 else safe_line
                self._stderr_buffer.append(buffered)
                logger.debug("Plugin %r stderr: %s", self.descriptor.name, safe_line[:200])

    async def _kill_process_tree(self) -> None:
        """Kill the plugin process and all its children."""
        pid = self._process.pid
        if sys.platform == 'win32':
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
        else:
            try:
                pgid = os.getpgid(pid)
                os.killpg(pgid, signal.SIGTERM)
                if await self.wait(POSIX_KILL_GRACE) is None:
                    os.killpg(pgid, signal.SIGKILL)
            except ProcessLookupError:
                pass  # Already exited
            except PermissionError:
                try:
                    self._process.kill()
                except ProcessLookupError:
                    pass

        if await self.wait(GRACEFUL_STOP_TIMEOUT) is None:
            logger.warning("Plugin %r: process didn't exit after kill", self.descriptor.name)

    async def _cleanup_tasks(self) -> None:
        for task in (self._watcher, self._stderr_reader):
            if task is not None and not task.done():
                task.cancel()
        tasks = [t for t in (self._watcher, self._stderr_reader) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watcher = None
        self._stderr_reader = None
