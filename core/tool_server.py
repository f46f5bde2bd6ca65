"""Reqbench Plugin Bridge — Tool Server

Runs tool invocations for the external agent. Pipeline per call:

    lookup -> param safety -> schema validation -> governance
           -> execute (concurrency slot + per-tool timeout) -> format

Every outcome is a tool result dict; nothing raises out of ``handle_call``
except the caller's own cancellation. A failing, timed-out or cancelled
invocation only affects its own result. The server takes no locks on
entities: concurrent writes are ordered by the store.
"""

from __future__ import annotations
import asyncio
import copy
import json
import logging
import uuid
from typing import Any, Dict, Optional, Set

from core.errors import BridgeError
from core.governance import GovernanceGate
from core.handles import Handle
from core.task_logger import TaskLogger
from core.tool_registry import ToolRegistry
from core.validation import check_param_safety, validate_params
from models.models import ActionType, InvocationRecord, Tool

logger = logging.getLogger("reqbench.tool_server")

DEFAULT_MAX_CONCURRENT = 8
MAX_RESULT_SIZE = 1_000_000  # chars returned to the client


def error_result(message: str) -> dict:
    return {"content": [{"type": "text", "text": message}], "isError": True}


def text_result(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}]}


def _plain(value: Any) -> Any:
    """Handles and lists of handles -> JSON-ready data."""
    if isinstance(value, Handle):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def format_result(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(_plain(value), indent=2, default=str)


class ToolServer:
    def __init__(
        self,
        registry: ToolRegistry,
        governance: GovernanceGate,
        task_logger: Optional[TaskLogger] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.registry = registry
        self.governance = governance
        self.task_logger = task_logger
        self.max_concurrent = max_concurrent
        self._slots = asyncio.Semaphore(max_concurrent)
        self._inflight: Set[asyncio.Task] = set()
        self._closed = False
        if task_logger is not None:
            for tool in registry.all_tools():
                task_logger.register_tool(tool)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def handle_call(
        self,
        tool_name: str,
        params: Optional[dict],
        request_id: Optional[str] = None,
    ) -> dict:
        if request_id is None:
            request_id = str(uuid.uuid4())

        tool = self.registry.get(tool_name)
        if tool is None:
            logger.warning("[%s] Tool not found: %s", request_id, str(tool_name)[:100])
            return error_result(f"ValidationError: Tool '{str(tool_name)[:100]}' not found")

        if params is None:
            params = {}
        if not isinstance(params, dict):
            return error_result("ValidationError: Tool arguments must be an object")

        error = check_param_safety(params) or validate_params(tool.parameters, params)
        if error:
            logger.warning("[%s] Validation failed for %s: %s", request_id, tool_name, error)
            return error_result(f"ValidationError: Invalid parameters: {error}")

        params = copy.deepcopy(params)
        record = None
        if self.task_logger is not None:
            record = self.task_logger.create(
                tool_name, tool.module_id, copy.deepcopy(params), tool.safety_level, request_id
            )

        decision = self.governance.evaluate(tool)
        if decision.action != ActionType.ALLOW:
            if record is not None:
                self.task_logger.block(record, decision.reason)
            logger.info("[%s] Blocked: tool=%s reason=%s", request_id, tool_name, decision.reason)
            return error_result("Blocked by policy.")

        if self._closed:
            return self._finish(record, error_result("TransportError: Tool server is shutting down."))

        try:
            args = tool.arguments.from_params(params) if tool.arguments else None
        except (TypeError, ValueError) as e:
            logger.warning("[%s] Argument record failed for %s: %s", request_id, tool_name, e)
            return self._finish(record, error_result(f"ValidationError: Invalid parameters: {e}"))

        async with self._slots:
            # Calls queued behind max_concurrent when close() ran never start
            if self._closed:
                logger.info("[%s] Cancelled before start: %s", request_id, tool_name)
                return self._finish(
                    record, error_result(f"TransportError: Tool '{tool.name}' was cancelled.")
                )
            if record is not None:
                self.task_logger.start(record)
            outcome = await self._execute(tool, args, params, request_id)

        return self._finish(record, outcome)

    def _finish(self, record: Optional[InvocationRecord], outcome: dict) -> dict:
        if record is not None:
            text = outcome["content"][0]["text"]
            if outcome.get("isError"):
                self.task_logger.fail(record, text)
            else:
                self.task_logger.complete(record, text)
        return outcome

    async def _execute(self, tool: Tool, args, params: dict, request_id: str) -> dict:
        coro = tool.handler(args) if tool.arguments else tool.handler(**params)
        task = asyncio.create_task(coro, name=f"tool-{tool.name}-{request_id}")
        self._inflight.add(task)
        try:
            done, _ = await asyncio.wait({task}, timeout=tool.max_execution_seconds)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._inflight.discard(task)

        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.error("[%s] Timeout: %s exceeded %ss",
                         request_id, tool.name, tool.max_execution_seconds)
            return error_result(
                f"TransportError: Tool '{tool.name}' timed out after "
                f"{tool.max_execution_seconds}s; its effect on stored data is unknown."
            )

        if task.cancelled():
            logger.info("[%s] Cancelled: %s", request_id, tool.name)
            return error_result(f"TransportError: Tool '{tool.name}' was cancelled.")

        exc = task.exception()
        if isinstance(exc, BridgeError):
            logger.info("[%s] %s failed: %s", request_id, tool.name, exc)
            return error_result(str(exc))
        if exc is not None:
            logger.error("[%s] Tool execution error: %s", request_id, tool.name,
                         exc_info=(type(exc), exc, exc.__traceback__))
            return error_result("InternalError: Internal tool error. Check server logs.")

        try:
            text = format_result(task.result())
        except (TypeError, ValueError):
            logger.error("[%s] Unformattable result from %s", request_id, tool.name, exc_info=True)
            return error_result("InternalError: Internal tool error. Check server logs.")

        if len(text) > MAX_RESULT_SIZE:
            logger.warning("[%s] Result truncated for %s", request_id, tool.name)
            text = text[:MAX_RESULT_SIZE] + f"\n... [TRUNCATED at {MAX_RESULT_SIZE} chars]"
        return text_result(text)

    async def close(self) -> None:
        """Cancel in-flight invocations; each resolves to a cancelled result."""
        self._closed = True
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
