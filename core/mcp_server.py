"""Reqbench Plugin Bridge — MCP Protocol Handler

JSON-RPC 2.0 over stdio for the external agent:
- initialize / notifications/initialized handshake (lenient: clients that
  skip it are auto-initialized)
- tools/list, tools/call, ping
- optional bearer token in ``params._meta.auth_token``, compared in
  constant time and stripped before dispatch
- request size limit; batch requests rejected
- tools/call requests run concurrently, each answered when it finishes;
  a failing tool is a successful JSON-RPC response with ``isError``
"""

from __future__ import annotations
import asyncio
import hmac
import json
import logging
import sys
from typing import Any, Optional, Set

from core.tool_registry import ToolRegistry
from core.tool_server import ToolServer, error_result

logger = logging.getLogger("reqbench.mcp_server")

MAX_REQUEST_LINE_BYTES = 10 * 1024 * 1024  # 10 MB max per JSON-RPC line
JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Custom error codes (MCP range)
AUTH_REQUIRED = -32000
AUTH_FAILED = -32001
REQUEST_TOO_LARGE = -32003


def _sanitize_log(s: Any) -> str:
    if not isinstance(s, str):
        return "invalid"
    return s.replace('\n', '\\n').replace('\r', '\\r').replace('\x00', '')[:200]


class ReqbenchMCPServer:
    def __init__(
        self,
        tool_server: ToolServer,
        registry: ToolRegistry,
        auth_token: Optional[str] = None,
        server_name: str = "reqbench-plugin-bridge",
        server_version: str = "0.1.0",
    ):
        self.tool_server = tool_server
        self.registry = registry
        self.auth_token = auth_token  # Resolved by the caller (env var or file)
        if self.auth_token is not None:
            if not isinstance(self.auth_token, str):
                raise ValueError("auth_token must be a string")
            if not self.auth_token.strip():
                raise ValueError("auth_token cannot be empty or whitespace-only")
        self.server_name = server_name
        self.server_version = server_version
        self._initialized = False
        self._init_confirmed = False
        self._shutting_down = False
        self._calls: Set[asyncio.Task] = set()

    def _make_response(self, req_id: Any, result: Any) -> dict:
        return {"jsonrpc": JSONRPC_VERSION, "id": req_id, "result": result}

    def _make_error(self, req_id: Any, code: int, message: str) -> dict:
        return {"jsonrpc": JSONRPC_VERSION, "id": req_id,
                "error": {"code": code, "message": message}}

    def _check_auth(self, request: dict) -> Optional[dict]:
        """Returns an error response, or None when the caller may proceed."""
        if not self.auth_token:
            return None

        raw_params = request.get("params") or {}
        meta = raw_params.get("_meta") if isinstance(raw_params, dict) else None
        if not isinstance(meta, dict):
            meta = {}
        provided_token = meta.get("auth_token") or request.get("auth_token")

        if not provided_token:
            return self._make_error(
                request.get("id"), AUTH_REQUIRED,
                "Authentication required. Provide auth_token in params._meta."
            )
        if not isinstance(provided_token, str):
            logger.warning("Authentication failed: invalid token type for request %s",
                           _sanitize_log(str(request.get("id"))))
            return self._make_error(request.get("id"), AUTH_FAILED, "Authentication failed.")
        if not hmac.compare_digest(provided_token.encode(), self.auth_token.encode()):
            logger.warning("Authentication failed for request %s",
                           _sanitize_log(str(request.get("id"))))
            return self._make_error(request.get("id"), AUTH_FAILED, "Authentication failed.")
        return None

    def handle_initialize(self, params: dict) -> dict:
        if self._initialized:
            logger.warning("Re-initialization attempt rejected")
            raise ValueError("Already initialized")
        self._initialized = True
        client_info = params.get("clientInfo") or {}
        if not isinstance(client_info, dict):
            client_info = {}
        logger.info("MCP initialize: client=%s version=%s",
                    _sanitize_log(client_info.get("name", "unknown")),
                    _sanitize_log(client_info.get("version", "unknown")))
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": self.server_name, "version": self.server_version},
        }

    def handle_list_tools(self) -> dict:
        return {"tools": self.registry.list_tools()}

    async def handle_call_tool(self, params: dict, req_id: Any) -> dict:
        """tools/call -> MCP tool result (never a JSON-RPC error object)."""
        tool_name = params.get("name")
        arguments = params.get("arguments", {})
        if arguments is None:
            arguments = {}

        if not isinstance(tool_name, str) or not tool_name:
            return error_result("Missing tool name")
        if not isinstance(arguments, dict):
            return error_result("arguments must be an object")

        request_id = str(req_id) if req_id is not None else None
        return await self.tool_server.handle_call(tool_name, arguments, request_id)

    async def handle_message(self, request: Any) -> Optional[dict]:
        """Answer one decoded JSON-RPC message. Returns None for
        notifications and anything else that gets no reply."""
        if isinstance(request, list):
            return self._make_error(
                None, INVALID_REQUEST,
                "Batch requests are not supported. Send requests individually."
            )
        if not isinstance(request, dict):
            return self._make_error(None, INVALID_REQUEST, "Invalid request (not an object)")
        if request.get("jsonrpc") != JSONRPC_VERSION:
            return self._make_error(request.get("id"), INVALID_REQUEST, "Invalid jsonrpc version")

        method = request.get("method")
        if not isinstance(method, str) or not method:
            return self._make_error(request.get("id"), INVALID_REQUEST, "Invalid method")

        req_id = request.get("id")
        if "id" in request:
            if isinstance(req_id, (dict, list)) or isinstance(req_id, bool):
                return self._make_error(None, INVALID_REQUEST, "Invalid id type")
        is_notification = "id" not in request

        params = request.get("params", {})
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return self._make_error(req_id, INVALID_PARAMS, "params must be an object")

        if method == "notifications/initialized":
            if self._initialized:
                self._init_confirmed = True
                logger.info("Client initialization confirmed")
            return None
        if method not in ("initialize", "ping") and not self._initialized:
            logger.info("Auto-initializing (client skipped initialize handshake)")
            self._initialized = True
            self._init_confirmed = True

        if method != "initialize":
            auth_error = self._check_auth(request)
            if auth_error:
                return None if is_notification else auth_error

        # Tokens never travel past this point
        params = dict(params)
        meta = params.get("_meta")
        if isinstance(meta, dict):
            meta = {k: v for k, v in meta.items() if k != "auth_token"}
            if meta:
                params["_meta"] = meta
            else:
                params.pop("_meta", None)

        try:
            if method == "initialize":
                result = self.handle_initialize(params)
            elif method == "tools/list":
                result = self.handle_list_tools()
            elif method == "tools/call":
                result = await self.handle_call_tool(params, req_id)
            elif method == "ping":
                result = {}
            else:
                if is_notification:
                    return None
                return self._make_error(req_id, METHOD_NOT_FOUND,
                                        f"Method not found: {_sanitize_log(method)}")
        except ValueError as e:
            return None if is_notification else self._make_error(req_id, INVALID_REQUEST, str(e))
        except Exception:
            logger.error("Handler error for method=%s", _sanitize_log(method), exc_info=True)
            return None if is_notification else self._make_error(
                req_id, INTERNAL_ERROR, "Internal server error"
            )

        return None if is_notification else self._make_response(req_id, result)

    async def _respond(self, request: Any) -> None:
        response = await self.handle_message(request)
        if response is not None:
            self._write_response(response)

    async def run_stdio(self) -> None:
        loop = asyncio.get_running_loop()
        logger.info("%s v%s starting stdio transport", self.server_name, self.server_version)

        def _readline_limited():
            return sys.stdin.buffer.readline(MAX_REQUEST_LINE_BYTES + 1)

        def _drain_line():
            while True:
                chunk = sys.stdin.buffer.readline(1024 * 1024)
                if not chunk or chunk.endswith(b"\n"):
                    break

        try:
            while not self._shutting_down:
                try:
                    line_bytes = await loop.run_in_executor(None, _readline_limited)
                except (EOFError, KeyboardInterrupt):
                    break
                if not line_bytes:
                    break

                if len(line_bytes) > MAX_REQUEST_LINE_BYTES:
                    logger.warning("Request too large: %d bytes", len(line_bytes))
                    if not line_bytes.endswith(b"\n"):
                        await loop.run_in_executor(None, _drain_line)
                    self._write_response(self._make_error(
                        None, REQUEST_TOO_LARGE,
                        f"Request exceeds {MAX_REQUEST_LINE_BYTES} byte limit",
                    ))
                    continue

                line = line_bytes.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                logger.debug("MCP RECV: %s", _sanitize_log(line))

                try:
                    request = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning("JSON parse error: %s", e)
                    self._write_response(self._make_error(None, PARSE_ERROR, "Invalid JSON"))
                    continue
                except RecursionError:
                    self._write_response(
                        self._make_error(None, PARSE_ERROR, "JSON structure too deep")
                    )
                    continue

                if isinstance(request, dict) and request.get("method") == "tools/call":
                    task = asyncio.create_task(self._respond(request))
                    self._calls.add(task)
                    task.add_done_callback(self._calls.discard)
                else:
                    await self._respond(request)
        finally:
            if self._calls:
                await asyncio.gather(*list(self._calls), return_exceptions=True)
            logger.info("MCP server stdio loop ended")

    def _write_response(self, response: dict) -> None:
        # One synchronous write per response: concurrent calls never interleave
        try:
            sys.stdout.write(json.dumps(response) + "\n")
            sys.stdout.flush()
        except (TypeError, ValueError) as e:
            logger.error("JSON serialization failed: %s", e)
            sys.stdout.write(json.dumps(self._make_error(
                response.get("id"), INTERNAL_ERROR, "Response serialization failed"
            )) + "\n")
            sys.stdout.flush()
        except (BrokenPipeError, OSError) as e:
            logger.error("Failed to write response: %s", e)
            self._shutting_down = True

    def request_shutdown(self) -> None:
        self._shutting_down = True
        logger.info("Shutdown requested")
