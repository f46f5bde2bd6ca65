import asyncio
import json
import os

import pytest

from core.governance import GovernanceGate
from core.task_logger import REDACTED, TaskLogger
from core.tool_registry import ToolModule, ToolRegistrationError, ToolRegistry
from core.tool_server import ToolServer
from models.entities import ModelKind
from models.models import PolicyMode, SafetyLevel, Tool
from reqbench_server import build_registry

from conftest import FakeSender


def _server(ctx, policy=PolicyMode.FULL, task_logger=None, max_concurrent=8):
    return ToolServer(build_registry(ctx), GovernanceGate(policy), task_logger, max_concurrent)


def _text(result):
    return result["content"][0]["text"]


def _payload(result):
    assert not result.get("isError"), _text(result)
    return json.loads(_text(result))


def test_registry_lists_every_tool_with_a_schema(bench):
    async def scenario():
        async with bench() as b:
            tools = {t["name"]: t for t in build_registry(b.ctx).list_tools()}
            assert {
                "list_workspaces", "create_workspace", "list_folders", "create_folder",
                "list_requests", "get_request", "create_request", "update_request",
                "delete_request", "duplicate_request", "send_request",
                "get_response_history", "list_environments", "get_active_environment",
                "set_environment_variable",
            } <= set(tools)

            schema = tools["list_requests"]["inputSchema"]
            assert schema["required"] == ["workspaceId"]
            assert schema["properties"]["folderId"]["type"] == ["string", "null"]
            assert schema["additionalProperties"] is False

            headers = tools["create_request"]["inputSchema"]["properties"]["headers"]
            assert headers["items"]["required"] == ["name", "value"]

    asyncio.run(scenario())


def test_ping_flow_through_tools(bench):
    async def scenario():
        async with bench() as b:
            server = _server(b.ctx)
            ws = _payload(await server.handle_call("create_workspace", {"name": "Main"}))
            request = _payload(await server.handle_call("create_request", {
                "workspaceId": ws["id"], "name": "Ping",
                "url": "https://example.com", "method": "GET",
            }))
            assert request["id"].startswith("rq_")
            assert "model" not in request

            response = _payload(await server.handle_call("send_request", {"id": request["id"]}))
            assert response["status"] == 200

            history = _payload(await server.handle_call(
                "get_response_history", {"requestId": request["id"], "limit": 1},
            ))
            assert [r["id"] for r in history] == [response["id"]]

    asyncio.run(scenario())


def test_invalid_arguments_never_reach_the_host(bench):
    async def scenario():
        async with bench() as b:
            server = _server(b.ctx)
            result = await server.handle_call("create_workspace", {})
            assert result["isError"] is True
            assert _text(result) == (
                "ValidationError: Invalid parameters: Missing required parameter: 'name'"
            )

            result = await server.handle_call("create_workspace", {"name": "x", "extra": 1})
            assert _text(result) == "ValidationError: Invalid parameters: Unknown parameters: extra"

            result = await server.handle_call("create_workspace", ["not", "a", "dict"])
            assert _text(result) == "ValidationError: Tool arguments must be an object"

            result = await server.handle_call("no_such_tool", {})
            assert _text(result) == "ValidationError: Tool 'no_such_tool' not found"

            assert _payload(await server.handle_call("list_workspaces", {})) == []

    asyncio.run(scenario())


def test_facade_errors_come_back_as_typed_text(bench):
    async def scenario():
        async with bench() as b:
            server = _server(b.ctx)
            result = await server.handle_call("get_request", {"id": "rq_missing"})
            assert result["isError"] is True
            assert _text(result) == "NotFoundError: HttpRequest 'rq_missing' not found"

            ws = _payload(await server.handle_call("create_workspace", {"name": "Main"}))
            result = await server.handle_call("create_request", {
                "workspaceId": ws["id"], "name": "R", "method": "TELEPORT",
            })
            assert _text(result).startswith("ValidationError: 'method' must be one of")

    asyncio.run(scenario())


def test_policy_blocks_tools_above_the_ceiling(bench):
    async def scenario():
        async with bench() as b:
            server = _server(b.ctx, policy=PolicyMode.READ_ONLY)
            result = await server.handle_call("create_workspace", {"name": "Main"})
            assert result == {
                "content": [{"type": "text", "text": "Blocked by policy."}], "isError": True,
            }
            assert _payload(await server.handle_call("list_workspaces", {})) == []

            server = _server(b.ctx, policy=PolicyMode.READ_WRITE)
            ws = _payload(await server.handle_call("create_workspace", {"name": "Main"}))
            request = _payload(await server.handle_call(
                "create_request", {"workspaceId": ws["id"], "name": "R"},
            ))
            result = await server.handle_call("delete_request", {"id": request["id"]})
            assert _text(result) == "Blocked by policy."

    asyncio.run(scenario())


def test_concurrent_delete_and_send(bench):
    async def scenario():
        async with bench(sender=FakeSender(delay=0.2)) as b:
            server = _server(b.ctx)
            ws = _payload(await server.handle_call("create_workspace", {"name": "Main"}))
            request = _payload(await server.handle_call(
                "create_request", {"workspaceId": ws["id"], "name": "R", "url": "example.com"},
            ))

            send = asyncio.ensure_future(server.handle_call("send_request", {"id": request["id"]}))
            await asyncio.sleep(0.05)
            deleted = await server.handle_call("delete_request", {"id": request["id"]})
            sent = await send

            assert _payload(deleted) == {"deleted": request["id"]}
            assert sent["isError"] is True
            assert _text(sent) == (
                f"NotFoundError: HttpRequest {request['id']!r} was deleted while it was being sent"
            )
            # No orphaned response was recorded
            assert b.store.count(ModelKind.HTTP_RESPONSE) == 0

    asyncio.run(scenario())


class _SlowModule(ToolModule):
    module_id = "slow"

    def register_tools(self):
        return [
            Tool(
                name="sleepy",
                description="Sleeps.",
                parameters={"seconds": {"type": "number"}},
                handler=self.sleepy,
                safety_level=SafetyLevel.SAFE,
                module_id=self.module_id,
                max_execution_seconds=0.1,
            ),
            Tool(
                name="explode",
                description="Fails.",
                parameters={},
                handler=self.explode,
                safety_level=SafetyLevel.SAFE,
                module_id=self.module_id,
            ),
        ]

    async def sleepy(self, seconds):
        await asyncio.sleep(seconds)
        return "awake"

    async def explode(self):
        raise RuntimeError("secret internals")


def _slow_server():
    registry = ToolRegistry()
    registry.register_module(_SlowModule(None))
    return ToolServer(registry, GovernanceGate(PolicyMode.READ_ONLY))


def test_tool_timeout_is_reported_and_isolated():
    async def scenario():
        server = _slow_server()
        slow, fast = await asyncio.gather(
            server.handle_call("sleepy", {"seconds": 5}),
            server.handle_call("sleepy", {"seconds": 0.01}),
        )
        assert slow["isError"] is True
        assert _text(slow).startswith("TransportError: Tool 'sleepy' timed out after 0.1s")
        assert _text(fast) == "awake"
        assert server.inflight_count == 0

    asyncio.run(scenario())


def test_unexpected_tool_failure_is_masked():
    async def scenario():
        server = _slow_server()
        result = await server.handle_call("explode", {})
        assert _text(result) == "InternalError: Internal tool error. Check server logs."
        assert "secret" not in _text(result)

    asyncio.run(scenario())


def test_close_cancels_inflight_calls():
    async def scenario():
        registry = ToolRegistry()
        module = _SlowModule(None)
        registry.register_module(module)
        registry.get("sleepy").max_execution_seconds = 30
        server = ToolServer(registry, GovernanceGate(PolicyMode.READ_ONLY))

        call = asyncio.ensure_future(server.handle_call("sleepy", {"seconds": 10}))
        await asyncio.sleep(0.05)
        await server.close()
        result = await call
        assert _text(result) == "TransportError: Tool 'sleepy' was cancelled."

        result = await server.handle_call("sleepy", {"seconds": 0})
        assert _text(result) == "TransportError: Tool server is shutting down."

    asyncio.run(scenario())


def test_audit_log_redacts_secret_values(bench, tmp_path):
    async def scenario():
        async with bench() as b:
            audit = TaskLogger(log_dir=str(tmp_path))
            server = _server(b.ctx, task_logger=audit)
            ws = _payload(await server.handle_call("create_workspace", {"name": "Main"}))
            env = await b.ctx.environment.create(ws["id"], "Dev")
            result = await server.handle_call("set_environment_variable", {
                "environmentId": env.id, "name": "token", "value": "hunter2",
            })
            assert not result.get("isError")
            for tool_name in ("list_environments", "get_active_environment"):
                result = await server.handle_call(tool_name, {"workspaceId": ws["id"]})
                assert not result.get("isError")
            assert "hunter2" in _text(await server.handle_call(
                "list_environments", {"workspaceId": ws["id"]},
            ))
            return audit.current_log_path

    path = asyncio.run(scenario())
    assert os.path.exists(path)
    with open(path, encoding="utf-8") as f:
        raw = f.read()
    assert "hunter2" not in raw
    records = [json.loads(line) for line in raw.splitlines()]

    variable_records = [r for r in records if r["tool_name"] == "set_environment_variable"]
    assert [r["status"] for r in variable_records] == ["created", "started", "completed"]
    for record in variable_records:
        assert record["params"]["value"] == REDACTED
        assert record["params"]["name"] == "token"
        assert "_chain_hash" in record
    assert variable_records[-1]["result"] == REDACTED


def test_audit_log_records_blocked_calls(bench, tmp_path):
    async def scenario():
        async with bench() as b:
            audit = TaskLogger(log_dir=str(tmp_path))
            server = _server(b.ctx, policy=PolicyMode.READ_ONLY, task_logger=audit)
            await server.handle_call("create_workspace", {"name": "Main"})
            return audit.current_log_path

    path = asyncio.run(scenario())
    with open(path, encoding="utf-8") as f:
        records = [json.loads(line) for line in f]
    assert [r["status"] for r in records] == ["created", "blocked"]
    assert "exceeds" in records[-1]["error"]


def test_duplicate_tool_names_are_refused():
    registry = ToolRegistry()
    registry.register_module(_SlowModule(None))
    with pytest.raises(ToolRegistrationError, match="already registered"):
        registry.register_module(_SlowModule(None))
    assert registry.tool_count == 2


def test_close_cancels_calls_waiting_for_a_slot(tmp_path):
    async def scenario():
        registry = ToolRegistry()
        registry.register_module(_SlowModule(None))
        registry.get("sleepy").max_execution_seconds = 30
        audit = TaskLogger(log_dir=str(tmp_path))
        server = ToolServer(registry, GovernanceGate(PolicyMode.READ_ONLY), audit,
                            max_concurrent=1)

        running = asyncio.ensure_future(server.handle_call("sleepy", {"seconds": 10}))
        queued = asyncio.ensure_future(server.handle_call("sleepy", {"seconds": 0}))
        await asyncio.sleep(0.05)
        await server.close()
        late = await server.handle_call("sleepy", {"seconds": 0})
        return await running, await queued, late, audit.current_log_path

    running, queued, late, path = asyncio.run(scenario())
    assert _text(running) == "TransportError: Tool 'sleepy' was cancelled."
    assert _text(queued) == "TransportError: Tool 'sleepy' was cancelled."
    assert _text(late) == "TransportError: Tool server is shutting down."

    with open(path, encoding="utf-8") as f:
        records = [json.loads(line) for line in f]
    final = {}
    for record in records:
        final[record["invocation_id"]] = record["status"]
    # Every invocation reaches a terminal state, queued and refused ones included
    assert sorted(final.values()) == ["failed", "failed", "failed"]
