import asyncio

import pytest

from core.mcp_server import (
    AUTH_FAILED, AUTH_REQUIRED, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND,
    ReqbenchMCPServer,
)


class DummyRegistry:
    def list_tools(self):
        return [{"name": "demo", "description": "Demo", "inputSchema": {"type": "object"}}]


class DummyToolServer:
    def __init__(self):
        self.calls = []

    async def handle_call(self, tool_name, arguments, request_id=None):
        self.calls.append((tool_name, arguments, request_id))
        return {"content": [{"type": "text", "text": "ok"}]}


def _server(auth_token=None):
    return ReqbenchMCPServer(
        tool_server=DummyToolServer(),
        registry=DummyRegistry(),
        auth_token=auth_token,
    )


def _rpc(method, req_id=1, **params):
    return {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}


def test_auth_required_when_token_missing():
    server = _server(auth_token="secret")
    err = server._check_auth({"id": 1, "params": {}})
    assert err["error"]["code"] == AUTH_REQUIRED


def test_auth_failed_when_token_wrong():
    server = _server(auth_token="secret")
    err = server._check_auth({"id": 2, "params": {"_meta": {"auth_token": "wrong"}}})
    assert err["error"]["code"] == AUTH_FAILED


def test_auth_failed_when_token_type_invalid():
    server = _server(auth_token="secret")
    err = server._check_auth({"id": 3, "params": {"_meta": {"auth_token": 123}}})
    assert err["error"]["code"] == AUTH_FAILED


def test_auth_accepts_valid_token():
    server = _server(auth_token="secret")
    assert server._check_auth({"id": 4, "params": {"_meta": {"auth_token": "secret"}}}) is None


def test_empty_auth_token_is_rejected_at_construction():
    with pytest.raises(ValueError):
        _server(auth_token="   ")


def test_initialize_rejects_second_call():
    server = _server()
    result = server.handle_initialize({})
    assert result["serverInfo"]["name"] == "reqbench-plugin-bridge"
    with pytest.raises(ValueError, match="Already initialized"):
        server.handle_initialize({})


def test_second_initialize_message_is_invalid_request():
    server = _server()

    async def scenario():
        first = await server.handle_message(_rpc("initialize", clientInfo={"name": "agent"}))
        second = await server.handle_message(_rpc("initialize", req_id=2))
        return first, second

    first, second = asyncio.run(scenario())
    assert first["result"]["protocolVersion"] == "2024-11-05"
    assert second["error"] == {"code": INVALID_REQUEST, "message": "Already initialized"}


def test_handle_call_tool_rejects_non_object_arguments():
    server = _server()
    result = asyncio.run(
        server.handle_call_tool({"name": "demo", "arguments": []}, req_id=10)
    )
    assert result["isError"] is True
    assert result["content"][0]["text"] == "arguments must be an object"


def test_handle_call_tool_forwards_string_request_id():
    server = _server()
    tool_server = server.tool_server
    asyncio.run(
        server.handle_call_tool(
            {"name": "demo_tool", "arguments": {"x": 1}},
            req_id=42,
        )
    )
    assert tool_server.calls == [("demo_tool", {"x": 1}, "42")]


def test_auth_token_is_stripped_before_dispatch():
    server = _server(auth_token="secret")
    request = _rpc("tools/call", name="demo", arguments={"a": 1},
                   _meta={"auth_token": "secret", "progressToken": 7})
    response = asyncio.run(server.handle_message(request))
    assert response["result"]["content"][0]["text"] == "ok"
    assert server.tool_server.calls == [("demo", {"a": 1}, "1")]


def test_unauthenticated_tools_list_is_refused():
    server = _server(auth_token="secret")
    response = asyncio.run(server.handle_message(_rpc("tools/list")))
    assert response["error"]["code"] == AUTH_REQUIRED

    response = asyncio.run(server.handle_message(
        _rpc("tools/list", _meta={"auth_token": "secret"})
    ))
    assert response["result"]["tools"][0]["name"] == "demo"


@pytest.mark.parametrize("message, code, text", [
    ([_rpc("ping")], INVALID_REQUEST, "Batch requests are not supported. Send requests individually."),
    ("ping", INVALID_REQUEST, "Invalid request (not an object)"),
    ({"jsonrpc": "1.0", "id": 1, "method": "ping"}, INVALID_REQUEST, "Invalid jsonrpc version"),
    ({"jsonrpc": "2.0", "id": 1}, INVALID_REQUEST, "Invalid method"),
    ({"jsonrpc": "2.0", "id": True, "method": "ping"}, INVALID_REQUEST, "Invalid id type"),
    ({"jsonrpc": "2.0", "id": 1, "method": "ping", "params": [1]}, INVALID_PARAMS,
     "params must be an object"),
    (_rpc("resources/list"), METHOD_NOT_FOUND, "Method not found: resources/list"),
])
def test_malformed_messages(message, code, text):
    response = asyncio.run(_server().handle_message(message))
    assert response["error"] == {"code": code, "message": text}


def test_notifications_get_no_reply():
    server = _server()

    async def scenario():
        initialized = await server.handle_message(
            {"jsonrpc": "2.0", "method": "notifications/initialized"}
        )
        unknown = await server.handle_message({"jsonrpc": "2.0", "method": "notifications/x"})
        return initialized, unknown

    assert asyncio.run(scenario()) == (None, None)


def test_ping_and_lenient_initialization():
    server = _server()
    response = asyncio.run(server.handle_message(_rpc("tools/list", req_id="abc")))
    assert response["id"] == "abc"
    assert response["result"]["tools"][0]["name"] == "demo"
    assert asyncio.run(server.handle_message(_rpc("ping", req_id=5)))["result"] == {}
