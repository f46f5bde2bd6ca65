import asyncio
import json

import pytest

from core.channel import EventChannel
from core.errors import TransportError
from core.transports import MemoryTransport
from models.events import ErrorKind, RequestEnvelope, ResponseEnvelope


def _pair(handler, request_timeout=5.0):
    plugin_end, host_end = MemoryTransport.pair("test")
    host = EventChannel(host_end, handler=handler, name="host").start()
    plugin = EventChannel(plugin_end, request_timeout=request_timeout, name="plugin").start()
    return plugin, host


async def _echo(envelope, channel):
    return ResponseEnvelope.success(envelope.id, {"kind": envelope.kind, **envelope.payload})


def _request(kind="ListWorkspaces", **payload):
    return RequestEnvelope(id=f"req-{kind}-{len(payload)}", kind=kind, payload=payload)


def test_response_is_correlated_by_id():
    async def scenario():
        plugin, host = _pair(_echo)
        try:
            response = await plugin.send(_request("GetWorkspace", id="wk_1"))
            assert response.ok
            assert response.id == "req-GetWorkspace-1"
            assert response.payload == {"kind": "GetWorkspace", "id": "wk_1"}
            assert plugin.pending_count == 0
        finally:
            await plugin.close()
            await host.close()

    asyncio.run(scenario())


def test_outstanding_requests_complete_out_of_order():
    async def handler(envelope, channel):
        await asyncio.sleep(envelope.payload["delay"])
        return ResponseEnvelope.success(envelope.id, {"delay": envelope.payload["delay"]})

    async def scenario():
        plugin, host = _pair(handler)
        order = []

        async def call(request_id, delay):
            response = await plugin.send(
                RequestEnvelope(id=request_id, kind="Slow", payload={"delay": delay})
            )
            order.append(request_id)
            return response

        try:
            slow, fast = await asyncio.gather(call("slow", 0.2), call("fast", 0.01))
            assert order == ["fast", "slow"]
            assert slow.payload == {"delay": 0.2}
            assert fast.payload == {"delay": 0.01}
        finally:
            await plugin.close()
            await host.close()

    asyncio.run(scenario())


def test_timeout_yields_transport_error_and_drops_late_response():
    release = None

    async def handler(envelope, channel):
        await release.wait()
        return ResponseEnvelope.success(envelope.id, {"late": True})

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        plugin, host = _pair(handler, request_timeout=0.05)
        try:
            response = await plugin.send(_request())
            assert not response.ok
            assert response.error["kind"] == ErrorKind.TRANSPORT.value
            assert response.error["reason"] == TransportError.TIMEOUT
            assert plugin.pending_count == 0

            # The late answer arrives and is discarded without disturbing the channel
            release.set()
            await asyncio.sleep(0.05)
            assert plugin.pending_count == 0
            assert not plugin.is_closed

            again = await plugin.send(_request("Again"), timeout=1.0)
            assert again.ok
        finally:
            await plugin.close()
            await host.close()

    asyncio.run(scenario())


def test_close_cancels_pending_requests():
    async def handler(envelope, channel):
        await asyncio.sleep(10)
        return ResponseEnvelope.success(envelope.id)

    async def scenario():
        plugin, host = _pair(handler)
        try:
            pending = asyncio.ensure_future(plugin.send(_request()))
            await asyncio.sleep(0.01)
            assert plugin.pending_count == 1
            await plugin.close("Plugin stopping")
            response = await pending
            assert not response.ok
            assert response.error["reason"] == TransportError.CANCELLED
            assert "Plugin stopping" in response.error["message"]
        finally:
            await host.close()

    asyncio.run(scenario())


def test_send_on_closed_channel_reports_closed():
    async def scenario():
        plugin, host = _pair(_echo)
        await plugin.close()
        response = await plugin.send(_request())
        assert not response.ok
        assert response.error["reason"] == TransportError.CLOSED
        await host.close()

    asyncio.run(scenario())


def test_peer_close_closes_this_end():
    async def scenario():
        plugin, host = _pair(_echo)
        closed = []
        plugin.on_close(lambda channel: closed.append(channel.name))
        await host.close()
        await asyncio.wait_for(plugin.wait_closed(), timeout=1)
        assert closed == ["plugin"]
        assert plugin.is_closed

    asyncio.run(scenario())


def test_channel_without_handler_rejects_requests():
    async def scenario():
        a_end, b_end = MemoryTransport.pair("bare")
        a = EventChannel(a_end, name="a").start()
        b = EventChannel(b_end, name="b").start()
        try:
            response = await a.send(_request())
            assert not response.ok
            assert response.error["kind"] == ErrorKind.VALIDATION.value
        finally:
            await a.close()
            await b.close()

    asyncio.run(scenario())


def test_handler_crash_becomes_internal_error():
    async def handler(envelope, channel):
        raise KeyError("secret detail")

    async def scenario():
        plugin, host = _pair(handler)
        try:
            response = await plugin.send(_request())
            assert not response.ok
            assert response.error == {"kind": "InternalError", "message": "Internal error"}
        finally:
            await plugin.close()
            await host.close()

    asyncio.run(scenario())


def test_malformed_lines_are_skipped():
    async def scenario():
        plugin_end, host_end = MemoryTransport.pair("raw")
        host = EventChannel(host_end, handler=_echo, name="host").start()
        try:
            await plugin_end.send("not json")
            await plugin_end.send(json.dumps([1, 2, 3]))
            await plugin_end.send(json.dumps({"id": "", "kind": "ListWorkspaces"}))
            await plugin_end.send(json.dumps({"id": "ok-1", "kind": "ListWorkspaces"}))
            line = await asyncio.wait_for(plugin_end.receive(), timeout=1)
            assert json.loads(line)["id"] == "ok-1"
            assert not host.is_closed
        finally:
            await host.close()

    asyncio.run(scenario())


def test_duplicate_outstanding_id_is_rejected():
    async def handler(envelope, channel):
        await asyncio.sleep(10)
        return ResponseEnvelope.success(envelope.id)

    async def scenario():
        plugin, host = _pair(handler)
        try:
            first = asyncio.ensure_future(plugin.send(_request()))
            await asyncio.sleep(0.01)
            with pytest.raises(ValueError):
                await plugin.send(_request())
            await plugin.close()
            await first
        finally:
            await host.close()

    asyncio.run(scenario())


def test_request_timeout_must_be_positive():
    plugin_end, _ = MemoryTransport.pair()
    with pytest.raises(ValueError):
        EventChannel(plugin_end, request_timeout=0)
