import asyncio

import pytest

from core.errors import ConflictError, NotFoundError, TransportError, ValidationError
from core.handles import FolderHandle
from core.host_dispatcher import HostDispatcher
from core.plugin_runtime import connect_local
from core.store import MemoryEntityStore
from models.events import EventKind

from conftest import FakeSender


class SlowHost(HostDispatcher):
    """Commits updates only after the plugin has stopped waiting."""

    delay = 0.2

    async def handle(self, envelope, channel=None):
        if envelope.kind == EventKind.UPDATE_WORKSPACE.value:
            await asyncio.sleep(self.delay)
        return await super().handle(envelope, channel)


def test_snapshot_fields_are_read_only(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            with pytest.raises(AttributeError):
                ws.name = "Hacked"
            with pytest.raises(AttributeError):
                ws.id = "wk_other"
            assert ws.name == "Main"

    asyncio.run(scenario())


def test_accessors_return_copies(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            request = await b.ctx.http_request.create(
                ws.id, "R", headers=[{"name": "Accept", "value": "*/*"}],
            )
            request.headers().append({"name": "X", "value": "1", "enabled": True})
            assert len(request.headers()) == 1
            snap = request.snapshot()
            snap["name"] = "changed"
            assert request.name == "R"
            assert "model" not in request.to_dict()

    asyncio.run(scenario())


def test_mutator_replaces_snapshot_with_confirmed_entity(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            request = await b.ctx.http_request.create(ws.id, "R")
            before = request.updated_at
            returned = await request.set_method("put")
            assert returned is request
            assert request.method == "PUT"
            assert request.updated_at > before

            await request.set_header("X-Trace", "1")
            await request.set_header("x-trace", "2")
            assert request.headers() == [{"name": "X-Trace", "value": "2", "enabled": True}]
            await request.remove_header("X-TRACE")
            assert request.headers() == []
            with pytest.raises(NotFoundError):
                await request.remove_header("X-Trace")

    asyncio.run(scenario())


def test_failed_mutator_leaves_snapshot_untouched(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            request = await b.ctx.http_request.create(ws.id, "R")
            snapshot = request.snapshot()

            with pytest.raises(ValidationError):
                await request.set_url("gopher://old.example.com")
            await b.ctx.http_request.delete(request.id)
            with pytest.raises(NotFoundError):
                await request.set_name("Gone")
            assert request.snapshot() == snapshot

    asyncio.run(scenario())


def test_stale_list_mutation_conflicts(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            mine = await b.ctx.http_request.create(ws.id, "R")
            theirs = await b.ctx.http_request.get_by_id(mine.id)

            await theirs.set_header("Accept", "text/html")
            with pytest.raises(ConflictError):
                await mine.set_header("Authorization", "Bearer x")

            await mine.refresh()
            await mine.set_header("Authorization", "Bearer x")
            assert [h["name"] for h in mine.headers()] == ["Accept", "Authorization"]

    asyncio.run(scenario())


def test_timed_out_mutator_keeps_old_snapshot():
    async def scenario():
        host = SlowHost(MemoryEntityStore(), FakeSender())
        connection = connect_local(host, request_timeout=0.05)
        try:
            ctx = connection.context
            ws = await ctx.workspace.create("Main")
            with pytest.raises(TransportError) as info:
                await ws.set_name("Renamed")
            assert info.value.reason == TransportError.TIMEOUT
            assert ws.name == "Main"

            # The host finished the update after the plugin gave up waiting
            await asyncio.sleep(SlowHost.delay + 0.1)
            fresh = await ctx.workspace.get_by_id(ws.id)
            assert fresh.name == "Renamed"
            await ws.refresh()
            assert ws.name == "Renamed"
        finally:
            await connection.close()
            await host.close()

    asyncio.run(scenario())


def test_actions_return_new_handles(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            request = await b.ctx.http_request.create(ws.id, "R", url="example.com")
            snapshot = request.snapshot()
            copy = await request.duplicate()
            response = await request.send()
            assert copy.id != request.id
            assert response.request_id == request.id
            assert request.snapshot() == snapshot

            responses = await request.responses()
            assert [r.id for r in responses] == [response.id]

    asyncio.run(scenario())


def test_environment_handle_variables(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            env = await b.ctx.environment.create(ws.id, "Dev")
            await env.set_variable("host", "localhost")
            assert env.variables() == {"host": "localhost"}
            await env.activate()
            assert env.active is True
            await env.remove_variable("host")
            assert env.variable("host") is None

    asyncio.run(scenario())


def test_handle_refuses_wrong_model(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            with pytest.raises(ValueError):
                FolderHandle(b.ctx.dispatcher, ws.snapshot())

    asyncio.run(scenario())


def test_response_handles_are_immutable(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            request = await b.ctx.http_request.create(ws.id, "R", url="example.com")
            response = await request.send()
            with pytest.raises(AttributeError):
                response.status = 500

    asyncio.run(scenario())
