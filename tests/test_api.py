import asyncio

import pytest

from core.errors import ConflictError, NotFoundError, ValidationError
from core.handles import HttpRequestHandle, HttpResponseHandle
from models.entities import ChangeOp, ModelKind


def test_create_then_get_round_trip(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main", description="APIs")
            request = await b.ctx.http_request.create(
                ws.id, "Ping", url="https://example.com", method="GET",
                headers=[{"name": "Accept", "value": "application/json"}],
            )
            assert isinstance(request, HttpRequestHandle)
            assert request.id.startswith("rq_")

            fetched = await b.ctx.http_request.get_by_id(request.id)
            assert fetched == request
            assert fetched.header("accept") == "application/json"
            assert await b.ctx.http_request.get_by_id("rq_missing") is None

    asyncio.run(scenario())


def test_ping_send_and_history(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            request = await b.ctx.http_request.create(
                ws.id, "Ping", url="https://example.com", method="GET",
            )
            response = await b.ctx.http_request.send(request.id)
            assert isinstance(response, HttpResponseHandle)
            assert response.status == 200
            assert response.request_id == request.id
            assert response.header("content-type") == "text/plain"

            history = await b.ctx.http_response.list(request.id, limit=1)
            assert [r.id for r in history] == [response.id]
            latest = await request.latest_response()
            assert latest == response
            assert b.sender.sent[0].url == "https://example.com"

    asyncio.run(scenario())


def test_arguments_are_checked_before_any_round_trip(bench):
    async def scenario():
        async with bench() as b:
            with pytest.raises(ValidationError):
                await b.ctx.workspace.create("   ")
            with pytest.raises(ValidationError):
                await b.ctx.http_request.create("wk_1", "R", method="TELEPORT")
            with pytest.raises(ValidationError):
                await b.ctx.http_request.create("wk_1", "R", headers=[{"value": "x"}])
            with pytest.raises(ValidationError):
                await b.ctx.http_response.list("rq_1", limit=0)
            with pytest.raises(ValidationError):
                await b.ctx.folder.list("")
            assert b.store.count(ModelKind.HTTP_REQUEST) == 0

    asyncio.run(scenario())


def test_lists_are_scoped_to_one_workspace(bench):
    async def scenario():
        async with bench() as b:
            a = await b.ctx.workspace.create("A")
            other = await b.ctx.workspace.create("B")
            await b.ctx.http_request.create(a.id, "In A")
            await b.ctx.http_request.create(other.id, "In B")
            await b.ctx.environment.create(other.id, "Prod")

            assert [r.name for r in await b.ctx.http_request.list(a.id)] == ["In A"]
            assert await b.ctx.environment.list(a.id) == []
            assert [w.name for w in await b.ctx.workspace.list()] == ["A", "B"]

    asyncio.run(scenario())


def test_folder_cycle_is_rejected(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            outer = await b.ctx.folder.create(ws.id, "Outer")
            inner = await b.ctx.folder.create(ws.id, "Inner", parent_id=outer.id)
            with pytest.raises(ConflictError, match="cycle"):
                await b.ctx.folder.move_to(outer.id, inner.id)

            children = await outer.folders()
            assert [f.id for f in children] == [inner.id]
            top = await b.ctx.folder.list(ws.id, parent_id=None)
            assert [f.id for f in top] == [outer.id]

    asyncio.run(scenario())


def test_request_cannot_move_into_a_foreign_folder(bench):
    async def scenario():
        async with bench() as b:
            a = await b.ctx.workspace.create("A")
            other = await b.ctx.workspace.create("B")
            foreign = await b.ctx.folder.create(other.id, "Elsewhere")
            request = await b.ctx.http_request.create(a.id, "R")
            with pytest.raises(NotFoundError):
                await request.move_to(foreign.id)
            assert request.folder_id is None

    asyncio.run(scenario())


def test_workspace_delete_cascades(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            folder = await b.ctx.folder.create(ws.id, "F")
            request = await b.ctx.http_request.create(ws.id, "R", folder_id=folder.id)
            await request.send()
            await b.ctx.environment.create(ws.id, "Dev", variables={"host": "localhost"})

            await b.ctx.workspace.delete(ws.id)
            for kind in ModelKind:
                assert b.store.count(kind) == 0
            assert await b.ctx.http_request.get_by_id(request.id) is None
            with pytest.raises(NotFoundError):
                await b.ctx.workspace.delete(ws.id)

    asyncio.run(scenario())


def test_update_bumps_updated_at(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            updated = await b.ctx.workspace.update(ws.id, name="Renamed")
            assert updated.name == "Renamed"
            assert updated.created_at == ws.created_at
            assert updated.updated_at > ws.updated_at
            assert ws.name == "Main"

    asyncio.run(scenario())


def test_environment_variables_render_into_sends(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            dev = await b.ctx.environment.create(ws.id, "Dev", variables={"host": "dev.local"})
            prod = await b.ctx.environment.create(
                ws.id, "Prod", variables={"host": "prod.example.com"}, active=True,
            )
            request = await b.ctx.http_request.create(
                ws.id, "R", url="https://{{host}}/status",
                authentication={"type": "bearer", "token": "{{token}}"},
            )
            await b.ctx.environment.set_variable(prod.id, "token", "s3cret")

            await request.send()
            await request.send(environment_id=dev.id)
            first, second = b.sender.sent
            assert first.url == "https://prod.example.com/status"
            assert ("Authorization", "Bearer s3cret") in first.headers
            assert second.url == "https://dev.local/status"
            assert ("Authorization", "Bearer {{token}}") in second.headers

            active = await ws.active_environment()
            assert active.id == prod.id
            assert active.variable("token") == "s3cret"

    asyncio.run(scenario())


def test_grpc_request_lifecycle(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            grpc = await b.ctx.grpc_request.create(
                ws.id, "Hello", url="grpc://localhost:50051",
                service="helloworld.Greeter", method="SayHello", message='{"name": "x"}',
            )
            grpc = await grpc.set_url("grpcs://greeter.example.com:443")
            assert grpc.url == "grpcs://greeter.example.com:443"
            grpc = await grpc.set_service("helloworld.Greeter2")
            grpc = await grpc.set_message("{}")
            assert (grpc.service, grpc.message) == ("helloworld.Greeter2", "{}")
            grpc = await grpc.set_metadata("x-trace", "1")
            assert grpc.metadata() == [{"name": "x-trace", "value": "1", "enabled": True}]
            copy = await grpc.duplicate()
            assert copy.name == "Hello Copy"
            assert len(await ws.grpc_requests()) == 2

    asyncio.run(scenario())


def test_subscription_streams_workspace_changes(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            other = await b.ctx.workspace.create("Other")
            async with b.ctx.subscribe(ws.id, models=[ModelKind.HTTP_REQUEST]) as sub:
                await b.ctx.folder.create(ws.id, "Ignored: wrong model")
                await b.ctx.http_request.create(other.id, "Ignored: wrong workspace")
                request = await b.ctx.http_request.create(ws.id, "Seen")
                await request.set_name("Seen again")
                await request.delete()

                events = []
                async for change in sub:
                    events.append((change.op, change.entity_id))
                    if len(events) == 3:
                        break
            assert events == [
                (ChangeOp.CREATED, request.id),
                (ChangeOp.UPDATED, request.id),
                (ChangeOp.DELETED, request.id),
            ]
            assert not sub.active

    asyncio.run(scenario())


def test_subscription_ends_when_connection_closes(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            sub = await b.ctx.subscribe(ws.id).start()
            await b.connection.close()
            assert [change async for change in sub] == []

    asyncio.run(scenario())


def test_subscribe_to_missing_workspace_fails(bench):
    async def scenario():
        async with bench() as b:
            with pytest.raises(NotFoundError):
                await b.ctx.subscribe("wk_missing").start()

    asyncio.run(scenario())


def test_restarted_subscription_gets_a_fresh_stream(bench):
    async def scenario():
        async with bench() as b:
            ws = await b.ctx.workspace.create("Main")
            sub = await b.ctx.subscribe(ws.id, models=[ModelKind.FOLDER]).start()
            first_id = sub.subscription_id
            await b.ctx.folder.create(ws.id, "Before restart")
            await sub.restart()
            assert sub.subscription_id != first_id

            after = await b.ctx.folder.create(ws.id, "After restart")
            change = await sub.__anext__()
            assert (change.op, change.entity_id) == (ChangeOp.CREATED, after.id)
            await sub.close()

    asyncio.run(scenario())
