import asyncio

import pytest

from core.errors import ConflictError, NotFoundError, ValidationError
from core.folder_tree import FolderTree
from core.store import MemoryEntityStore
from models.entities import (
    ChangeOp, Environment, Folder, HttpRequest, HttpResponse, ModelKind, Workspace,
)


async def _seed(store):
    async with store.transaction() as tx:
        ws = await tx.insert(Workspace(name="Main"))
        parent = await tx.insert(Folder(workspace_id=ws.id, name="API"))
        child = await tx.insert(Folder(workspace_id=ws.id, parent_id=parent.id, name="v1"))
        request = await tx.insert(HttpRequest(workspace_id=ws.id, folder_id=child.id, name="Ping"))
        await tx.insert(HttpResponse(workspace_id=ws.id, request_id=request.id, status=200))
        await tx.insert(Environment(workspace_id=ws.id, name="Dev"))
        loose = await tx.insert(HttpRequest(workspace_id=ws.id, name="Loose"))
    return ws, parent, child, request, loose


def test_insert_assigns_prefixed_id_and_timestamps():
    async def scenario():
        store = MemoryEntityStore()
        async with store.transaction() as tx:
            ws = await tx.insert(Workspace(name="Main"))
        assert ws.id.startswith("wk_")
        assert ws.created_at == ws.updated_at
        async with store.transaction() as tx:
            assert await tx.get(ModelKind.WORKSPACE, ws.id) == ws

    asyncio.run(scenario())


def test_update_bumps_updated_at_strictly():
    async def scenario():
        store = MemoryEntityStore()
        async with store.transaction() as tx:
            ws = await tx.insert(Workspace(name="Main"))
            first = await tx.update(ModelKind.WORKSPACE, ws.id, {"name": "A"})
            second = await tx.update(ModelKind.WORKSPACE, ws.id, {"name": "B"})
        assert ws.updated_at < first.updated_at < second.updated_at
        assert second.created_at == ws.created_at

    asyncio.run(scenario())


def test_update_rejects_immutable_and_unknown_fields():
    async def scenario():
        store = MemoryEntityStore()
        async with store.transaction() as tx:
            ws = await tx.insert(Workspace(name="Main"))
            request = await tx.insert(HttpRequest(workspace_id=ws.id, name="Ping"))
        async with store.transaction() as tx:
            with pytest.raises(ValidationError):
                await tx.update(ModelKind.HTTP_REQUEST, request.id, {"workspace_id": "wk_other"})
            with pytest.raises(ValidationError):
                await tx.update(ModelKind.HTTP_REQUEST, request.id, {"colour": "red"})
            with pytest.raises(NotFoundError):
                await tx.update(ModelKind.HTTP_REQUEST, "rq_missing", {"name": "x"})

    asyncio.run(scenario())


def test_update_with_stale_guard_conflicts():
    async def scenario():
        store = MemoryEntityStore()
        async with store.transaction() as tx:
            ws = await tx.insert(Workspace(name="Main"))
            await tx.update(ModelKind.WORKSPACE, ws.id, {"name": "Renamed"})
        async with store.transaction() as tx:
            with pytest.raises(ConflictError):
                await tx.update(ModelKind.WORKSPACE, ws.id, {"name": "Late"},
                                if_updated_at=ws.updated_at)

    asyncio.run(scenario())


def test_exception_rolls_back_the_whole_transaction():
    async def scenario():
        store = MemoryEntityStore()
        async with store.transaction() as tx:
            ws = await tx.insert(Workspace(name="Main"))

        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.update(ModelKind.WORKSPACE, ws.id, {"name": "Changed"})
                await tx.insert(Folder(workspace_id=ws.id, name="Tmp"))
                raise RuntimeError("boom")

        async with store.transaction() as tx:
            assert (await tx.get(ModelKind.WORKSPACE, ws.id)).name == "Main"
        assert store.count(ModelKind.FOLDER) == 0

    asyncio.run(scenario())


def test_workspace_delete_cascades_to_everything_inside():
    async def scenario():
        store = MemoryEntityStore()
        ws, *_ = await _seed(store)
        async with store.transaction() as tx:
            removed = await tx.delete(ModelKind.WORKSPACE, ws.id)
        assert removed[0].id == ws.id
        for kind in ModelKind:
            assert store.count(kind) == 0

    asyncio.run(scenario())


def test_folder_delete_cascades_to_subtree_only():
    async def scenario():
        store = MemoryEntityStore()
        ws, parent, child, request, loose = await _seed(store)
        async with store.transaction() as tx:
            removed = await tx.delete(ModelKind.FOLDER, parent.id)
        assert removed[0].id == parent.id
        assert {e.id for e in removed} >= {parent.id, child.id, request.id}
        assert store.count(ModelKind.FOLDER) == 0
        assert store.count(ModelKind.HTTP_RESPONSE) == 0
        async with store.transaction() as tx:
            assert await tx.get(ModelKind.HTTP_REQUEST, loose.id) is not None
            assert await tx.get(ModelKind.WORKSPACE, ws.id) is not None
        assert store.count(ModelKind.ENVIRONMENT) == 1

    asyncio.run(scenario())


def test_reads_are_copies():
    async def scenario():
        store = MemoryEntityStore()
        async with store.transaction() as tx:
            ws = await tx.insert(Workspace(name="Main"))
            request = await tx.insert(HttpRequest(workspace_id=ws.id, name="Ping"))
            fetched = await tx.get(ModelKind.HTTP_REQUEST, request.id)
            fetched.headers.append({"name": "X", "value": "1", "enabled": True})
            assert (await tx.get(ModelKind.HTTP_REQUEST, request.id)).headers == []

    asyncio.run(scenario())


def test_watchers_see_committed_changes_only():
    async def scenario():
        store = MemoryEntityStore()
        stream = store.watch()
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.insert(Workspace(name="Rolled back"))
                raise RuntimeError("boom")
        async with store.transaction() as tx:
            ws = await tx.insert(Workspace(name="Kept"))

        event = await asyncio.wait_for(stream.get(), timeout=1)
        assert event.op is ChangeOp.CREATED
        assert event.entity_id == ws.id
        assert event.workspace_id == ws.id
        stream.close()
        assert await stream.get() is None

    asyncio.run(scenario())


def test_folder_tree_cycle_detection():
    folders = [
        Folder(id="fl_a", workspace_id="wk_1", parent_id=None),
        Folder(id="fl_b", workspace_id="wk_1", parent_id="fl_a"),
        Folder(id="fl_c", workspace_id="wk_1", parent_id="fl_b"),
    ]
    tree = FolderTree(folders)
    assert tree.would_create_cycle("fl_a", "fl_a")
    assert tree.would_create_cycle("fl_a", "fl_c")
    assert not tree.would_create_cycle("fl_c", "fl_a")
    assert not tree.would_create_cycle("fl_b", None)
    assert set(tree.descendants("fl_a")) == {"fl_b", "fl_c"}
