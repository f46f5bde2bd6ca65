"""Reqbench Plugin Bridge — Host-side Dispatcher

Answers request envelopes arriving on a plugin's EventChannel:

1. ``kind`` must be a known EventKind
2. payload is checked for depth/size and against the kind's schema
3. the kind's handler runs inside store transactions, enforcing the
   containment invariants (workspace scope, folder tree, unique variable
   names, single active environment)
4. BridgeErrors become error outcomes verbatim; anything else becomes
   ``InternalError: Internal store error`` with the detail kept in the log

Nothing reaches the store before steps 1 and 2 pass.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import fields
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type

from core.errors import (
    BridgeError, ConflictError, InternalError, NotFoundError, ValidationError, not_found,
)
from core.folder_tree import FolderTree
from core.http_sender import AiohttpRequestSender, RequestSender, build_outgoing
from core.store import ChangeStream, EntityStore, StoreTransaction
from core.templating import variables_to_dict
from core.validation import (
    GRPC_URL_SCHEMES, URL_SCHEMES, check_param_safety, validate_authentication,
    validate_method, validate_name, validate_params, validate_url,
)
from models.entities import (
    Entity, Environment, Folder, GrpcRequest, HttpRequest, HttpResponse,
    MODEL_TYPES, ModelKind, Workspace, normalize_pairs, to_snake,
)
from models.events import EventKind, PAYLOAD_SCHEMAS, RequestEnvelope, ResponseEnvelope

logger = logging.getLogger("reqbench.host_dispatcher")

PAIR_FIELDS = frozenset({"headers", "url_parameters", "metadata", "variables"})
DEFAULT_HISTORY_LIMIT = 20
CONTAINED_REQUESTS = (ModelKind.HTTP_REQUEST, ModelKind.GRPC_REQUEST)

Handler = Callable[[Dict[str, Any], Any], Awaitable[Dict[str, Any]]]


def _wire_list(entities: List[Entity]) -> Dict[str, Any]:
    return {"items": [e.to_wire() for e in entities]}


def _by_position(entity: Entity):
    return (getattr(entity, "sort_priority", 0.0), entity.created_at)


def _fields_from_payload(
    cls: Type[Entity], payload: Dict[str, Any], exclude: Set[str] = frozenset()
) -> Dict[str, Any]:
    """camelCase payload keys -> snake_case entity attributes."""
    names = {f.name for f in fields(cls)}
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        if key in exclude:
            continue
        attr = to_snake(key)
        if attr not in names:
            continue
        if attr in PAIR_FIELDS:
            value = normalize_pairs(value)
        result[attr] = value
    return result


def _check_values(model: ModelKind, values: Dict[str, Any]) -> None:
    if "name" in values:
        validate_name(values["name"])
    if "url" in values:
        validate_url(
            values["url"],
            GRPC_URL_SCHEMES if model is ModelKind.GRPC_REQUEST else URL_SCHEMES,
        )
    if model is ModelKind.HTTP_REQUEST and "method" in values:
        values["method"] = validate_method(values["method"])
    if "authentication" in values:
        validate_authentication(values["authentication"])
    if model is ModelKind.ENVIRONMENT and "variables" in values:
        seen: Set[str] = set()
        for var in values["variables"]:
            if var["name"] in seen:
                raise ConflictError(f"Duplicate environment variable {var['name']!r}")
            seen.add(var["name"])


class HostDispatcher:
    def __init__(self, store: EntityStore, sender: Optional[RequestSender] = None):
        self.store = store
        self.sender = sender or AiohttpRequestSender()
        # channel -> subscription id -> pump task
        self._subscriptions: Dict[Any, Dict[str, asyncio.Task]] = {}
        self._handlers: Dict[EventKind, Handler] = {
            EventKind.LIST_WORKSPACES: self._list_workspaces,
            EventKind.GET_WORKSPACE: self._getter(ModelKind.WORKSPACE),
            EventKind.CREATE_WORKSPACE: self._create_workspace,
            EventKind.UPDATE_WORKSPACE: self._updater(ModelKind.WORKSPACE),
            EventKind.DELETE_WORKSPACE: self._deleter(ModelKind.WORKSPACE),

            EventKind.LIST_FOLDERS: self._list_folders,
            EventKind.GET_FOLDER: self._getter(ModelKind.FOLDER),
            EventKind.CREATE_FOLDER: self._create_folder,
            EventKind.UPDATE_FOLDER: self._update_folder,
            EventKind.DELETE_FOLDER: self._deleter(ModelKind.FOLDER),

            EventKind.LIST_HTTP_REQUESTS: self._request_lister(ModelKind.HTTP_REQUEST),
            EventKind.GET_HTTP_REQUEST: self._getter(ModelKind.HTTP_REQUEST),
            EventKind.CREATE_HTTP_REQUEST: self._request_creator(ModelKind.HTTP_REQUEST),
            EventKind.UPDATE_HTTP_REQUEST: self._request_updater(ModelKind.HTTP_REQUEST),
            EventKind.DELETE_HTTP_REQUEST: self._deleter(ModelKind.HTTP_REQUEST),
            EventKind.DUPLICATE_HTTP_REQUEST: self._duplicator(ModelKind.HTTP_REQUEST),
            EventKind.SEND_HTTP_REQUEST: self._send_http_request,

            EventKind.LIST_HTTP_RESPONSES: self._list_http_responses,
            EventKind.GET_HTTP_RESPONSE: self._getter(ModelKind.HTTP_RESPONSE),
            EventKind.GET_LATEST_HTTP_RESPONSE: self._latest_http_response,
            EventKind.DELETE_HTTP_RESPONSE: self._deleter(ModelKind.HTTP_RESPONSE),

            EventKind.LIST_ENVIRONMENTS: self._list_environments,
            EventKind.GET_ENVIRONMENT: self._getter(ModelKind.ENVIRONMENT),
            EventKind.GET_ACTIVE_ENVIRONMENT: self._active_environment,
            EventKind.SET_ACTIVE_ENVIRONMENT: self._set_active_environment,
            EventKind.CREATE_ENVIRONMENT: self._create_environment,
            EventKind.UPDATE_ENVIRONMENT: self._updater(ModelKind.ENVIRONMENT),
            EventKind.SET_ENVIRONMENT_VARIABLE: self._set_environment_variable,
            EventKind.REMOVE_ENVIRONMENT_VARIABLE: self._remove_environment_variable,
            EventKind.DELETE_ENVIRONMENT: self._deleter(ModelKind.ENVIRONMENT),

            EventKind.LIST_GRPC_REQUESTS: self._request_lister(ModelKind.GRPC_REQUEST),
            EventKind.GET_GRPC_REQUEST: self._getter(ModelKind.GRPC_REQUEST),
            EventKind.CREATE_GRPC_REQUEST: self._request_creator(ModelKind.GRPC_REQUEST),
            EventKind.UPDATE_GRPC_REQUEST: self._request_updater(ModelKind.GRPC_REQUEST),
            EventKind.DELETE_GRPC_REQUEST: self._deleter(ModelKind.GRPC_REQUEST),
            EventKind.DUPLICATE_GRPC_REQUEST: self._duplicator(ModelKind.GRPC_REQUEST),

            EventKind.SUBSCRIBE: self._subscribe,
            EventKind.UNSUBSCRIBE: self._unsubscribe,
        }

    # --- Entry point ---

    async def handle(self, envelope: RequestEnvelope, channel=None) -> ResponseEnvelope:
        """Answer one request envelope. Never raises."""
        try:
            kind = EventKind(envelope.kind)
        except ValueError:
            return self._fail(envelope, ValidationError(
                f"Unknown event kind {envelope.kind[:64]!r}"
            ))

        error = check_param_safety(envelope.payload)
        if error is None:
            error = validate_params(PAYLOAD_SCHEMAS[kind], envelope.payload)
        if error:
            return self._fail(envelope, ValidationError(error))

        try:
            result = await self._handlers[kind](envelope.payload, channel)
        except BridgeError as e:
            return self._fail(envelope, e)
        except Exception:
            logger.error("[%s] %s failed", envelope.id, kind.value, exc_info=True)
            return self._fail(envelope, InternalError("Internal store error"))

        logger.debug("[%s] %s ok", envelope.id, kind.value)
        return ResponseEnvelope.success(envelope.id, result)

    @staticmethod
    def _fail(envelope: RequestEnvelope, error: BridgeError) -> ResponseEnvelope:
        logger.debug("[%s] %s -> %s", envelope.id, envelope.kind[:64], error)
        return ResponseEnvelope.failure(envelope.id, error.kind, error.message)

    async def close(self) -> None:
        """Stop every subscription pump."""
        tasks = [t for subs in self._subscriptions.values() for t in subs.values()]
        self._subscriptions.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # --- Scope helpers ---

    @staticmethod
    async def _load(tx: StoreTransaction, model: ModelKind, entity_id: str) -> Entity:
        entity = await tx.get(model, entity_id)
        if entity is None:
            raise not_found(model.label, entity_id)
        return entity

    async def _require_workspace(self, tx: StoreTransaction, workspace_id: str) -> Workspace:
        return await self._load(tx, ModelKind.WORKSPACE, workspace_id)

    @staticmethod
    async def _check_folder_scope(
        tx: StoreTransaction, workspace_id: str, folder_id: Optional[str]
    ) -> None:
        if folder_id is None:
            return
        folder = await tx.get(ModelKind.FOLDER, folder_id)
        if folder is None or folder.workspace_id != workspace_id:
            raise not_found("Folder", folder_id, scope=workspace_id)

    # --- Generic handler factories ---

    def _getter(self, model: ModelKind) -> Handler:
        async def handler(payload, channel):
            async with self.store.transaction() as tx:
                return (await self._load(tx, model, payload["id"])).to_wire()
        return handler

    def _updater(self, model: ModelKind) -> Handler:
        cls = MODEL_TYPES[model]

        async def handler(payload, channel):
            changes = _fields_from_payload(cls, payload, exclude={"id", "ifUpdatedAt"})
            _check_values(model, changes)
            async with self.store.transaction() as tx:
                updated = await tx.update(
                    model, payload["id"], changes, if_updated_at=payload.get("ifUpdatedAt")
                )
            return updated.to_wire()
        return handler

    def _deleter(self, model: ModelKind) -> Handler:
        async def handler(payload, channel):
            async with self.store.transaction() as tx:
                removed = await tx.delete(model, payload["id"])
            return removed[0].to_wire()
        return handler

    # --- Workspaces ---

    async def _list_workspaces(self, payload, channel):
        async with self.store.transaction() as tx:
            workspaces = await tx.list(ModelKind.WORKSPACE)
        return _wire_list(sorted(workspaces, key=lambda w: w.created_at))

    async def _create_workspace(self, payload, channel):
        values = _fields_from_payload(Workspace, payload)
        _check_values(ModelKind.WORKSPACE, values)
        async with self.store.transaction() as tx:
            created = await tx.insert(Workspace(**values))
        logger.info("Created workspace %s", created.id)
        return created.to_wire()

    # --- Folders ---

    async def _list_folders(self, payload, channel):
        filters: Dict[str, Any] = {"workspace_id": payload["workspaceId"]}
        if "parentId" in payload:
            filters["parent_id"] = payload["parentId"]
        async with self.store.transaction() as tx:
            await self._require_workspace(tx, payload["workspaceId"])
            folders = await tx.list(ModelKind.FOLDER, **filters)
        return _wire_list(sorted(folders, key=_by_position))

    async def _create_folder(self, payload, channel):
        values = _fields_from_payload(Folder, payload)
        _check_values(ModelKind.FOLDER, values)
        async with self.store.transaction() as tx:
            await self._require_workspace(tx, values["workspace_id"])
            await self._check_folder_scope(tx, values["workspace_id"], values.get("parent_id"))
            created = await tx.insert(Folder(**values))
        return created.to_wire()

    async def _update_folder(self, payload, channel):
        changes = _fields_from_payload(Folder, payload, exclude={"id", "ifUpdatedAt"})
        _check_values(ModelKind.FOLDER, changes)
        async with self.store.transaction() as tx:
            folder = await self._load(tx, ModelKind.FOLDER, payload["id"])
            if "parent_id" in changes:
                new_parent = changes["parent_id"]
                await self._check_folder_scope(tx, folder.workspace_id, new_parent)
                tree = FolderTree(
                    await tx.list(ModelKind.FOLDER, workspace_id=folder.workspace_id)
                )
                if tree.would_create_cycle(folder.id, new_parent):
                    raise ConflictError(
                        f"Moving folder {folder.id!r} under {new_parent!r} would create a cycle"
                    )
            updated = await tx.update(
                ModelKind.FOLDER, folder.id, changes, if_updated_at=payload.get("ifUpdatedAt")
            )
        return updated.to_wire()

    # --- HTTP and gRPC requests ---

    def _request_lister(self, model: ModelKind) -> Handler:
        async def handler(payload, channel):
            filters: Dict[str, Any] = {"workspace_id": payload["workspaceId"]}
            if "folderId" in payload:
                filters["folder_id"] = payload["folderId"]
            async with self.store.transaction() as tx:
                await self._require_workspace(tx, payload["workspaceId"])
                requests = await tx.list(model, **filters)
            return _wire_list(sorted(requests, key=_by_position))
        return handler

    def _request_creator(self, model: ModelKind) -> Handler:
        cls = MODEL_TYPES[model]

        async def handler(payload, channel):
            values = _fields_from_payload(cls, payload)
            _check_values(model, values)
            async with self.store.transaction() as tx:
                await self._require_workspace(tx, values["workspace_id"])
                await self._check_folder_scope(
                    tx, values["workspace_id"], values.get("folder_id")
                )
                created = await tx.insert(cls(**values))
            return created.to_wire()
        return handler

    def _request_updater(self, model: ModelKind) -> Handler:
        cls = MODEL_TYPES[model]

        async def handler(payload, channel):
            changes = _fields_from_payload(cls, payload, exclude={"id", "ifUpdatedAt"})
            _check_values(model, changes)
            async with self.store.transaction() as tx:
                request = await self._load(tx, model, payload["id"])
                if "folder_id" in changes:
                    await self._check_folder_scope(
                        tx, request.workspace_id, changes["folder_id"]
                    )
                updated = await tx.update(
                    model, request.id, changes, if_updated_at=payload.get("ifUpdatedAt")
                )
            return updated.to_wire()
        return handler

    def _duplicator(self, model: ModelKind) -> Handler:
        cls = MODEL_TYPES[model]

        async def handler(payload, channel):
            async with self.store.transaction() as tx:
                original = await self._load(tx, model, payload["id"])
                values = {
                    f.name: getattr(original, f.name)
                    for f in fields(cls)
                    if f.name not in ("id", "created_at", "updated_at")
                }
                values["name"] = f"{original.name} Copy"
                created = await tx.insert(cls(**values))
            return created.to_wire()
        return handler

    async def _send_http_request(self, payload, channel):
        request_id = payload["id"]
        async with self.store.transaction() as tx:
            request = await self._load(tx, ModelKind.HTTP_REQUEST, request_id)
            environment = None
            environment_id = payload.get("environmentId")
            if environment_id is not None:
                environment = await tx.get(ModelKind.ENVIRONMENT, environment_id)
                if environment is None or environment.workspace_id != request.workspace_id:
                    raise not_found("Environment", environment_id, scope=request.workspace_id)
            else:
                active = await tx.list(
                    ModelKind.ENVIRONMENT, workspace_id=request.workspace_id, active=True
                )
                environment = active[0] if active else None

        variables = variables_to_dict(environment.variables) if environment else {}
        outgoing = build_outgoing(request, variables)
        # The store lock is not held while the network call runs
        result = await self.sender.send(outgoing)

        async with self.store.transaction() as tx:
            if await tx.get(ModelKind.HTTP_REQUEST, request_id) is None:
                raise NotFoundError(
                    f"HttpRequest {request_id!r} was deleted while it was being sent"
                )
            response = await tx.insert(HttpResponse(
                workspace_id=request.workspace_id,
                request_id=request_id,
                status=result.status,
                status_text=result.status_text,
                elapsed=result.elapsed,
                headers=result.headers,
                body=result.body,
                url=result.url or outgoing.url,
                error=result.error,
            ))
        logger.info("Sent %s %s -> %s", outgoing.method, request_id,
                    result.status if result.error is None else result.error)
        return response.to_wire()

    # --- HTTP responses ---

    async def _history(self, tx: StoreTransaction, request_id: str) -> List[HttpResponse]:
        await self._load(tx, ModelKind.HTTP_REQUEST, request_id)
        responses = await tx.list(ModelKind.HTTP_RESPONSE, request_id=request_id)
        return sorted(responses, key=lambda r: r.created_at, reverse=True)

    async def _list_http_responses(self, payload, channel):
        limit = payload.get("limit", DEFAULT_HISTORY_LIMIT)
        if limit < 1:
            raise ValidationError("'limit' must be at least 1")
        async with self.store.transaction() as tx:
            history = await self._history(tx, payload["requestId"])
        return _wire_list(history[:limit])

    async def _latest_http_response(self, payload, channel):
        async with self.store.transaction() as tx:
            history = await self._history(tx, payload["requestId"])
        if not history:
            raise NotFoundError(f"HttpRequest {payload['requestId']!r} has no responses")
        return history[0].to_wire()

    # --- Environments ---

    async def _list_environments(self, payload, channel):
        async with self.store.transaction() as tx:
            await self._require_workspace(tx, payload["workspaceId"])
            environments = await tx.list(
                ModelKind.ENVIRONMENT, workspace_id=payload["workspaceId"]
            )
        return _wire_list(sorted(environments, key=lambda e: e.created_at))

    async def _active_environment(self, payload, channel):
        async with self.store.transaction() as tx:
            await self._require_workspace(tx, payload["workspaceId"])
            active = await tx.list(
                ModelKind.ENVIRONMENT, workspace_id=payload["workspaceId"], active=True
            )
        if not active:
            raise NotFoundError(
                f"Workspace {payload['workspaceId']!r} has no active environment"
            )
        return active[0].to_wire()

    @staticmethod
    async def _deactivate_others(tx: StoreTransaction, workspace_id: str, keep_id: str) -> None:
        for other in await tx.list(ModelKind.ENVIRONMENT, workspace_id=workspace_id, active=True):
            if other.id != keep_id:
                await tx.update(ModelKind.ENVIRONMENT, other.id, {"active": False})

    async def _set_active_environment(self, payload, channel):
        async with self.store.transaction() as tx:
            environment = await self._load(tx, ModelKind.ENVIRONMENT, payload["id"])
            await self._deactivate_others(tx, environment.workspace_id, environment.id)
            if environment.active:
                return environment.to_wire()
            updated = await tx.update(ModelKind.ENVIRONMENT, environment.id, {"active": True})
        return updated.to_wire()

    async def _create_environment(self, payload, channel):
        values = _fields_from_payload(Environment, payload)
        _check_values(ModelKind.ENVIRONMENT, values)
        async with self.store.transaction() as tx:
            await self._require_workspace(tx, values["workspace_id"])
            created = await tx.insert(Environment(**values))
            if created.active:
                await self._deactivate_others(tx, created.workspace_id, created.id)
        return created.to_wire()

    async def _set_environment_variable(self, payload, channel):
        name = validate_name(payload["name"])
        async with self.store.transaction() as tx:
            environment = await self._load(tx, ModelKind.ENVIRONMENT, payload["id"])
            variables = [dict(v) for v in environment.variables]
            for var in variables:
                if var["name"] == name:
                    var["value"] = payload["value"]
                    if "enabled" in payload:
                        var["enabled"] = payload["enabled"]
                    break
            else:
                variables.append({
                    "name": name,
                    "value": payload["value"],
                    "enabled": payload.get("enabled", True),
                })
            updated = await tx.update(
                ModelKind.ENVIRONMENT, environment.id, {"variables": variables}
            )
        return updated.to_wire()

    async def _remove_environment_variable(self, payload, channel):
        async with self.store.transaction() as tx:
            environment = await self._load(tx, ModelKind.ENVIRONMENT, payload["id"])
            remaining = [v for v in environment.variables if v["name"] != payload["name"]]
            if len(remaining) == len(environment.variables):
                raise NotFoundError(
                    f"Variable {payload['name']!r} not found in environment {environment.id!r}"
                )
            updated = await tx.update(
                ModelKind.ENVIRONMENT, environment.id, {"variables": remaining}
            )
        return updated.to_wire()

    # --- Subscriptions ---

    async def _subscribe(self, payload, channel):
        if channel is None:
            raise ValidationError("Subscriptions need a channel")
        subscription_id = payload["subscriptionId"]
        workspace_id = payload["workspaceId"]
        try:
            models = {ModelKind(m) for m in payload.get("models", [])}
        except ValueError:
            raise ValidationError(
                f"'models' entries must be one of: {', '.join(m.value for m in ModelKind)}"
            )

        if subscription_id in self._subscriptions.get(channel, {}):
            raise ConflictError(f"Subscription {subscription_id!r} already exists")

        async with self.store.transaction() as tx:
            await self._require_workspace(tx, workspace_id)
            # Registered under the lock: nothing committed after this
            # response can be missed
            stream = self.store.watch()

        # Checked again: a concurrent Subscribe may have taken the id meanwhile
        subs = self._subscriptions.get(channel)
        if subs is not None and subscription_id in subs:
            stream.close()
            raise ConflictError(f"Subscription {subscription_id!r} already exists")
        if subs is None:
            subs = self._subscriptions[channel] = {}
            channel.on_close(self._drop_channel)
        subs[subscription_id] = asyncio.create_task(
            self._pump(channel, subscription_id, stream, workspace_id, models),
            name=f"subscription-{subscription_id}",
        )
        logger.debug("Subscription %s opened for workspace %s", subscription_id, workspace_id)
        return {"subscriptionId": subscription_id}

    async def _unsubscribe(self, payload, channel):
        subscription_id = payload["subscriptionId"]
        task = self._subscriptions.get(channel, {}).pop(subscription_id, None)
        if task is None:
            raise NotFoundError(f"Subscription {subscription_id!r} not found")
        task.cancel()
        return {"subscriptionId": subscription_id}

    def _drop_channel(self, channel) -> None:
        for task in self._subscriptions.pop(channel, {}).values():
            task.cancel()

    @staticmethod
    async def _pump(
        channel,
        subscription_id: str,
        stream: ChangeStream,
        workspace_id: str,
        models: Set[ModelKind],
    ) -> None:
        try:
            async for change in stream:
                if change.workspace_id != workspace_id:
                    continue
                if models and change.model not in models:
                    continue
                try:
                    await channel.notify(subscription_id, change.to_wire())
                except (ConnectionError, ValueError) as e:
                    logger.debug("Subscription %s stopped: %s", subscription_id, e)
                    return
        finally:
            stream.close()
