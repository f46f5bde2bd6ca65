"""Reqbench Plugin Bridge — API Facade

One facade per entity kind, bundled in a PluginContext. This is the surface
plugin authors and the tool server consume:

    context.http_request.list(workspace_id, folder_id=None)
    context.http_request.get_by_id(request_id)      # Handle or None
    context.http_request.create(workspace_id, name, url=..., method=...)
    context.http_request.update(request_id, name=...)
    context.http_request.delete(request_id)         # NotFoundError if absent
    context.http_request.send(request_id)           # HttpResponseHandle

Reads always go to the host. create/update check arguments locally and
raise ValidationError before any round trip. Nothing here caches state, and
there is no ambient "current" workspace or environment: every call names the
workspace it is about.
"""

from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional

from core.errors import NotFoundError, ValidationError
from core.handles import (
    UNSET, EnvironmentHandle, FolderHandle, GrpcRequestHandle,
    HttpRequestHandle, HttpResponseHandle, WorkspaceHandle,
)
from core.plugin_dispatcher import PluginDispatcher
from core.subscriptions import Subscription
from core.validation import (
    GRPC_URL_SCHEMES, validate_authentication, validate_method, validate_name, validate_pairs,
    validate_url,
)
from models.entities import ModelKind
from models.events import EventKind


def _require_id(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"'{label}' must be a non-empty string")
    return value


def _optional_id(value: Any, label: str) -> Optional[str]:
    if value is None:
        return None
    return _require_id(value, label)


def _put(payload: Dict[str, Any], key: str, value: Any) -> None:
    if value is not UNSET:
        payload[key] = value


class _Facade:
    HANDLE: type
    GET_KIND: EventKind
    DELETE_KIND: EventKind

    def __init__(self, dispatcher: PluginDispatcher):
        self._dispatcher = dispatcher

    def _wrap(self, payload: Dict[str, Any]):
        return self.HANDLE(self._dispatcher, payload)

    def _wrap_all(self, payload: Dict[str, Any]) -> List[Any]:
        return [self._wrap(item) for item in payload.get("items", [])]

    async def get_by_id(self, entity_id: str):
        """Fresh read; None when the id does not resolve."""
        _require_id(entity_id, "id")
        try:
            result = await self._dispatcher.call(self.GET_KIND, {"id": entity_id})
        except NotFoundError:
            return None
        return self._wrap(result)

    async def delete(self, entity_id: str) -> None:
        """Raises NotFoundError if the id is already gone."""
        _require_id(entity_id, "id")
        await self._dispatcher.call(self.DELETE_KIND, {"id": entity_id})


class WorkspaceApi(_Facade):
    HANDLE = WorkspaceHandle
    GET_KIND = EventKind.GET_WORKSPACE
    DELETE_KIND = EventKind.DELETE_WORKSPACE

    async def list(self) -> List[WorkspaceHandle]:
        return self._wrap_all(await self._dispatcher.call(EventKind.LIST_WORKSPACES))

    async def create(self, name: str, description: str = "") -> WorkspaceHandle:
        payload = {"name": validate_name(name), "description": description}
        return self._wrap(await self._dispatcher.call(EventKind.CREATE_WORKSPACE, payload))

    async def update(self, workspace_id: str, name=UNSET, description=UNSET) -> WorkspaceHandle:
        payload = {"id": _require_id(workspace_id, "id")}
        if name is not UNSET:
            payload["name"] = validate_name(name)
        _put(payload, "description", description)
        return self._wrap(await self._dispatcher.call(EventKind.UPDATE_WORKSPACE, payload))


class FolderApi(_Facade):
    HANDLE = FolderHandle
    GET_KIND = EventKind.GET_FOLDER
    DELETE_KIND = EventKind.DELETE_FOLDER

    async def list(self, workspace_id: str, parent_id=UNSET) -> List[FolderHandle]:
        """Folders of a workspace; pass ``parent_id`` (None for top level)
        to list one level only."""
        payload = {"workspaceId": _require_id(workspace_id, "workspaceId")}
        _put(payload, "parentId", parent_id)
        return self._wrap_all(await self._dispatcher.call(EventKind.LIST_FOLDERS, payload))

    async def create(
        self,
        workspace_id: str,
        name: str,
        parent_id: Optional[str] = None,
        sort_priority=UNSET,
    ) -> FolderHandle:
        payload = {
            "workspaceId": _require_id(workspace_id, "workspaceId"),
            "name": validate_name(name),
            "parentId": _optional_id(parent_id, "parentId"),
        }
        _put(payload, "sortPriority", sort_priority)
        return self._wrap(await self._dispatcher.call(EventKind.CREATE_FOLDER, payload))

    async def update(
        self, folder_id: str, name=UNSET, parent_id=UNSET, sort_priority=UNSET
    ) -> FolderHandle:
        payload = {"id": _require_id(folder_id, "id")}
        if name is not UNSET:
            payload["name"] = validate_name(name)
        if parent_id is not UNSET:
            payload["parentId"] = _optional_id(parent_id, "parentId")
        _put(payload, "sortPriority", sort_priority)
        return self._wrap(await self._dispatcher.call(EventKind.UPDATE_FOLDER, payload))

    async def move_to(self, folder_id: str, parent_id: Optional[str]) -> FolderHandle:
        return await self.update(folder_id, parent_id=parent_id)


class HttpRequestApi(_Facade):
    HANDLE = HttpRequestHandle
    GET_KIND = EventKind.GET_HTTP_REQUEST
    DELETE_KIND = EventKind.DELETE_HTTP_REQUEST

    @staticmethod
    def _fields(payload, url, method, headers, url_parameters, body, authentication,
                sort_priority) -> None:
        if url is not UNSET:
            payload["url"] = validate_url(url)
        if method is not UNSET:
            payload["method"] = validate_method(method)
        if headers is not UNSET:
            payload["headers"] = validate_pairs(headers, "headers")
        if url_parameters is not UNSET:
            payload["urlParameters"] = validate_pairs(url_parameters, "urlParameters")
        if body is not UNSET:
            if not isinstance(body, str):
                raise ValidationError("'body' must be a string")
            payload["body"] = body
        if authentication is not UNSET:
            payload["authentication"] = validate_authentication(authentication)
        _put(payload, "sortPriority", sort_priority)

    async def list(self, workspace_id: str, folder_id=UNSET) -> List[HttpRequestHandle]:
        payload = {"workspaceId": _require_id(workspace_id, "workspaceId")}
        _put(payload, "folderId", folder_id)
        return self._wrap_all(await self._dispatcher.call(EventKind.LIST_HTTP_REQUESTS, payload))

    async def create(
        self,
        workspace_id: str,
        name: str,
        folder_id: Optional[str] = None,
        url=UNSET,
        method=UNSET,
        headers=UNSET,
        url_parameters=UNSET,
        body=UNSET,
        authentication=UNSET,
        sort_priority=UNSET,
    ) -> HttpRequestHandle:
        payload = {
            "workspaceId": _require_id(workspace_id, "workspaceId"),
            "folderId": _optional_id(folder_id, "folderId"),
            "name": validate_name(name),
        }
        self._fields(payload, url, method, headers, url_parameters, body, authentication,
                     sort_priority)
        return self._wrap(await self._dispatcher.call(EventKind.CREATE_HTTP_REQUEST, payload))

    async def update(
        self,
        request_id: str,
        name=UNSET,
        folder_id=UNSET,
        url=UNSET,
        method=UNSET,
        headers=UNSET,
        url_parameters=UNSET,
        body=UNSET,
        authentication=UNSET,
        sort_priority=UNSET,
        if_updated_at: Optional[str] = None,
    ) -> HttpRequestHandle:
        payload = {"id": _require_id(request_id, "id")}
        if name is not UNSET:
            payload["name"] = validate_name(name)
        if folder_id is not UNSET:
            payload["folderId"] = _optional_id(folder_id, "folderId")
        self._fields(payload, url, method, headers, url_parameters, body, authentication,
                     sort_priority)
        if if_updated_at is not None:
            payload["ifUpdatedAt"] = if_updated_at
        return self._wrap(await self._dispatcher.call(EventKind.UPDATE_HTTP_REQUEST, payload))

    async def move_to(self, request_id: str, folder_id: Optional[str]) -> HttpRequestHandle:
        return await self.update(request_id, folder_id=folder_id)

    async def duplicate(self, request_id: str) -> HttpRequestHandle:
        payload = {"id": _require_id(request_id, "id")}
        return self._wrap(await self._dispatcher.call(EventKind.DUPLICATE_HTTP_REQUEST, payload))

    async def send(
        self,
        request_id: str,
        environment_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponseHandle:
        """Execute the request and return the recorded response. Network
        failures come back as a response whose ``error`` is set. ``timeout``
        overrides the channel's request timeout for this call."""
        payload: Dict[str, Any] = {"id": _require_id(request_id, "id")}
        if environment_id is not None:
            payload["environmentId"] = _require_id(environment_id, "environmentId")
        result = await self._dispatcher.call(EventKind.SEND_HTTP_REQUEST, payload, timeout=timeout)
        return HttpResponseHandle(self._dispatcher, result)


class HttpResponseApi(_Facade):
    HANDLE = HttpResponseHandle
    GET_KIND = EventKind.GET_HTTP_RESPONSE
    DELETE_KIND = EventKind.DELETE_HTTP_RESPONSE

    async def list(self, request_id: str, limit: Optional[int] = None) -> List[HttpResponseHandle]:
        """Response history, most recent first."""
        payload: Dict[str, Any] = {"requestId": _require_id(request_id, "requestId")}
        if limit is not None:
            if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
                raise ValidationError("'limit' must be a positive integer")
            payload["limit"] = limit
        return self._wrap_all(await self._dispatcher.call(EventKind.LIST_HTTP_RESPONSES, payload))

    async def latest(self, request_id: str) -> Optional[HttpResponseHandle]:
        payload = {"requestId": _require_id(request_id, "requestId")}
        try:
            result = await self._dispatcher.call(EventKind.GET_LATEST_HTTP_RESPONSE, payload)
        except NotFoundError:
            return None
        return self._wrap(result)


class EnvironmentApi(_Facade):
    HANDLE = EnvironmentHandle
    GET_KIND = EventKind.GET_ENVIRONMENT
    DELETE_KIND = EventKind.DELETE_ENVIRONMENT

    @staticmethod
    def _variables(variables) -> List[Dict[str, Any]]:
        if isinstance(variables, dict):
            variables = [{"name": k, "value": v, "enabled": True} for k, v in variables.items()]
        return validate_pairs(variables, "variables")

    async def list(self, workspace_id: str) -> List[EnvironmentHandle]:
        payload = {"workspaceId": _require_id(workspace_id, "workspaceId")}
        return self._wrap_all(await self._dispatcher.call(EventKind.LIST_ENVIRONMENTS, payload))

    async def get_active(self, workspace_id: str) -> Optional[EnvironmentHandle]:
        payload = {"workspaceId": _require_id(workspace_id, "workspaceId")}
        try:
            result = await self._dispatcher.call(EventKind.GET_ACTIVE_ENVIRONMENT, payload)
        except NotFoundError:
            return None
        return self._wrap(result)

    async def set_active(self, environment_id: str) -> EnvironmentHandle:
        payload = {"id": _require_id(environment_id, "id")}
        return self._wrap(await self._dispatcher.call(EventKind.SET_ACTIVE_ENVIRONMENT, payload))

    async def create(
        self, workspace_id: str, name: str, variables=UNSET, active: bool = False
    ) -> EnvironmentHandle:
        """``variables`` is a name->value mapping or a list of
        ``{name, value, enabled}`` pairs."""
        payload: Dict[str, Any] = {
            "workspaceId": _require_id(workspace_id, "workspaceId"),
            "name": validate_name(name),
            "active": bool(active),
        }
        if variables is not UNSET:
            payload["variables"] = self._variables(variables)
        return self._wrap(await self._dispatcher.call(EventKind.CREATE_ENVIRONMENT, payload))

    async def update(self, environment_id: str, name=UNSET, variables=UNSET) -> EnvironmentHandle:
        payload: Dict[str, Any] = {"id": _require_id(environment_id, "id")}
        if name is not UNSET:
            payload["name"] = validate_name(name)
        if variables is not UNSET:
            payload["variables"] = self._variables(variables)
        return self._wrap(await self._dispatcher.call(EventKind.UPDATE_ENVIRONMENT, payload))

    async def set_variable(
        self, environment_id: str, name: str, value: str, enabled: bool = True
    ) -> EnvironmentHandle:
        if not isinstance(value, str):
            raise ValidationError("'value' must be a string")
        payload = {
            "id": _require_id(environment_id, "id"),
            "name": validate_name(name),
            "value": value,
            "enabled": enabled,
        }
        return self._wrap(await self._dispatcher.call(EventKind.SET_ENVIRONMENT_VARIABLE, payload))

    async def remove_variable(self, environment_id: str, name: str) -> EnvironmentHandle:
        payload = {"id": _require_id(environment_id, "id"), "name": validate_name(name)}
        return self._wrap(
            await self._dispatcher.call(EventKind.REMOVE_ENVIRONMENT_VARIABLE, payload)
        )


class GrpcRequestApi(_Facade):
    HANDLE = GrpcRequestHandle
    GET_KIND = EventKind.GET_GRPC_REQUEST
    DELETE_KIND = EventKind.DELETE_GRPC_REQUEST

    @staticmethod
    def _fields(payload, url, service, method, message, metadata, authentication,
                sort_priority) -> None:
        if url is not UNSET:
            payload["url"] = validate_url(url, GRPC_URL_SCHEMES)
        for key, value in (("service", service), ("method", method), ("message", message)):
            if value is not UNSET:
                if not isinstance(value, str):
                    raise ValidationError(f"'{key}' must be a string")
                payload[key] = value
        if metadata is not UNSET:
            payload["metadata"] = validate_pairs(metadata, "metadata")
        if authentication is not UNSET:
            payload["authentication"] = validate_authentication(authentication)
        _put(payload, "sortPriority", sort_priority)

    async def list(self, workspace_id: str, folder_id=UNSET) -> List[GrpcRequestHandle]:
        payload = {"workspaceId": _require_id(workspace_id, "workspaceId")}
        _put(payload, "folderId", folder_id)
        return self._wrap_all(await self._dispatcher.call(EventKind.LIST_GRPC_REQUESTS, payload))

    async def create(
        self,
        workspace_id: str,
        name: str,
        folder_id: Optional[str] = None,
        url=UNSET,
        service=UNSET,
        method=UNSET,
        message=UNSET,
        metadata=UNSET,
        authentication=UNSET,
        sort_priority=UNSET,
    ) -> GrpcRequestHandle:
        payload = {
            "workspaceId": _require_id(workspace_id, "workspaceId"),
            "folderId": _optional_id(folder_id, "folderId"),
            "name": validate_name(name),
        }
        self._fields(payload, url, service, method, message, metadata, authentication,
                     sort_priority)
        return self._wrap(await self._dispatcher.call(EventKind.CREATE_GRPC_REQUEST, payload))

    async def update(
        self,
        request_id: str,
        name=UNSET,
        folder_id=UNSET,
        url=UNSET,
        service=UNSET,
        method=UNSET,
        message=UNSET,
        metadata=UNSET,
        authentication=UNSET,
        sort_priority=UNSET,
    ) -> GrpcRequestHandle:
        payload = {"id": _require_id(request_id, "id")}
        if name is not UNSET:
            payload["name"] = validate_name(name)
        if folder_id is not UNSET:
            payload["folderId"] = _optional_id(folder_id, "folderId")
        self._fields(payload, url, service, method, message, metadata, authentication,
                     sort_priority)
        return self._wrap(await self._dispatcher.call(EventKind.UPDATE_GRPC_REQUEST, payload))

    async def move_to(self, request_id: str, folder_id: Optional[str]) -> GrpcRequestHandle:
        return await self.update(request_id, folder_id=folder_id)

    async def duplicate(self, request_id: str) -> GrpcRequestHandle:
        payload = {"id": _require_id(request_id, "id")}
        return self._wrap(await self._dispatcher.call(EventKind.DUPLICATE_GRPC_REQUEST, payload))


class PluginContext:
    """Everything a plugin (or the tool server) talks to."""

    def __init__(self, dispatcher: PluginDispatcher):
        self.dispatcher = dispatcher
        self.workspace = WorkspaceApi(dispatcher)
        self.folder = FolderApi(dispatcher)
        self.http_request = HttpRequestApi(dispatcher)
        self.http_response = HttpResponseApi(dispatcher)
        self.environment = EnvironmentApi(dispatcher)
        self.grpc_request = GrpcRequestApi(dispatcher)

    def subscribe(
        self, workspace_id: str, models: Optional[Iterable[ModelKind]] = None
    ) -> Subscription:
        """Not started until awaited via ``start()`` or entered with
        ``async with``."""
        return Subscription(self.dispatcher, _require_id(workspace_id, "workspaceId"), models)
