"""Reqbench Plugin Bridge — Handle Layer

A Handle is a plugin-side, short-lived projection of one entity: a
point-in-time snapshot plus async methods that go through the dispatcher.

- snapshot fields are read-only properties
- accessors (``headers()``, ``variables()``...) compute from the snapshot
- each mutator issues exactly one mutating request; on success the snapshot
  is replaced by the server-confirmed entity, on failure it is untouched
  and the error propagates
- actions (``send()``, ``duplicate()``) return new handles and leave the
  receiver alone

A handle is never assumed current; call ``refresh()`` or fetch a new one.
"""

from __future__ import annotations
import copy
from typing import Any, ClassVar, Dict, List, Optional

from core.errors import NotFoundError
from core.plugin_dispatcher import PluginDispatcher
from core.validation import (
    GRPC_URL_SCHEMES, URL_SCHEMES, validate_authentication, validate_method, validate_name,
    validate_url,
)
from models.entities import ModelKind
from models.events import EventKind


class _Unset:
    def __repr__(self):
        return "UNSET"


UNSET: Any = _Unset()


class SnapshotField:
    """Read-only property backed by one camelCase key of the snapshot."""

    def __init__(self, wire_key: str):
        self.wire_key = wire_key

    def __set_name__(self, owner, name):
        self.attr_name = name

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        return copy.deepcopy(instance._snapshot.get(self.wire_key))

    def __set__(self, instance, value):
        raise AttributeError(
            f"{self.attr_name} is read-only; use the handle's mutator methods"
        )


def _find_pair(pairs: List[Dict[str, Any]], name: str, case_insensitive: bool = False):
    wanted = name.lower() if case_insensitive else name
    for index, pair in enumerate(pairs):
        key = pair["name"].lower() if case_insensitive else pair["name"]
        if key == wanted:
            return index
    return None


def _with_pair(pairs, name, value, enabled, case_insensitive=False):
    pairs = copy.deepcopy(pairs or [])
    index = _find_pair(pairs, name, case_insensitive)
    if index is None:
        pairs.append({"name": name, "value": value, "enabled": enabled})
    else:
        pairs[index] = {"name": pairs[index]["name"], "value": value, "enabled": enabled}
    return pairs


def _without_pair(pairs, name, label, case_insensitive=False):
    wanted = name.lower() if case_insensitive else name
    remaining = [
        copy.deepcopy(p) for p in pairs or []
        if (p["name"].lower() if case_insensitive else p["name"]) != wanted
    ]
    if len(remaining) == len(pairs or []):
        raise NotFoundError(f"{label} {name!r} not present")
    return remaining


class Handle:
    MODEL: ClassVar[ModelKind]
    GET_KIND: ClassVar[EventKind]
    UPDATE_KIND: ClassVar[Optional[EventKind]] = None
    DELETE_KIND: ClassVar[EventKind]

    id = SnapshotField("id")
    created_at = SnapshotField("createdAt")
    updated_at = SnapshotField("updatedAt")

    def __init__(self, dispatcher: PluginDispatcher, snapshot: Dict[str, Any]):
        model = snapshot.get("model")
        if model is not None and model != self.MODEL.value:
            raise ValueError(f"{type(self).__name__} cannot wrap a {model!r} entity")
        self._dispatcher = dispatcher
        self._snapshot = copy.deepcopy(snapshot)

    def __repr__(self):
        name = self._snapshot.get("name")
        if name is not None:
            return f"<{type(self).__name__} {self.id} {name!r}>"
        return f"<{type(self).__name__} {self.id}>"

    def __eq__(self, other):
        if not isinstance(other, Handle):
            return NotImplemented
        return type(self) is type(other) and self._snapshot == other._snapshot

    __hash__ = None

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the wire-form snapshot (camelCase keys)."""
        return copy.deepcopy(self._snapshot)

    def to_dict(self) -> Dict[str, Any]:
        data = self.snapshot()
        data.pop("model", None)
        return data

    async def refresh(self):
        self._snapshot = await self._dispatcher.call(self.GET_KIND, {"id": self.id})
        return self

    async def delete(self) -> None:
        await self._dispatcher.call(self.DELETE_KIND, {"id": self.id})

    async def _mutate(self, kind: EventKind, payload: Dict[str, Any]):
        result = await self._dispatcher.call(kind, payload)
        # Replaced only once the store has confirmed the change
        self._snapshot = result
        return self

    async def _update(self, guard: bool = False, **changes):
        if self.UPDATE_KIND is None:
            raise TypeError(f"{type(self).__name__} is immutable")
        payload = {"id": self.id, **changes}
        if guard:
            payload["ifUpdatedAt"] = self.updated_at
        return await self._mutate(self.UPDATE_KIND, payload)


class WorkspaceHandle(Handle):
    MODEL = ModelKind.WORKSPACE
    GET_KIND = EventKind.GET_WORKSPACE
    UPDATE_KIND = EventKind.UPDATE_WORKSPACE
    DELETE_KIND = EventKind.DELETE_WORKSPACE

    name = SnapshotField("name")
    description = SnapshotField("description")

    async def set_name(self, name: str) -> "WorkspaceHandle":
        return await self._update(name=validate_name(name))

    async def set_description(self, description: str) -> "WorkspaceHandle":
        return await self._update(description=description)

    async def folders(self, parent_id=UNSET) -> List["FolderHandle"]:
        payload = {"workspaceId": self.id}
        if parent_id is not UNSET:
            payload["parentId"] = parent_id
        result = await self._dispatcher.call(EventKind.LIST_FOLDERS, payload)
        return [FolderHandle(self._dispatcher, item) for item in result["items"]]

    async def http_requests(self, folder_id=UNSET) -> List["HttpRequestHandle"]:
        payload = {"workspaceId": self.id}
        if folder_id is not UNSET:
            payload["folderId"] = folder_id
        result = await self._dispatcher.call(EventKind.LIST_HTTP_REQUESTS, payload)
        return [HttpRequestHandle(self._dispatcher, item) for item in result["items"]]

    async def grpc_requests(self, folder_id=UNSET) -> List["GrpcRequestHandle"]:
        payload = {"workspaceId": self.id}
        if folder_id is not UNSET:
            payload["folderId"] = folder_id
        result = await self._dispatcher.call(EventKind.LIST_GRPC_REQUESTS, payload)
        return [GrpcRequestHandle(self._dispatcher, item) for item in result["items"]]

    async def environments(self) -> List["EnvironmentHandle"]:
        result = await self._dispatcher.call(
            EventKind.LIST_ENVIRONMENTS, {"workspaceId": self.id}
        )
        return [EnvironmentHandle(self._dispatcher, item) for item in result["items"]]

    async def active_environment(self) -> Optional["EnvironmentHandle"]:
        try:
            result = await self._dispatcher.call(
                EventKind.GET_ACTIVE_ENVIRONMENT, {"workspaceId": self.id}
            )
        except NotFoundError:
            return None
        return EnvironmentHandle(self._dispatcher, result)


class FolderHandle(Handle):
    MODEL = ModelKind.FOLDER
    GET_KIND = EventKind.GET_FOLDER
    UPDATE_KIND = EventKind.UPDATE_FOLDER
    DELETE_KIND = EventKind.DELETE_FOLDER

    workspace_id = SnapshotField("workspaceId")
    parent_id = SnapshotField("parentId")
    name = SnapshotField("name")
    sort_priority = SnapshotField("sortPriority")

    async def set_name(self, name: str) -> "FolderHandle":
        return await self._update(name=validate_name(name))

    async def move_to(self, parent_id: Optional[str]) -> "FolderHandle":
        """Re-parent; None moves the folder to the workspace root."""
        return await self._update(parentId=parent_id)

    async def folders(self) -> List["FolderHandle"]:
        result = await self._dispatcher.call(
            EventKind.LIST_FOLDERS, {"workspaceId": self.workspace_id, "parentId": self.id}
        )
        return [FolderHandle(self._dispatcher, item) for item in result["items"]]

    async def http_requests(self) -> List["HttpRequestHandle"]:
        result = await self._dispatcher.call(
            EventKind.LIST_HTTP_REQUESTS,
            {"workspaceId": self.workspace_id, "folderId": self.id},
        )
        return [HttpRequestHandle(self._dispatcher, item) for item in result["items"]]

    async def grpc_requests(self) -> List["GrpcRequestHandle"]:
        result = await self._dispatcher.call(
            EventKind.LIST_GRPC_REQUESTS,
            {"workspaceId": self.workspace_id, "folderId": self.id},
        )
        return [GrpcRequestHandle(self._dispatcher, item) for item in result["items"]]


class _RequestHandle(Handle):
    DUPLICATE_KIND: ClassVar[EventKind]
    URL_SCHEMES: ClassVar[frozenset] = URL_SCHEMES

    workspace_id = SnapshotField("workspaceId")
    folder_id = SnapshotField("folderId")
    name = SnapshotField("name")
    url = SnapshotField("url")
    authentication = SnapshotField("authentication")
    sort_priority = SnapshotField("sortPriority")

    async def set_name(self, name: str):
        return await self._update(name=validate_name(name))

    async def set_url(self, url: str):
        return await self._update(url=validate_url(url, self.URL_SCHEMES))

    async def set_authentication(self, authentication: Optional[Dict[str, Any]]):
        return await self._update(authentication=validate_authentication(authentication))

    async def move_to(self, folder_id: Optional[str]):
        """Move into a folder of the same workspace; None moves to the root."""
        return await self._update(folderId=folder_id)

    async def duplicate(self):
        result = await self._dispatcher.call(self.DUPLICATE_KIND, {"id": self.id})
        return type(self)(self._dispatcher, result)


class HttpRequestHandle(_RequestHandle):
    MODEL = ModelKind.HTTP_REQUEST
    GET_KIND = EventKind.GET_HTTP_REQUEST
    UPDATE_KIND = EventKind.UPDATE_HTTP_REQUEST
    DELETE_KIND = EventKind.DELETE_HTTP_REQUEST
    DUPLICATE_KIND = EventKind.DUPLICATE_HTTP_REQUEST

    method = SnapshotField("method")
    body = SnapshotField("body")

    def headers(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._snapshot.get("headers") or [])

    def header(self, name: str) -> Optional[str]:
        """Value of the first enabled header called ``name`` (any case)."""
        for pair in self._snapshot.get("headers") or []:
            if pair.get("enabled", True) and pair["name"].lower() == name.lower():
                return pair.get("value", "")
        return None

    def url_parameters(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._snapshot.get("urlParameters") or [])

    async def set_method(self, method: str) -> "HttpRequestHandle":
        return await self._update(method=validate_method(method))

    async def set_body(self, body: str) -> "HttpRequestHandle":
        return await self._update(body=body)

    # List mutators carry ifUpdatedAt: a stale snapshot gets ConflictError
    # instead of overwriting someone else's change

    async def set_header(self, name: str, value: str, enabled: bool = True) -> "HttpRequestHandle":
        validate_name(name, "header name")
        headers = _with_pair(self._snapshot.get("headers"), name, value, enabled,
                             case_insensitive=True)
        return await self._update(guard=True, headers=headers)

    async def remove_header(self, name: str) -> "HttpRequestHandle":
        headers = _without_pair(self._snapshot.get("headers"), name, "Header",
                                case_insensitive=True)
        return await self._update(guard=True, headers=headers)

    async def set_url_parameter(self, name: str, value: str, enabled: bool = True) -> "HttpRequestHandle":
        validate_name(name, "parameter name")
        params = _with_pair(self._snapshot.get("urlParameters"), name, value, enabled)
        return await self._update(guard=True, urlParameters=params)

    async def remove_url_parameter(self, name: str) -> "HttpRequestHandle":
        params = _without_pair(self._snapshot.get("urlParameters"), name, "URL parameter")
        return await self._update(guard=True, urlParameters=params)

    async def send(
        self, environment_id: Optional[str] = None, timeout: Optional[float] = None
    ) -> "HttpResponseHandle":
        payload = {"id": self.id}
        if environment_id is not None:
            payload["environmentId"] = environment_id
        result = await self._dispatcher.call(EventKind.SEND_HTTP_REQUEST, payload, timeout=timeout)
        return HttpResponseHandle(self._dispatcher, result)

    async def responses(self, limit: Optional[int] = None) -> List["HttpResponseHandle"]:
        payload: Dict[str, Any] = {"requestId": self.id}
        if limit is not None:
            payload["limit"] = limit
        result = await self._dispatcher.call(EventKind.LIST_HTTP_RESPONSES, payload)
        return [HttpResponseHandle(self._dispatcher, item) for item in result["items"]]

    async def latest_response(self) -> Optional["HttpResponseHandle"]:
        try:
            result = await self._dispatcher.call(
                EventKind.GET_LATEST_HTTP_RESPONSE, {"requestId": self.id}
            )
        except NotFoundError:
            return None
        return HttpResponseHandle(self._dispatcher, result)


class HttpResponseHandle(Handle):
    MODEL = ModelKind.HTTP_RESPONSE
    GET_KIND = EventKind.GET_HTTP_RESPONSE
    DELETE_KIND = EventKind.DELETE_HTTP_RESPONSE

    workspace_id = SnapshotField("workspaceId")
    request_id = SnapshotField("requestId")
    status = SnapshotField("status")
    status_text = SnapshotField("statusText")
    elapsed = SnapshotField("elapsed")
    body = SnapshotField("body")
    url = SnapshotField("url")
    error = SnapshotField("error")

    def headers(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._snapshot.get("headers") or [])

    def header(self, name: str) -> Optional[str]:
        for pair in self._snapshot.get("headers") or []:
            if pair["name"].lower() == name.lower():
                return pair.get("value", "")
        return None


class EnvironmentHandle(Handle):
    MODEL = ModelKind.ENVIRONMENT
    GET_KIND = EventKind.GET_ENVIRONMENT
    UPDATE_KIND = EventKind.UPDATE_ENVIRONMENT
    DELETE_KIND = EventKind.DELETE_ENVIRONMENT

    workspace_id = SnapshotField("workspaceId")
    name = SnapshotField("name")
    active = SnapshotField("active")

    def variables(self) -> Dict[str, str]:
        return {v["name"]: v.get("value", "") for v in self._snapshot.get("variables") or []}

    def variable(self, name: str) -> Optional[str]:
        return self.variables().get(name)

    async def set_name(self, name: str) -> "EnvironmentHandle":
        return await self._update(name=validate_name(name))

    async def set_variable(self, name: str, value: str, enabled: bool = True) -> "EnvironmentHandle":
        validate_name(name, "variable name")
        if not isinstance(value, str):
            raise TypeError("variable value must be a string")
        return await self._mutate(
            EventKind.SET_ENVIRONMENT_VARIABLE,
            {"id": self.id, "name": name, "value": value, "enabled": enabled},
        )

    async def remove_variable(self, name: str) -> "EnvironmentHandle":
        return await self._mutate(
            EventKind.REMOVE_ENVIRONMENT_VARIABLE, {"id": self.id, "name": name}
        )

    async def activate(self) -> "EnvironmentHandle":
        return await self._mutate(EventKind.SET_ACTIVE_ENVIRONMENT, {"id": self.id})


class GrpcRequestHandle(_RequestHandle):
    MODEL = ModelKind.GRPC_REQUEST
    URL_SCHEMES = GRPC_URL_SCHEMES
    GET_KIND = EventKind.GET_GRPC_REQUEST
    UPDATE_KIND = EventKind.UPDATE_GRPC_REQUEST
    DELETE_KIND = EventKind.DELETE_GRPC_REQUEST
    DUPLICATE_KIND = EventKind.DUPLICATE_GRPC_REQUEST

    service = SnapshotField("service")
    method = SnapshotField("method")
    message = SnapshotField("message")

    def metadata(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._snapshot.get("metadata") or [])

    async def set_service(self, service: str) -> "GrpcRequestHandle":
        return await self._update(service=service)

    async def set_method(self, method: str) -> "GrpcRequestHandle":
        return await self._update(method=method)

    async def set_message(self, message: str) -> "GrpcRequestHandle":
        return await self._update(message=message)

    async def set_metadata(self, name: str, value: str, enabled: bool = True) -> "GrpcRequestHandle":
        validate_name(name, "metadata name")
        metadata = _with_pair(self._snapshot.get("metadata"), name, value, enabled)
        return await self._update(guard=True, metadata=metadata)

    async def remove_metadata(self, name: str) -> "GrpcRequestHandle":
        metadata = _without_pair(self._snapshot.get("metadata"), name, "Metadata")
        return await self._update(guard=True, metadata=metadata)


HANDLE_TYPES = {
    cls.MODEL: cls
    for cls in (
        WorkspaceHandle, FolderHandle, HttpRequestHandle,
        HttpResponseHandle, EnvironmentHandle, GrpcRequestHandle,
    )
}
