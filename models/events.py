"""Reqbench Plugin Bridge — Event Envelopes and Payload Schemas

Wire contract between the plugin runtime and the host:

- request:      {"id": str, "kind": EventKind, "payload": object}
- response:     {"id": str, "ok": bool, "payload"?: object,
                 "error"?: {"kind": str, "message": str}}
- notification: {"subscription": str, "event": object}  (host -> plugin)

Payload schemas use the same shape as tool parameter schemas: one entry per
key with a JSON type, ``optional`` and ``nullable`` flags, and ``items`` for
arrays (either an element type or an object with ``properties``).
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

MAX_ID_LENGTH = 128


class EventKind(Enum):
    LIST_WORKSPACES = "ListWorkspaces"
    GET_WORKSPACE = "GetWorkspace"
    CREATE_WORKSPACE = "CreateWorkspace"
    UPDATE_WORKSPACE = "UpdateWorkspace"
    DELETE_WORKSPACE = "DeleteWorkspace"

    LIST_FOLDERS = "ListFolders"
    GET_FOLDER = "GetFolder"
    CREATE_FOLDER = "CreateFolder"
    UPDATE_FOLDER = "UpdateFolder"
    DELETE_FOLDER = "DeleteFolder"

    LIST_HTTP_REQUESTS = "ListHttpRequests"
    GET_HTTP_REQUEST = "GetHttpRequest"
    CREATE_HTTP_REQUEST = "CreateHttpRequest"
    UPDATE_HTTP_REQUEST = "UpdateHttpRequest"
    DELETE_HTTP_REQUEST = "DeleteHttpRequest"
    DUPLICATE_HTTP_REQUEST = "DuplicateHttpRequest"
    SEND_HTTP_REQUEST = "SendHttpRequest"

    LIST_HTTP_RESPONSES = "ListHttpResponses"
    GET_HTTP_RESPONSE = "GetHttpResponse"
    GET_LATEST_HTTP_RESPONSE = "GetLatestHttpResponse"
    DELETE_HTTP_RESPONSE = "DeleteHttpResponse"

    LIST_ENVIRONMENTS = "ListEnvironments"
    GET_ENVIRONMENT = "GetEnvironment"
    GET_ACTIVE_ENVIRONMENT = "GetActiveEnvironment"
    SET_ACTIVE_ENVIRONMENT = "SetActiveEnvironment"
    CREATE_ENVIRONMENT = "CreateEnvironment"
    UPDATE_ENVIRONMENT = "UpdateEnvironment"
    SET_ENVIRONMENT_VARIABLE = "SetEnvironmentVariable"
    REMOVE_ENVIRONMENT_VARIABLE = "RemoveEnvironmentVariable"
    DELETE_ENVIRONMENT = "DeleteEnvironment"

    LIST_GRPC_REQUESTS = "ListGrpcRequests"
    GET_GRPC_REQUEST = "GetGrpcRequest"
    CREATE_GRPC_REQUEST = "CreateGrpcRequest"
    UPDATE_GRPC_REQUEST = "UpdateGrpcRequest"
    DELETE_GRPC_REQUEST = "DeleteGrpcRequest"
    DUPLICATE_GRPC_REQUEST = "DuplicateGrpcRequest"

    SUBSCRIBE = "Subscribe"
    UNSUBSCRIBE = "Unsubscribe"


class ErrorKind(Enum):
    VALIDATION = "ValidationError"
    NOT_FOUND = "NotFoundError"
    CONFLICT = "ConflictError"
    TRANSPORT = "TransportError"
    INTERNAL = "InternalError"


# --- Payload schemas ---

_ID = {"type": "string"}
_OPT_STR = {"type": "string", "optional": True}
_OPT_NULL_ID = {"type": "string", "optional": True, "nullable": True}
_OPT_NUMBER = {"type": "number", "optional": True}
_PAIRS = {
    "type": "array",
    "optional": True,
    "items": {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "value": {"type": "string", "optional": True},
            "enabled": {"type": "boolean", "optional": True},
        },
    },
}
_AUTH = {"type": "object", "optional": True, "nullable": True}

_BY_ID = {"id": _ID}

_HTTP_REQUEST_FIELDS = {
    "name": _OPT_STR,
    "url": _OPT_STR,
    "method": _OPT_STR,
    "headers": _PAIRS,
    "urlParameters": _PAIRS,
    "body": _OPT_STR,
    "authentication": _AUTH,
    "sortPriority": _OPT_NUMBER,
}

_GRPC_REQUEST_FIELDS = {
    "name": _OPT_STR,
    "url": _OPT_STR,
    "service": _OPT_STR,
    "method": _OPT_STR,
    "message": _OPT_STR,
    "metadata": _PAIRS,
    "authentication": _AUTH,
    "sortPriority": _OPT_NUMBER,
}

PAYLOAD_SCHEMAS: Dict[EventKind, Dict[str, Any]] = {
    EventKind.LIST_WORKSPACES: {},
    EventKind.GET_WORKSPACE: _BY_ID,
    EventKind.CREATE_WORKSPACE: {"name": {"type": "string"}, "description": _OPT_STR},
    EventKind.UPDATE_WORKSPACE: {
        "id": _ID, "name": _OPT_STR, "description": _OPT_STR, "ifUpdatedAt": _OPT_STR,
    },
    EventKind.DELETE_WORKSPACE: _BY_ID,

    EventKind.LIST_FOLDERS: {"workspaceId": _ID, "parentId": _OPT_NULL_ID},
    EventKind.GET_FOLDER: _BY_ID,
    EventKind.CREATE_FOLDER: {
        "workspaceId": _ID, "name": {"type": "string"},
        "parentId": _OPT_NULL_ID, "sortPriority": _OPT_NUMBER,
    },
    EventKind.UPDATE_FOLDER: {
        "id": _ID, "name": _OPT_STR, "parentId": _OPT_NULL_ID,
        "sortPriority": _OPT_NUMBER, "ifUpdatedAt": _OPT_STR,
    },
    EventKind.DELETE_FOLDER: _BY_ID,

    EventKind.LIST_HTTP_REQUESTS: {"workspaceId": _ID, "folderId": _OPT_NULL_ID},
    EventKind.GET_HTTP_REQUEST: _BY_ID,
    EventKind.CREATE_HTTP_REQUEST: dict(
        _HTTP_REQUEST_FIELDS, workspaceId=_ID, folderId=_OPT_NULL_ID,
        name={"type": "string"},
    ),
    EventKind.UPDATE_HTTP_REQUEST: dict(
        _HTTP_REQUEST_FIELDS, id=_ID, folderId=_OPT_NULL_ID, ifUpdatedAt=_OPT_STR,
    ),
    EventKind.DELETE_HTTP_REQUEST: _BY_ID,
    EventKind.DUPLICATE_HTTP_REQUEST: _BY_ID,
    EventKind.SEND_HTTP_REQUEST: {"id": _ID, "environmentId": _OPT_NULL_ID},

    EventKind.LIST_HTTP_RESPONSES: {
        "requestId": _ID, "limit": {"type": "integer", "optional": True},
    },
    EventKind.GET_HTTP_RESPONSE: _BY_ID,
    EventKind.GET_LATEST_HTTP_RESPONSE: {"requestId": _ID},
    EventKind.DELETE_HTTP_RESPONSE: _BY_ID,

    EventKind.LIST_ENVIRONMENTS: {"workspaceId": _ID},
    EventKind.GET_ENVIRONMENT: _BY_ID,
    EventKind.GET_ACTIVE_ENVIRONMENT: {"workspaceId": _ID},
    EventKind.SET_ACTIVE_ENVIRONMENT: _BY_ID,
    EventKind.CREATE_ENVIRONMENT: {
        "workspaceId": _ID, "name": {"type": "string"},
        "variables": _PAIRS, "active": {"type": "boolean", "optional": True},
    },
    EventKind.UPDATE_ENVIRONMENT: {
        "id": _ID, "name": _OPT_STR, "variables": _PAIRS, "ifUpdatedAt": _OPT_STR,
    },
    EventKind.SET_ENVIRONMENT_VARIABLE: {
        "id": _ID, "name": {"type": "string"}, "value": {"type": "string"},
        "enabled": {"type": "boolean", "optional": True},
    },
    EventKind.REMOVE_ENVIRONMENT_VARIABLE: {"id": _ID, "name": {"type": "string"}},
    EventKind.DELETE_ENVIRONMENT: _BY_ID,

    EventKind.LIST_GRPC_REQUESTS: {"workspaceId": _ID, "folderId": _OPT_NULL_ID},
    EventKind.GET_GRPC_REQUEST: _BY_ID,
    EventKind.CREATE_GRPC_REQUEST: dict(
        _GRPC_REQUEST_FIELDS, workspaceId=_ID, folderId=_OPT_NULL_ID,
        name={"type": "string"},
    ),
    EventKind.UPDATE_GRPC_REQUEST: dict(
        _GRPC_REQUEST_FIELDS, id=_ID, folderId=_OPT_NULL_ID, ifUpdatedAt=_OPT_STR,
    ),
    EventKind.DELETE_GRPC_REQUEST: _BY_ID,
    EventKind.DUPLICATE_GRPC_REQUEST: _BY_ID,

    EventKind.SUBSCRIBE: {
        "subscriptionId": _ID,
        "workspaceId": _ID,
        "models": {"type": "array", "optional": True, "items": {"type": "string"}},
    },
    EventKind.UNSUBSCRIBE: {"subscriptionId": _ID},
}


def _check_id(value: Any) -> str:
    if not isinstance(value, str) or not value or len(value) > MAX_ID_LENGTH:
        raise ValueError("Envelope id must be a non-empty string of at most "
                         f"{MAX_ID_LENGTH} characters")
    return value


@dataclass
class RequestEnvelope:
    id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, kind: EventKind, payload: Optional[Dict[str, Any]] = None) -> "RequestEnvelope":
        return cls(id=uuid.uuid4().hex, kind=kind.value, payload=payload or {})

    def to_wire(self) -> Dict[str, Any]:
        return {"id": self.id, "kind": self.kind, "payload": self.payload}

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "RequestEnvelope":
        request_id = _check_id(data.get("id"))
        kind = data.get("kind")
        if not isinstance(kind, str) or not kind:
            raise ValueError("Envelope kind must be a non-empty string")
        payload = data.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValueError("Envelope payload must be an object")
        return cls(id=request_id, kind=kind, payload=payload)


@dataclass
class ResponseEnvelope:
    id: str
    ok: bool
    payload: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, str]] = None

    @classmethod
    def success(cls, request_id: str, payload: Optional[Dict[str, Any]] = None) -> "ResponseEnvelope":
        return cls(id=request_id, ok=True, payload=payload if payload is not None else {})

    @classmethod
    def failure(cls, request_id: str, kind: ErrorKind, message: str) -> "ResponseEnvelope":
        return cls(id=request_id, ok=False, error={"kind": kind.value, "message": message})

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "ok": self.ok}
        if self.ok:
            data["payload"] = self.payload if self.payload is not None else {}
        else:
            data["error"] = self.error
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "ResponseEnvelope":
        request_id = _check_id(data.get("id"))
        ok = data.get("ok")
        if not isinstance(ok, bool):
            raise ValueError("Response 'ok' must be a boolean")
        if ok:
            payload = data.get("payload")
            if payload is None:
                payload = {}
            if not isinstance(payload, dict):
                raise ValueError("Response payload must be an object")
            return cls(id=request_id, ok=True, payload=payload)
        error = data.get("error")
        if (not isinstance(error, dict)
                or not isinstance(error.get("kind"), str)
                or not isinstance(error.get("message"), str)):
            raise ValueError("Error response must carry {kind, message} strings")
        return cls(id=request_id, ok=False,
                   error={"kind": error["kind"], "message": error["message"]})


@dataclass
class Notification:
    subscription: str
    event: Dict[str, Any]

    def to_wire(self) -> Dict[str, Any]:
        return {"subscription": self.subscription, "event": self.event}

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Notification":
        subscription = _check_id(data.get("subscription"))
        event = data.get("event")
        if not isinstance(event, dict):
            raise ValueError("Notification event must be an object")
        return cls(subscription=subscription, event=event)
