"""Reqbench Plugin Bridge — Entity Models

Plain dataclasses mirroring the persisted entity kinds. Python attributes
are snake_case; the wire form (``to_wire``/``from_wire``) is camelCase so
plugins written against the JSON contract never see Python naming.

Name/value lists (headers, URL parameters, gRPC metadata, environment
variables) travel as ``[{"name", "value", "enabled"}]`` objects.
"""

from __future__ import annotations
import copy
import re
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type


class ModelKind(Enum):
    WORKSPACE = "workspace"
    FOLDER = "folder"
    HTTP_REQUEST = "http_request"
    HTTP_RESPONSE = "http_response"
    ENVIRONMENT = "environment"
    GRPC_REQUEST = "grpc_request"

    @property
    def id_prefix(self) -> str:
        return {
            ModelKind.WORKSPACE: "wk",
            ModelKind.FOLDER: "fl",
            ModelKind.HTTP_REQUEST: "rq",
            ModelKind.HTTP_RESPONSE: "rs",
            ModelKind.ENVIRONMENT: "ev",
            ModelKind.GRPC_REQUEST: "gr",
        }[self]

    @property
    def label(self) -> str:
        return {
            ModelKind.WORKSPACE: "Workspace",
            ModelKind.FOLDER: "Folder",
            ModelKind.HTTP_REQUEST: "HttpRequest",
            ModelKind.HTTP_RESPONSE: "HttpResponse",
            ModelKind.ENVIRONMENT: "Environment",
            ModelKind.GRPC_REQUEST: "GrpcRequest",
        }[self]


_CAMEL_RE = re.compile(r"_([a-z])")
_SNAKE_RE = re.compile(r"([A-Z])")


def to_camel(name: str) -> str:
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name)


def to_snake(name: str) -> str:
    return _SNAKE_RE.sub(lambda m: "_" + m.group(1).lower(), name)


def normalize_pairs(pairs: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Copy a name/value list, filling in ``enabled`` where omitted."""
    result = []
    for pair in pairs or []:
        result.append({
            "name": pair["name"],
            "value": pair.get("value", ""),
            "enabled": pair.get("enabled", True),
        })
    return result


@dataclass
class Entity:
    id: str = ""
    created_at: str = ""
    updated_at: str = ""

    MODEL: ClassVar[ModelKind]
    IMMUTABLE_FIELDS: ClassVar[frozenset] = frozenset({"id", "created_at"})

    @property
    def owner_workspace_id(self) -> str:
        return getattr(self, "workspace_id", "")

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"model": self.MODEL.value}
        for f in fields(self):
            data[to_camel(f.name)] = copy.deepcopy(getattr(self, f.name))
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Entity":
        if not isinstance(data, dict):
            raise ValueError(f"{cls.MODEL.label} payload must be an object")
        model = data.get("model")
        if model is not None and model != cls.MODEL.value:
            raise ValueError(
                f"Expected model {cls.MODEL.value!r}, got {model!r}"
            )
        kwargs = {}
        for f in fields(cls):
            wire_name = to_camel(f.name)
            if wire_name in data:
                kwargs[f.name] = copy.deepcopy(data[wire_name])
        return cls(**kwargs)


@dataclass
class Workspace(Entity):
    name: str = ""
    description: str = ""

    MODEL: ClassVar[ModelKind] = ModelKind.WORKSPACE

    @property
    def owner_workspace_id(self) -> str:
        return self.id


@dataclass
class Folder(Entity):
    workspace_id: str = ""
    parent_id: Optional[str] = None
    name: str = ""
    sort_priority: float = 0.0

    MODEL: ClassVar[ModelKind] = ModelKind.FOLDER
    IMMUTABLE_FIELDS: ClassVar[frozenset] = frozenset({"id", "created_at", "workspace_id"})


@dataclass
class HttpRequest(Entity):
    workspace_id: str = ""
    folder_id: Optional[str] = None
    name: str = ""
    url: str = ""
    method: str = "GET"
    headers: List[Dict[str, Any]] = field(default_factory=list)
    url_parameters: List[Dict[str, Any]] = field(default_factory=list)
    body: str = ""
    authentication: Optional[Dict[str, Any]] = None
    sort_priority: float = 0.0

    MODEL: ClassVar[ModelKind] = ModelKind.HTTP_REQUEST
    IMMUTABLE_FIELDS: ClassVar[frozenset] = frozenset({"id", "created_at", "workspace_id"})


@dataclass
class HttpResponse(Entity):
    workspace_id: str = ""
    request_id: str = ""
    status: int = 0
    status_text: str = ""
    elapsed: int = 0
    headers: List[Dict[str, Any]] = field(default_factory=list)
    body: str = ""
    url: str = ""
    error: Optional[str] = None

    MODEL: ClassVar[ModelKind] = ModelKind.HTTP_RESPONSE
    IMMUTABLE_FIELDS: ClassVar[frozenset] = frozenset({
        "id", "created_at", "workspace_id", "request_id", "status",
        "status_text", "elapsed", "headers", "body", "url", "error",
    })


@dataclass
class Environment(Entity):
    workspace_id: str = ""
    name: str = ""
    variables: List[Dict[str, Any]] = field(default_factory=list)
    active: bool = False

    MODEL: ClassVar[ModelKind] = ModelKind.ENVIRONMENT
    IMMUTABLE_FIELDS: ClassVar[frozenset] = frozenset({"id", "created_at", "workspace_id"})


@dataclass
class GrpcRequest(Entity):
    workspace_id: str = ""
    folder_id: Optional[str] = None
    name: str = ""
    url: str = ""
    service: str = ""
    method: str = ""
    message: str = ""
    metadata: List[Dict[str, Any]] = field(default_factory=list)
    authentication: Optional[Dict[str, Any]] = None
    sort_priority: float = 0.0

    MODEL: ClassVar[ModelKind] = ModelKind.GRPC_REQUEST
    IMMUTABLE_FIELDS: ClassVar[frozenset] = frozenset({"id", "created_at", "workspace_id"})


MODEL_TYPES: Dict[ModelKind, Type[Entity]] = {
    ModelKind.WORKSPACE: Workspace,
    ModelKind.FOLDER: Folder,
    ModelKind.HTTP_REQUEST: HttpRequest,
    ModelKind.HTTP_RESPONSE: HttpResponse,
    ModelKind.ENVIRONMENT: Environment,
    ModelKind.GRPC_REQUEST: GrpcRequest,
}


class ChangeOp(Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass
class ChangeEvent:
    """One committed store mutation, as delivered to subscribers."""
    model: ModelKind
    op: ChangeOp
    entity_id: str
    workspace_id: str
    entity: Dict[str, Any]

    @classmethod
    def for_entity(cls, entity: Entity, op: ChangeOp) -> "ChangeEvent":
        return cls(
            model=entity.MODEL,
            op=op,
            entity_id=entity.id,
            workspace_id=entity.owner_workspace_id,
            entity=entity.to_wire(),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "model": self.model.value,
            "op": self.op.value,
            "id": self.entity_id,
            "workspaceId": self.workspace_id,
            "entity": copy.deepcopy(self.entity),
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "ChangeEvent":
        return cls(
            model=ModelKind(data["model"]),
            op=ChangeOp(data["op"]),
            entity_id=data["id"],
            workspace_id=data.get("workspaceId", ""),
            entity=data.get("entity") or {},
        )
