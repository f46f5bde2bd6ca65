"""
Reqbench Module: Request Tools
CRUD on HTTP requests, sending them, and reading back response history.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.errors import not_found
from core.handles import UNSET
from core.tool_registry import ToolModule
from models.models import SafetyLevel, Tool, ToolArguments

logger = logging.getLogger("reqbench.request_tools")

_PAIRS = {
    "type": "array",
    "description": "List of {name, value, enabled?} objects",
    "items": {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "value": {"type": "string"},
            "enabled": {"type": "boolean", "optional": True},
        },
    },
}

_METHOD = {
    "type": "string",
    "description": "HTTP method (GET, POST, PUT, PATCH, DELETE, HEAD, OPTIONS, QUERY)",
}

_SEND_TIMEOUT = 90.0      # channel round trip, HTTP call included
_SEND_TOOL_TIMEOUT = 120.0


def _pairs(**overrides) -> Dict[str, Any]:
    return dict(_PAIRS, **overrides)


@dataclass
class ListRequestsArgs(ToolArguments):
    workspace_id: str
    folder_id: Optional[str] = UNSET


@dataclass
class RequestIdArgs(ToolArguments):
    id: str


@dataclass
class CreateRequestArgs(ToolArguments):
    workspace_id: str
    name: str
    folder_id: Optional[str] = None
    url: str = UNSET
    method: str = UNSET
    headers: List[Dict[str, Any]] = UNSET
    body: str = UNSET


@dataclass
class UpdateRequestArgs(ToolArguments):
    id: str
    name: str = UNSET
    folder_id: Optional[str] = UNSET
    url: str = UNSET
    method: str = UNSET
    headers: List[Dict[str, Any]] = UNSET
    body: str = UNSET


@dataclass
class SendRequestArgs(ToolArguments):
    id: str
    environment_id: Optional[str] = None


@dataclass
class ResponseHistoryArgs(ToolArguments):
    request_id: str
    limit: Optional[int] = None


class RequestToolsModule(ToolModule):
    module_id = "request_tools"

    def register_tools(self):
        return [
            Tool(
                name="list_requests",
                description="List the HTTP requests of a workspace, ordered as in the sidebar. "
                            "Pass folderId (null for the top level) to list one folder only.",
                parameters={
                    "workspaceId": {"type": "string"},
                    "folderId": {"type": "string", "optional": True, "nullable": True},
                },
                handler=self.list_requests,
                safety_level=SafetyLevel.SAFE,
                module_id=self.module_id,
                arguments=ListRequestsArgs,
            ),
            Tool(
                name="get_request",
                description="Fetch one HTTP request by id.",
                parameters={"id": {"type": "string"}},
                handler=self.get_request,
                safety_level=SafetyLevel.SAFE,
                module_id=self.module_id,
                arguments=RequestIdArgs,
            ),
            Tool(
                name="create_request",
                description="Create an HTTP request. URL and headers may use {{variable}} "
                            "placeholders, filled from the environment at send time.",
                parameters={
                    "workspaceId": {"type": "string"},
                    "folderId": {"type": "string", "optional": True, "nullable": True},
                    "name": {"type": "string"},
                    "url": {"type": "string", "optional": True},
                    "method": dict(_METHOD, optional=True),
                    "headers": _pairs(optional=True),
                    "body": {"type": "string", "optional": True},
                },
                handler=self.create_request,
                safety_level=SafetyLevel.MODERATE,
                module_id=self.module_id,
                arguments=CreateRequestArgs,
            ),
            Tool(
                name="update_request",
                description="Change fields of an HTTP request. Only the fields given are "
                            "changed; headers replaces the whole header list.",
                parameters={
                    "id": {"type": "string"},
                    "name": {"type": "string", "optional": True},
                    "folderId": {"type": "string", "optional": True, "nullable": True},
                    "url": {"type": "string", "optional": True},
                    "method": dict(_METHOD, optional=True),
                    "headers": _pairs(optional=True),
                    "body": {"type": "string", "optional": True},
                },
                handler=self.update_request,
                safety_level=SafetyLevel.MODERATE,
                module_id=self.module_id,
                arguments=UpdateRequestArgs,
            ),
            Tool(
                name="delete_request",
                description="Delete an HTTP request and its response history.",
                parameters={"id": {"type": "string"}},
                handler=self.delete_request,
                safety_level=SafetyLevel.DESTRUCTIVE,
                module_id=self.module_id,
                arguments=RequestIdArgs,
            ),
            Tool(
                name="duplicate_request",
                description="Copy an HTTP request next to the original.",
                parameters={"id": {"type": "string"}},
                handler=self.duplicate_request,
                safety_level=SafetyLevel.MODERATE,
                module_id=self.module_id,
                arguments=RequestIdArgs,
            ),
            Tool(
                name="send_request",
                description="Send an HTTP request and record the response. Uses the "
                            "workspace's active environment unless environmentId is given. "
                            "Network failures are reported in the response's error field.",
                parameters={
                    "id": {"type": "string"},
                    "environmentId": {"type": "string", "optional": True},
                },
                handler=self.send_request,
                safety_level=SafetyLevel.MODERATE,
                module_id=self.module_id,
                arguments=SendRequestArgs,
                max_execution_seconds=_SEND_TOOL_TIMEOUT,
            ),
            Tool(
                name="get_response_history",
                description="Recorded responses of an HTTP request, most recent first.",
                parameters={
                    "requestId": {"type": "string"},
                    "limit": {"type": "integer", "optional": True,
                              "description": "Maximum number of responses (default 20)"},
                },
                handler=self.get_response_history,
                safety_level=SafetyLevel.SAFE,
                module_id=self.module_id,
                arguments=ResponseHistoryArgs,
            ),
        ]

    # --- Handlers ---

    async def list_requests(self, args: ListRequestsArgs):
        return await self.context.http_request.list(args.workspace_id, folder_id=args.folder_id)

    async def get_request(self, args: RequestIdArgs):
        request = await self.context.http_request.get_by_id(args.id)
        if request is None:
            raise not_found("HttpRequest", args.id)
        return request

    async def create_request(self, args: CreateRequestArgs):
        request = await self.context.http_request.create(
            args.workspace_id,
            args.name,
            folder_id=args.folder_id,
            url=args.url,
            method=args.method,
            headers=args.headers,
            body=args.body,
        )
        logger.info("Request created: %s in %s", request.id, args.workspace_id)
        return request

    async def update_request(self, args: UpdateRequestArgs):
        return await self.context.http_request.update(
            args.id,
            name=args.name,
            folder_id=args.folder_id,
            url=args.url,
            method=args.method,
            headers=args.headers,
            body=args.body,
        )

    async def delete_request(self, args: RequestIdArgs):
        await self.context.http_request.delete(args.id)
        logger.info("Request deleted: %s", args.id)
        return {"deleted": args.id}

    async def duplicate_request(self, args: RequestIdArgs):
        return await self.context.http_request.duplicate(args.id)

    async def send_request(self, args: SendRequestArgs):
        response = await self.context.http_request.send(
            args.id, environment_id=args.environment_id, timeout=_SEND_TIMEOUT
        )
        logger.info("Request %s sent: status=%s elapsed=%sms",
                    args.id, response.status, response.elapsed)
        return response

    async def get_response_history(self, args: ResponseHistoryArgs):
        return await self.context.http_response.list(args.request_id, limit=args.limit)
