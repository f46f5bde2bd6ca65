"""Reqbench Plugin Bridge — Tool Registry

Tool modules group related tools and receive the PluginContext they call
through. The registry enforces unique names and renders the MCP
``tools/list`` catalog from each tool's parameter schema.
"""

from __future__ import annotations
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from models.models import Tool

logger = logging.getLogger("reqbench.tool_registry")


class ToolRegistrationError(Exception):
    """Raised when a tool name is registered twice."""


class ToolModule(ABC):
    module_id: str = "unknown"

    def __init__(self, context):
        self.context = context

    @abstractmethod
    def register_tools(self) -> List[Tool]:
        pass


def _json_schema(param_def: Dict[str, Any]) -> Dict[str, Any]:
    """Parameter definition -> JSON Schema (``optional`` becomes absence
    from ``required``, ``nullable`` a union with null)."""
    schema = {k: v for k, v in param_def.items() if k not in ("optional", "nullable", "items")}
    if param_def.get("nullable"):
        schema["type"] = [param_def["type"], "null"]
    items = param_def.get("items")
    if isinstance(items, dict):
        if "properties" in items:
            schema["items"] = _object_schema(items["properties"])
        else:
            schema["items"] = _json_schema(items)
    return schema


def _object_schema(params: Dict[str, Any]) -> Dict[str, Any]:
    schema: Dict[str, Any] = {
        "type": "object",
        "properties": {name: _json_schema(pdef) for name, pdef in params.items()},
        "additionalProperties": False,
    }
    required = [name for name, pdef in params.items() if not pdef.get("optional", False)]
    if required:
        schema["required"] = required
    return schema


class ToolRegistry:
    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ToolRegistrationError(
                f"Tool '{tool.name}' already registered by module "
                f"'{self._tools[tool.name].module_id}'. "
                f"Module '{tool.module_id}' attempted duplicate registration."
            )
        self._tools[tool.name] = tool
        logger.info("Tool registered: name=%s module=%s safety=%s",
                    tool.name, tool.module_id, tool.safety_level.value)

    def register_module(self, module: ToolModule) -> List[Tool]:
        tools = module.register_tools()
        for tool in tools:
            self.register(tool)
        return tools

    def get(self, tool_name: str) -> Optional[Tool]:
        return self._tools.get(tool_name)

    def all_tools(self) -> List[Tool]:
        return list(self._tools.values())

    def list_tools(self) -> List[Dict[str, Any]]:
        result = []
        for tool in self._tools.values():
            try:
                json.dumps(tool.parameters)
                schema = _object_schema(tool.parameters)
            except (TypeError, ValueError):
                logger.warning("Tool '%s' has a non-serializable schema, replacing with empty",
                               tool.name)
                schema = {"type": "object", "properties": {}}
            result.append({
                "name": tool.name,
                "description": tool.description,
                "inputSchema": schema,
            })
        return result

    @property
    def tool_count(self) -> int:
        return len(self._tools)
