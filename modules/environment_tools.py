"""
Reqbench Module: Environment Tools
Environments hold the {{variables}} that requests are rendered with.
"""

import logging
from dataclasses import dataclass

from core.tool_registry import ToolModule
from models.models import SafetyLevel, Tool, ToolArguments

logger = logging.getLogger("reqbench.environment_tools")


@dataclass
class WorkspaceArgs(ToolArguments):
    workspace_id: str


@dataclass
class SetVariableArgs(ToolArguments):
    environment_id: str
    name: str
    value: str


class EnvironmentToolsModule(ToolModule):
    module_id = "environment_tools"

    def register_tools(self):
        return [
            Tool(
                name="list_environments",
                description="List the environments of a workspace with their variables.",
                parameters={"workspaceId": {"type": "string"}},
                handler=self.list_environments,
                safety_level=SafetyLevel.SAFE,
                module_id=self.module_id,
                arguments=WorkspaceArgs,
                redact_result=True,  # variable values
            ),
            Tool(
                name="get_active_environment",
                description="The environment requests in this workspace are sent with, "
                            "or null when none is active.",
                parameters={"workspaceId": {"type": "string"}},
                handler=self.get_active_environment,
                safety_level=SafetyLevel.SAFE,
                module_id=self.module_id,
                arguments=WorkspaceArgs,
                redact_result=True,  # variable values
            ),
            Tool(
                name="set_environment_variable",
                description="Set a variable in an environment, adding it if absent.",
                parameters={
                    "environmentId": {"type": "string"},
                    "name": {"type": "string"},
                    "value": {"type": "string"},
                },
                handler=self.set_environment_variable,
                safety_level=SafetyLevel.MODERATE,
                module_id=self.module_id,
                arguments=SetVariableArgs,
                redact_params=["value"],  # often a secret
                redact_result=True,
            ),
        ]

    # --- Handlers ---

    async def list_environments(self, args: WorkspaceArgs):
        return await self.context.environment.list(args.workspace_id)

    async def get_active_environment(self, args: WorkspaceArgs):
        return await self.context.environment.get_active(args.workspace_id)

    async def set_environment_variable(self, args: SetVariableArgs):
        environment = await self.context.environment.set_variable(
            args.environment_id, args.name, args.value
        )
        logger.info("Variable %r set in environment %s", args.name, args.environment_id)
        return environment
