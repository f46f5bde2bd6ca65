"""
Reqbench Module: Workspace Tools
Workspaces and their folder tree, for orientation before touching requests.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from core.handles import UNSET
from core.tool_registry import ToolModule
from models.models import SafetyLevel, Tool, ToolArguments

logger = logging.getLogger("reqbench.workspace_tools")


@dataclass
class CreateWorkspaceArgs(ToolArguments):
    name: str
    description: str = ""


@dataclass
class ListFoldersArgs(ToolArguments):
    workspace_id: str
    parent_id: Optional[str] = UNSET


@dataclass
class CreateFolderArgs(ToolArguments):
    workspace_id: str
    name: str
    parent_id: Optional[str] = None


class WorkspaceToolsModule(ToolModule):
    module_id = "workspace_tools"

    def register_tools(self):
        return [
            Tool(
                name="list_workspaces",
                description="List every workspace with its id, name and description.",
                parameters={},
                handler=self.list_workspaces,
                safety_level=SafetyLevel.SAFE,
                module_id=self.module_id,
            ),
            Tool(
                name="create_workspace",
                description="Create an empty workspace.",
                parameters={
                    "name": {"type": "string", "description": "Workspace name"},
                    "description": {"type": "string", "optional": True},
                },
                handler=self.create_workspace,
                safety_level=SafetyLevel.MODERATE,
                module_id=self.module_id,
                arguments=CreateWorkspaceArgs,
            ),
            Tool(
                name="list_folders",
                description="List the folders of a workspace. Pass parentId (null for the "
                            "top level) to list a single level of the tree.",
                parameters={
                    "workspaceId": {"type": "string"},
                    "parentId": {"type": "string", "optional": True, "nullable": True},
                },
                handler=self.list_folders,
                safety_level=SafetyLevel.SAFE,
                module_id=self.module_id,
                arguments=ListFoldersArgs,
            ),
            Tool(
                name="create_folder",
                description="Create a folder in a workspace, optionally inside another folder.",
                parameters={
                    "workspaceId": {"type": "string"},
                    "name": {"type": "string"},
                    "parentId": {"type": "string", "optional": True, "nullable": True},
                },
                handler=self.create_folder,
                safety_level=SafetyLevel.MODERATE,
                module_id=self.module_id,
                arguments=CreateFolderArgs,
            ),
        ]

    # --- Handlers ---

    async def list_workspaces(self):
        return await self.context.workspace.list()

    async def create_workspace(self, args: CreateWorkspaceArgs):
        workspace = await self.context.workspace.create(args.name, args.description)
        logger.info("Workspace created: %s", workspace.id)
        return workspace

    async def list_folders(self, args: ListFoldersArgs):
        return await self.context.folder.list(args.workspace_id, parent_id=args.parent_id)

    async def create_folder(self, args: CreateFolderArgs):
        return await self.context.folder.create(
            args.workspace_id, args.name, parent_id=args.parent_id
        )
