from __future__ import annotations

from typing import TYPE_CHECKING

from agentgate.tools.base import BaseTool

if TYPE_CHECKING:
    from agentgate.tools.context import ToolContext


class DeleteFileTool(BaseTool):
    """Delete a single file inside the sandbox filesystem scope.

    Directories are refused; there is no recursive delete.
    """

    @property
    def name(self) -> str:
        return "delete_file"

    @property
    def description(self) -> str:
        return "Delete a file in the workspace. Directories cannot be deleted."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path relative to the workspace.",
                },
            },
            "required": ["path"],
            "additionalProperties": False,
        }

    async def execute(self, arguments: dict, context: ToolContext) -> dict:
        return await context.file_op("delete", arguments["path"])
