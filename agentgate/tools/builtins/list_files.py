from __future__ import annotations

from typing import TYPE_CHECKING

from agentgate.tools.base import BaseTool, MutabilityClass

if TYPE_CHECKING:
    from agentgate.tools.context import ToolContext

MAX_ENTRIES = 500


class ListFilesTool(BaseTool):
    """List directory entries inside the sandbox filesystem scope."""

    @property
    def name(self) -> str:
        return "list_files"

    @property
    def description(self) -> str:
        return (
            "List files and directories under a workspace path. "
            "Set recursive=true to walk subdirectories."
        )

    @property
    def mutability(self) -> MutabilityClass:
        return MutabilityClass.read_only

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Directory relative to the workspace. Defaults to '.'.",
                },
                "recursive": {"type": "boolean", "default": False},
            },
            "required": [],
            "additionalProperties": False,
        }

    async def execute(self, arguments: dict, context: ToolContext) -> dict:
        return await context.file_op(
            "list",
            arguments.get("path") or ".",
            recursive=bool(arguments.get("recursive")),
            max_entries=MAX_ENTRIES,
        )
