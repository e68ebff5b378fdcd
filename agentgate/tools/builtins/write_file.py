from __future__ import annotations

from typing import TYPE_CHECKING

from agentgate.tools.base import BaseTool

if TYPE_CHECKING:
    from agentgate.tools.context import ToolContext


class WriteFileTool(BaseTool):
    """Create or overwrite a text file inside the sandbox filesystem scope."""

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return (
            "Write text content to a file in the workspace, creating parent "
            "directories as needed. Overwrites existing files."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path relative to the workspace.",
                },
                "content": {
                    "type": "string",
                    "description": "Full text content to write.",
                },
                "append": {
                    "type": "boolean",
                    "description": "Append instead of overwriting.",
                    "default": False,
                },
            },
            "required": ["path", "content"],
            "additionalProperties": False,
        }

    async def execute(self, arguments: dict, context: ToolContext) -> dict:
        return await context.file_op(
            "write",
            arguments["path"],
            content=arguments["content"],
            append=bool(arguments.get("append")),
        )
