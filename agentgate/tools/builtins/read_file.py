from __future__ import annotations

from typing import TYPE_CHECKING

from agentgate.tools.base import BaseTool, MutabilityClass

if TYPE_CHECKING:
    from agentgate.tools.context import ToolContext

DEFAULT_MAX_BYTES = 256_000


class ReadFileTool(BaseTool):
    """Read a text file inside the sandbox filesystem scope."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self._max_bytes = max_bytes

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read the contents of a text file within the workspace directory."

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
                    "description": (
                        "Path relative to the workspace, e.g. 'README.md' or 'src/main.py'."
                    ),
                },
            },
            "required": ["path"],
            "additionalProperties": False,
        }

    async def execute(self, arguments: dict, context: ToolContext) -> dict:
        # raises SandboxViolationError on ".." or symlink escape
        return await context.file_op("read", arguments["path"], max_bytes=self._max_bytes)
