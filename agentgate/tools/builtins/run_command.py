from __future__ import annotations

import shlex
from typing import TYPE_CHECKING

from agentgate.tools.base import BaseTool

if TYPE_CHECKING:
    from agentgate.tools.context import ToolContext


class RunCommandTool(BaseTool):
    """Run a command through the session's sandbox strategy.

    The command is split with shlex and executed without a shell. Output and
    exit code land in the ToolResult's stdout/stderr/exit_code fields; a
    nonzero exit is still a successful invocation from the loop's view.
    """

    @property
    def name(self) -> str:
        return "run_command"

    @property
    def description(self) -> str:
        return (
            "Run a command (no shell) inside the sandbox, from a working "
            "directory within the workspace. Returns stdout, stderr and exit code."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "description": "Command line string, or an argv array.",
                    "anyOf": [
                        {"type": "string", "minLength": 1},
                        {"type": "array", "items": {"type": "string"}, "minItems": 1},
                    ],
                },
                "cwd": {
                    "type": "string",
                    "description": "Working directory relative to the workspace.",
                },
            },
            "required": ["command"],
            "additionalProperties": False,
        }

    async def execute(self, arguments: dict, context: ToolContext) -> dict:
        command = arguments["command"]
        try:
            argv = shlex.split(command) if isinstance(command, str) else list(command)
        except ValueError as e:
            return {"error_code": "INVALID_COMMAND", "message": f"Cannot parse command: {e}"}
        if not argv:
            return {"error_code": "INVALID_COMMAND", "message": "Empty command"}

        try:
            outcome = await context.run(argv, cwd=arguments.get("cwd"))
        except FileNotFoundError:
            return {"error_code": "COMMAND_NOT_FOUND", "message": f"Command not found: {argv[0]}"}
        return {"exit_code": outcome.exit_code}
