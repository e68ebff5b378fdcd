from __future__ import annotations

from agentgate.tools.builtins.delete_file import DeleteFileTool
from agentgate.tools.builtins.list_files import ListFilesTool
from agentgate.tools.builtins.read_file import ReadFileTool
from agentgate.tools.builtins.run_command import RunCommandTool
from agentgate.tools.builtins.write_file import WriteFileTool
from agentgate.tools.registry import ToolRegistry


def register_builtins(registry: ToolRegistry, *, allow_commands: bool = True) -> None:
    """Register all built-in tools with the registry.

    run_command is skipped when allow_commands is False.
    """
    registry.register_tool(ListFilesTool())
    registry.register_tool(ReadFileTool())
    registry.register_tool(WriteFileTool())
    registry.register_tool(DeleteFileTool())

    if allow_commands:
        registry.register_tool(RunCommandTool())
