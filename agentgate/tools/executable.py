"""Polymorphic tool dispatch.

A registered tool is a descriptor plus one of two executables, selected by
descriptor.source: LocalExecutable (builtin logic run by the SandboxExecutor)
or RemoteExecutable (forwarded to an external provider connection).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from agentgate.infra.errors import AgentGateError, ProviderUnavailableError
from agentgate.tools.result import ToolResult

if TYPE_CHECKING:
    from agentgate.providers.manager import ProviderManager
    from agentgate.sandbox.executor import SandboxExecutor
    from agentgate.tools.base import BaseTool, ToolDescriptor

logger = structlog.get_logger()


@dataclass(frozen=True)
class LocalExecutable:
    tool: BaseTool


@dataclass(frozen=True)
class RemoteExecutable:
    server_id: str
    remote_name: str


Executable = LocalExecutable | RemoteExecutable


@dataclass(frozen=True)
class RegisteredTool:
    descriptor: ToolDescriptor
    executable: Executable

    @property
    def name(self) -> str:
        return self.descriptor.name


class ToolDispatcher:
    """Routes an approved invocation to the sandbox or the provider manager."""

    def __init__(
        self,
        sandbox: SandboxExecutor,
        providers: ProviderManager | None = None,
    ) -> None:
        self._sandbox = sandbox
        self._providers = providers

    async def dispatch(
        self,
        entry: RegisteredTool,
        arguments: dict,
        *,
        call_id: str,
        session_id: str = "main",
    ) -> ToolResult:
        match entry.executable:
            case LocalExecutable(tool=tool):
                return await self._sandbox.execute(
                    tool, arguments, call_id=call_id, session_id=session_id
                )
            case RemoteExecutable(server_id=server_id, remote_name=remote_name):
                return await self._dispatch_remote(
                    entry.name, server_id, remote_name, arguments, call_id=call_id
                )

    async def _dispatch_remote(
        self,
        tool_name: str,
        server_id: str,
        remote_name: str,
        arguments: dict,
        *,
        call_id: str,
    ) -> ToolResult:
        if self._providers is None:
            exc = ProviderUnavailableError(server_id, "No provider manager configured")
            return ToolResult.from_error(call_id, tool_name, exc)
        try:
            outcome = await self._providers.call_tool(server_id, remote_name, arguments)
        except AgentGateError as e:
            logger.warning(
                "remote_tool_failed",
                tool_name=tool_name,
                server_id=server_id,
                call_id=call_id,
                code=e.code,
            )
            return ToolResult.from_error(call_id, tool_name, e)
        logger.info(
            "tool_executed",
            tool_name=tool_name,
            server_id=server_id,
            call_id=call_id,
            duration_ms=outcome.duration_ms,
        )
        return outcome.to_tool_result(call_id, tool_name)
