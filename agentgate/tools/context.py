from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agentgate.sandbox.process import ProcessOutcome
    from agentgate.sandbox.profile import SandboxProfile
    from agentgate.sandbox.strategies import SandboxStrategy


@dataclass
class ToolContext:
    """Runtime context injected into builtin tool execution by SandboxExecutor.

    Tools MUST resolve paths, touch files and spawn processes through this
    context so the session's sandbox profile applies. One context per
    invocation.
    """

    profile: SandboxProfile
    strategy: SandboxStrategy
    session_id: str = "main"
    call_id: str = ""
    processes: list[ProcessOutcome] = field(default_factory=list)

    def resolve_path(self, raw_path: str | Path) -> Path:
        return self.profile.resolve_path(raw_path)

    async def run(self, argv: Sequence[str], *, cwd: str | None = None) -> ProcessOutcome:
        workdir = self.resolve_path(cwd) if cwd else None
        outcome = await self.strategy.run(argv, cwd=workdir)
        self.processes.append(outcome)
        return outcome

    async def file_op(self, op: str, raw_path: str, **fields: Any) -> dict[str, Any]:
        """Resolve raw_path, then run a file operation under the strategy.

        Returns the tool reply dict; failures carry error_code and message.
        """
        target = self.resolve_path(raw_path)
        request = {
            "op": op,
            "path": str(target),
            "raw_path": raw_path,
            "scope": str(self.profile.filesystem_scope),
            **fields,
        }
        return await self.strategy.file_op(request)
