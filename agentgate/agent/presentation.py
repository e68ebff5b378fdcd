from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentgate.session.approvals import ApprovalScope

if TYPE_CHECKING:
    from agentgate.tools.result import ToolResult


@dataclass(frozen=True)
class ApprovalReply:
    """The operator's answer to an approval prompt.

    argument_pattern optionally narrows a session_always / session_deny
    decision to matching arguments (argument name -> fnmatch pattern).
    """

    scope: ApprovalScope
    argument_pattern: dict[str, str] | None = field(default=None)


@dataclass(frozen=True)
class ApprovalPrompt:
    call_id: str
    tool_name: str
    arguments: dict[str, Any]
    rendered_arguments: str
    source: str


class PresentationSink(ABC):
    """Where the agent loop sends user-visible output and approval prompts."""

    @abstractmethod
    async def render_text(self, chunk: str) -> None: ...

    @abstractmethod
    async def render_tool_start(self, call_id: str, tool_name: str, arguments: dict) -> None: ...

    @abstractmethod
    async def prompt_approval(self, prompt: ApprovalPrompt) -> ApprovalReply:
        """Block until the operator decides. May be cancelled."""
        ...

    @abstractmethod
    async def render_tool_result(self, result: ToolResult) -> None: ...

    async def retract_approval(self, prompt: ApprovalPrompt) -> None:
        """Withdraw a pending prompt after its invocation was cancelled."""
