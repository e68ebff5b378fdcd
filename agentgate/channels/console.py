"""Console adapter: a line-oriented PresentationSink for the agentgate CLI.

stdin is read by a single daemon thread that feeds an asyncio.Queue, so both
the REPL and approval prompts await lines without blocking the event loop,
and a cancelled prompt never leaves a stray reader behind.
"""

from __future__ import annotations

import asyncio
import sys
import threading
from typing import IO, TYPE_CHECKING

import structlog

from agentgate.agent.presentation import ApprovalPrompt, ApprovalReply, PresentationSink
from agentgate.session.approvals import ApprovalScope

if TYPE_CHECKING:
    from agentgate.tools.result import ToolResult

logger = structlog.get_logger()

_APPROVAL_KEYS: dict[str, ApprovalScope] = {
    "y": ApprovalScope.once,
    "yes": ApprovalScope.once,
    "a": ApprovalScope.session_always,
    "always": ApprovalScope.session_always,
    "n": ApprovalScope.deny_once,
    "no": ApprovalScope.deny_once,
    "d": ApprovalScope.session_deny,
    "deny": ApprovalScope.session_deny,
}

APPROVAL_HINT = "[y] once  [a] always  [n] deny  [d] deny for session"


def parse_approval(answer: str) -> ApprovalScope | None:
    """Map an operator answer to a scope. Returns None if unrecognised."""
    return _APPROVAL_KEYS.get(answer.strip().lower())


class ConsoleSink(PresentationSink):
    def __init__(self, stdin: IO[str] | None = None, stdout: IO[str] | None = None) -> None:
        self._in = stdin or sys.stdin
        self._out = stdout or sys.stdout
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self._reader: threading.Thread | None = None
        self._at_line_start = True

    def start(self) -> None:
        """Start the stdin reader. Must be called from the running event loop."""
        if self._reader is not None:
            return
        loop = asyncio.get_running_loop()

        def _pump() -> None:
            while True:
                line = self._in.readline()
                if not line:
                    loop.call_soon_threadsafe(self._lines.put_nowait, None)
                    return
                loop.call_soon_threadsafe(self._lines.put_nowait, line.rstrip("\r\n"))

        self._reader = threading.Thread(target=_pump, name="agentgate-stdin", daemon=True)
        self._reader.start()

    def close_input(self) -> None:
        """Make the next read_line() return None, as on EOF."""
        self._lines.put_nowait(None)

    async def read_line(self, prompt: str = "") -> str | None:
        """Await the next stdin line. Returns None at EOF."""
        if prompt:
            self._write(prompt)
        line = await self._lines.get()
        self._at_line_start = True
        return line

    def _write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()
        if text:
            self._at_line_start = text.endswith("\n")

    def _newline(self) -> None:
        if not self._at_line_start:
            self._write("\n")

    async def render_text(self, chunk: str) -> None:
        self._write(chunk)

    async def render_tool_start(self, call_id: str, tool_name: str, arguments: dict) -> None:
        self._newline()
        self._write(f"-> {tool_name} [{call_id}]\n")

    async def prompt_approval(self, prompt: ApprovalPrompt) -> ApprovalReply:
        self._newline()
        self._write(
            f"Approve {prompt.tool_name} ({prompt.source})?\n"
            f"  args: {prompt.rendered_arguments}\n"
            f"  {APPROVAL_HINT}\n"
        )
        while True:
            answer = await self.read_line("> ")
            if answer is None:
                # EOF while waiting: nobody can approve
                return ApprovalReply(ApprovalScope.deny_once)
            scope = parse_approval(answer)
            if scope is not None:
                return ApprovalReply(scope)
            self._write(f"Please answer with one of: {APPROVAL_HINT}\n")

    async def retract_approval(self, prompt: ApprovalPrompt) -> None:
        self._newline()
        self._write(f"(approval request for {prompt.tool_name} withdrawn)\n")

    async def render_tool_result(self, result: ToolResult) -> None:
        self._newline()
        if result.ok:
            detail = f"exit {result.exit_code}, " if result.exit_code is not None else ""
            self._write(f"<- {result.tool_name} ok ({detail}{result.duration_ms} ms)\n")
        else:
            self._write(f"<- {result.tool_name} failed: {result.error_code} {result.message}\n")
