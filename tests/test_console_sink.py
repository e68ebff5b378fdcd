"""Console sink: answer parsing, approval prompts over a scripted stdin."""

from __future__ import annotations

import asyncio
import io

import pytest

from agentgate.agent.presentation import ApprovalPrompt
from agentgate.channels.console import ConsoleSink, parse_approval
from agentgate.session.approvals import ApprovalScope
from agentgate.tools.result import FailureKind, ToolResult

_PROMPT = ApprovalPrompt(
    call_id="c1",
    tool_name="write_file",
    arguments={"path": "a.txt"},
    rendered_arguments='path="a.txt"',
    source="builtin",
)


@pytest.mark.parametrize(
    ("answer", "scope"),
    [
        ("y", ApprovalScope.once),
        (" YES ", ApprovalScope.once),
        ("a", ApprovalScope.session_always),
        ("n", ApprovalScope.deny_once),
        ("deny", ApprovalScope.session_deny),
        ("maybe", None),
        ("", None),
    ],
)
def test_parse_approval(answer, scope):
    assert parse_approval(answer) == scope


async def _sink(text: str) -> tuple[ConsoleSink, io.StringIO]:
    out = io.StringIO()
    sink = ConsoleSink(stdin=io.StringIO(text), stdout=out)
    sink.start()
    return sink, out


@pytest.mark.asyncio
async def test_prompt_reasks_until_valid():
    sink, out = await _sink("what\na\n")

    reply = await asyncio.wait_for(sink.prompt_approval(_PROMPT), 5)

    assert reply.scope == ApprovalScope.session_always
    assert "Approve write_file (builtin)?" in out.getvalue()
    assert "Please answer with one of" in out.getvalue()


@pytest.mark.asyncio
async def test_prompt_eof_denies():
    sink, _ = await _sink("")

    reply = await asyncio.wait_for(sink.prompt_approval(_PROMPT), 5)

    assert reply.scope == ApprovalScope.deny_once


@pytest.mark.asyncio
async def test_read_line_until_eof():
    sink, _ = await _sink("hello\n")

    assert await asyncio.wait_for(sink.read_line(), 5) == "hello"
    assert await asyncio.wait_for(sink.read_line(), 5) is None


@pytest.mark.asyncio
async def test_tool_lines_start_on_fresh_line():
    out = io.StringIO()
    sink = ConsoleSink(stdin=io.StringIO(""), stdout=out)

    await sink.render_text("Let me check")
    await sink.render_tool_start("c1", "read_file", {})
    await sink.render_tool_result(
        ToolResult.failure("c1", "read_file", FailureKind.CANCELLED, "cancelled")
    )
    await sink.retract_approval(_PROMPT)

    assert out.getvalue().splitlines() == [
        "Let me check",
        "-> read_file [c1]",
        "<- read_file failed: CANCELLED cancelled",
        "(approval request for write_file withdrawn)",
    ]
