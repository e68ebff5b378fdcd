"""Shared pytest fixtures for agentgate tests.

Provides a scratch workspace, a direct (unsandboxed) executor scoped to it,
and scripted fakes for the model client and the presentation sink.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from agentgate.agent.model_client import ModelClient, StreamEvent
from agentgate.agent.presentation import ApprovalPrompt, ApprovalReply, PresentationSink
from agentgate.sandbox.executor import SandboxExecutor
from agentgate.sandbox.profile import SandboxProfile, StrategyKind
from agentgate.session.approvals import ApprovalScope
from agentgate.session.models import Session
from agentgate.tools.registry import ToolRegistry
from agentgate.tools.result import ToolResult


class FakeModelClient(ModelClient):
    """Model client replaying scripted stream sequences, one per call.

    Records the messages and tool schemas it was called with. Once the
    script is exhausted every call yields nothing (an empty final answer).
    """

    def __init__(self, *sequences: list[StreamEvent]) -> None:
        self._responses: list[list[StreamEvent]] = list(sequences)
        self._call_idx = 0
        self.calls: list[dict[str, Any]] = []

    def set_responses(self, *sequences: list[StreamEvent]) -> None:
        self._responses = list(sequences)
        self._call_idx = 0

    async def chat_stream_with_tools(
        self,
        messages: list[dict[str, Any]],
        model: str,
        *,
        tools: list[dict] | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        idx = self._call_idx
        self._call_idx += 1
        self.calls.append({"messages": list(messages), "model": model, "tools": tools})
        if idx < len(self._responses):
            for event in self._responses[idx]:
                if isinstance(event, Exception):
                    raise event
                yield event


class RecordingSink(PresentationSink):
    """PresentationSink that records everything and answers prompts from a script.

    replies are consumed in order; when exhausted, `default` is used. If
    `block_prompts` is set, prompts wait until cancelled.
    """

    def __init__(
        self,
        *replies: ApprovalScope | ApprovalReply,
        default: ApprovalScope = ApprovalScope.deny_once,
        block_prompts: bool = False,
    ) -> None:
        self._replies = [r if isinstance(r, ApprovalReply) else ApprovalReply(r) for r in replies]
        self._default = default
        self._block = block_prompts
        self.text: list[str] = []
        self.started: list[tuple[str, str, dict]] = []
        self.prompts: list[ApprovalPrompt] = []
        self.retracted: list[ApprovalPrompt] = []
        self.results: list[ToolResult] = []
        self.prompt_started = asyncio.Event()

    @property
    def rendered_text(self) -> str:
        return "".join(self.text)

    async def render_text(self, chunk: str) -> None:
        self.text.append(chunk)

    async def render_tool_start(self, call_id: str, tool_name: str, arguments: dict) -> None:
        self.started.append((call_id, tool_name, arguments))

    async def prompt_approval(self, prompt: ApprovalPrompt) -> ApprovalReply:
        self.prompts.append(prompt)
        self.prompt_started.set()
        if self._block:
            await asyncio.Event().wait()
        if self._replies:
            return self._replies.pop(0)
        return ApprovalReply(self._default)

    async def retract_approval(self, prompt: ApprovalPrompt) -> None:
        self.retracted.append(prompt)

    async def render_tool_result(self, result: ToolResult) -> None:
        self.results.append(result)


@pytest.fixture()
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir()
    (ws / "notes.txt").write_text("hello", encoding="utf-8")
    (ws / "src").mkdir()
    (ws / "src" / "main.py").write_text("print('hi')\n", encoding="utf-8")
    return ws


@pytest.fixture()
def profile(workspace) -> SandboxProfile:
    return SandboxProfile(strategy=StrategyKind.none, filesystem_scope=workspace)


@pytest.fixture()
def sandbox(profile) -> SandboxExecutor:
    return SandboxExecutor(profile)


@pytest.fixture()
def registry() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture()
def session(profile) -> Session:
    return Session(profile=profile)
