"""Confirmation gate: auto-approval, caching, serialized prompts, retraction."""

from __future__ import annotations

import asyncio

import pytest
from conftest import RecordingSink

from agentgate.agent.confirmation import ConfirmationGate
from agentgate.agent.presentation import ApprovalReply
from agentgate.session.approvals import ApprovalScope
from agentgate.session.models import ToolCallRequest
from agentgate.tools.base import MutabilityClass, ToolDescriptor


def _descriptor(name: str = "write_file", *, read_only: bool = False) -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        description="",
        parameters={"type": "object"},
        mutability=MutabilityClass.read_only if read_only else MutabilityClass.mutating,
    )


def _request(call_id: str = "c1", name: str = "write_file") -> ToolCallRequest:
    return ToolCallRequest(id=call_id, tool_name=name, raw_arguments="{}", originating_turn=1)


class TestReadOnly:
    @pytest.mark.asyncio
    async def test_read_only_never_prompts(self, session):
        sink = RecordingSink()
        gate = ConfirmationGate(sink)
        decision = await gate.authorize(
            session, _request(name="read_file"), _descriptor("read_file", read_only=True), {}
        )
        assert decision.approved
        assert not decision.prompted
        assert sink.prompts == []

    @pytest.mark.asyncio
    async def test_read_only_ignores_session_deny(self, session):
        sink = RecordingSink(ApprovalScope.session_deny)
        gate = ConfirmationGate(sink)
        await gate.authorize(session, _request(), _descriptor("read_file"), {})
        decision = await gate.authorize(
            session, _request("c2", "read_file"), _descriptor("read_file", read_only=True), {}
        )
        assert decision.approved


class TestPromptScopes:
    @pytest.mark.asyncio
    async def test_once_approves_without_caching(self, session):
        sink = RecordingSink(ApprovalScope.once, ApprovalScope.once)
        gate = ConfirmationGate(sink)

        first = await gate.authorize(session, _request("c1"), _descriptor(), {})
        second = await gate.authorize(session, _request("c2"), _descriptor(), {})

        assert first.approved and first.prompted
        assert second.approved and second.prompted
        assert len(sink.prompts) == 2
        assert len(session.approvals) == 0

    @pytest.mark.asyncio
    async def test_always_is_cached_for_session(self, session):
        sink = RecordingSink(ApprovalScope.session_always)
        gate = ConfirmationGate(sink)

        await gate.authorize(session, _request("c1"), _descriptor(), {"path": "a"})
        cached = await gate.authorize(session, _request("c2"), _descriptor(), {"path": "b"})

        assert cached.approved
        assert not cached.prompted
        assert len(sink.prompts) == 1

    @pytest.mark.asyncio
    async def test_session_deny_refuses_without_prompt(self, session):
        sink = RecordingSink(ApprovalScope.session_deny)
        gate = ConfirmationGate(sink)

        first = await gate.authorize(session, _request("c1"), _descriptor(), {})
        second = await gate.authorize(session, _request("c2"), _descriptor(), {})

        assert not first.approved
        assert not second.approved
        assert not second.prompted
        assert len(sink.prompts) == 1

    @pytest.mark.asyncio
    async def test_deny_once_not_cached(self, session):
        sink = RecordingSink(ApprovalScope.deny_once, ApprovalScope.once)
        gate = ConfirmationGate(sink)

        first = await gate.authorize(session, _request("c1"), _descriptor(), {})
        second = await gate.authorize(session, _request("c2"), _descriptor(), {})

        assert not first.approved
        assert second.approved
        assert len(sink.prompts) == 2

    @pytest.mark.asyncio
    async def test_cache_is_per_tool(self, session):
        sink = RecordingSink(ApprovalScope.session_always, ApprovalScope.deny_once)
        gate = ConfirmationGate(sink)

        await gate.authorize(session, _request("c1"), _descriptor("write_file"), {})
        other = await gate.authorize(
            session, _request("c2", "delete_file"), _descriptor("delete_file"), {}
        )

        assert not other.approved
        assert len(sink.prompts) == 2

    @pytest.mark.asyncio
    async def test_prompt_carries_rendered_arguments(self, session):
        sink = RecordingSink(ApprovalScope.once)
        gate = ConfirmationGate(sink)
        await gate.authorize(session, _request("c9"), _descriptor(), {"path": "x.txt"})
        prompt = sink.prompts[0]
        assert prompt.call_id == "c9"
        assert prompt.source == "builtin"
        assert '"path": "x.txt"' in prompt.rendered_arguments


class TestArgumentGranularity:
    @pytest.mark.asyncio
    async def test_always_matches_same_arguments_only(self, session):
        sink = RecordingSink(ApprovalScope.session_always, ApprovalScope.deny_once)
        gate = ConfirmationGate(sink, granularity="arguments")

        await gate.authorize(session, _request("c1"), _descriptor(), {"path": "a.txt"})
        same = await gate.authorize(session, _request("c2"), _descriptor(), {"path": "a.txt"})
        different = await gate.authorize(session, _request("c3"), _descriptor(), {"path": "b.txt"})

        assert same.approved and not same.prompted
        assert not different.approved and different.prompted

    @pytest.mark.asyncio
    async def test_reply_pattern_overrides_exact_match(self, session):
        reply = ApprovalReply(ApprovalScope.session_always, argument_pattern={"path": "docs/*"})
        sink = RecordingSink(reply)
        gate = ConfirmationGate(sink, granularity="arguments")

        await gate.authorize(session, _request("c1"), _descriptor(), {"path": "docs/a.md"})
        other = await gate.authorize(session, _request("c2"), _descriptor(), {"path": "docs/b.md"})

        assert other.approved and not other.prompted


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_requests_prompt_once_after_always(self, session):
        sink = RecordingSink(ApprovalScope.session_always)
        gate = ConfirmationGate(sink)

        decisions = await asyncio.gather(
            *(gate.authorize(session, _request(f"c{i}"), _descriptor(), {}) for i in range(3))
        )

        assert all(d.approved for d in decisions)
        assert len(sink.prompts) == 1

    @pytest.mark.asyncio
    async def test_cancel_retracts_pending_prompt(self, session):
        sink = RecordingSink(block_prompts=True)
        gate = ConfirmationGate(sink)

        task = asyncio.create_task(gate.authorize(session, _request(), _descriptor(), {}))
        await sink.prompt_started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert [p.call_id for p in sink.retracted] == ["c1"]
        assert len(session.approvals) == 0

    @pytest.mark.asyncio
    async def test_prompt_timeout_denies_single_call(self, session):
        sink = RecordingSink(block_prompts=True)
        gate = ConfirmationGate(sink, prompt_timeout_s=0.05)

        decision = await gate.authorize(session, _request(), _descriptor(), {})

        assert not decision.approved
        assert decision.scope == ApprovalScope.deny_once
        assert len(sink.retracted) == 1
        assert len(session.approvals) == 0
