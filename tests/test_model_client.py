"""Tests for chat_stream_with_tools: content streaming, tool-call delta
accumulation, retry and error wrapping."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from conftest import RecordingSink
from openai import APIConnectionError, APIError, APIStatusError

from agentgate.agent.agent import AgentLoop, LoopState, TerminationReason
from agentgate.agent.model_client import ContentDelta, OpenAICompatModelClient, ToolCallsComplete
from agentgate.infra.errors import ModelClientError

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


@pytest.fixture()
def client():
    c = OpenAICompatModelClient(api_key="test-key", max_retries=0, base_delay=0)
    c._client = MagicMock()
    return c


def _tc_delta(
    *,
    index: int | None,
    call_id: str | None = None,
    name: str | None = None,
    args: str | None = None,
):
    fn = None
    if name is not None or args is not None:
        fn = SimpleNamespace(name=name, arguments=args)
    return SimpleNamespace(index=index, id=call_id, function=fn)


def _chunk(*, tool_calls=None, content=None):
    chunk = MagicMock()
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    chunk.choices = [SimpleNamespace(delta=delta)]
    return chunk


def _empty_chunk():
    chunk = MagicMock()
    chunk.choices = []
    return chunk


def _stream_from(chunks, *, fail_with: Exception | None = None):
    async def _gen():
        for c in chunks:
            yield c
        if fail_with is not None:
            raise fail_with

    return _gen()


async def _collect(client, **kwargs):
    events = []
    async for event in client.chat_stream_with_tools(
        [{"role": "user", "content": "hi"}], "test-model", **kwargs
    ):
        events.append(event)
    return events


class TestContentStreaming:
    @pytest.mark.asyncio()
    async def test_content_only(self, client):
        client._client.chat.completions.create = AsyncMock(
            return_value=_stream_from(
                [_chunk(content="Hel"), _empty_chunk(), _chunk(content="lo")]
            )
        )
        events = await _collect(client)
        assert events == [ContentDelta("Hel"), ContentDelta("lo")]

    @pytest.mark.asyncio()
    async def test_tools_omitted_when_empty(self, client):
        create = AsyncMock(return_value=_stream_from([]))
        client._client.chat.completions.create = create
        await _collect(client, tools=[])
        assert create.call_args.kwargs["stream"] is True
        assert "temperature" not in create.call_args.kwargs


class TestToolCallAccumulation:
    @pytest.mark.asyncio()
    async def test_index_fragments_accumulate(self, client):
        chunks = [
            _chunk(content="Let me look."),
            _chunk(tool_calls=[
                _tc_delta(index=0, call_id="call_1", name="read_file", args='{"path":"'),
                _tc_delta(index=1, call_id="call_2", name="list_files", args="{}"),
            ]),
            _chunk(tool_calls=[_tc_delta(index=0, args='a.txt"}')]),
        ]
        client._client.chat.completions.create = AsyncMock(return_value=_stream_from(chunks))

        events = await _collect(client, tools=[{"type": "function"}])

        assert events[0] == ContentDelta("Let me look.")
        tool_event = events[-1]
        assert isinstance(tool_event, ToolCallsComplete)
        assert tool_event.tool_calls == [
            {"id": "call_1", "name": "read_file", "arguments": '{"path":"a.txt"}'},
            {"id": "call_2", "name": "list_files", "arguments": "{}"},
        ]

    @pytest.mark.asyncio()
    async def test_null_index_multi_calls_do_not_concat(self, client):
        chunks = [
            _chunk(tool_calls=[
                _tc_delta(index=None, call_id="fc-1", name="read_file", args='{"path":"a"}'),
                _tc_delta(index=None, call_id="fc-2", name="read_file", args='{"path":"b"}'),
            ]),
        ]
        client._client.chat.completions.create = AsyncMock(return_value=_stream_from(chunks))

        events = await _collect(client, tools=[{"type": "function"}])

        tool_event = next(e for e in events if isinstance(e, ToolCallsComplete))
        assert [tc["id"] for tc in tool_event.tool_calls] == ["fc-1", "fc-2"]
        assert [tc["arguments"] for tc in tool_event.tool_calls] == [
            '{"path":"a"}',
            '{"path":"b"}',
        ]

    @pytest.mark.asyncio()
    async def test_null_index_continuation_without_id(self, client):
        chunks = [
            _chunk(tool_calls=[_tc_delta(index=None, call_id="fc-1", name="t", args='{"a"')]),
            _chunk(tool_calls=[_tc_delta(index=None, args=": 1}")]),
        ]
        client._client.chat.completions.create = AsyncMock(return_value=_stream_from(chunks))

        events = await _collect(client, tools=[{"type": "function"}])

        assert events[-1].tool_calls == [{"id": "fc-1", "name": "t", "arguments": '{"a": 1}'}]

    @pytest.mark.asyncio()
    async def test_missing_id_left_empty(self, client):
        chunks = [_chunk(tool_calls=[_tc_delta(index=0, name="t", args="{}")])]
        client._client.chat.completions.create = AsyncMock(return_value=_stream_from(chunks))

        events = await _collect(client, tools=[{"type": "function"}])

        assert events[-1].tool_calls[0]["id"] == ""


class TestErrors:
    @pytest.mark.asyncio()
    async def test_connection_error_exhausts_retries(self, client):
        client._client.chat.completions.create = AsyncMock(
            side_effect=APIConnectionError(request=_REQUEST)
        )
        with pytest.raises(ModelClientError, match="after 1 attempts"):
            await _collect(client)

    @pytest.mark.asyncio()
    async def test_transient_error_is_retried(self):
        c = OpenAICompatModelClient(api_key="test-key", max_retries=2, base_delay=0)
        c._client = MagicMock()
        create = AsyncMock(
            side_effect=[
                APIConnectionError(request=_REQUEST),
                _stream_from([_chunk(content="ok")]),
            ]
        )
        c._client.chat.completions.create = create

        events = await _collect(c)

        assert events == [ContentDelta("ok")]
        assert create.await_count == 2

    @pytest.mark.asyncio()
    async def test_status_error_not_retried(self, client):
        response = httpx.Response(400, request=_REQUEST)
        create = AsyncMock(
            side_effect=APIStatusError("bad request", response=response, body=None)
        )
        client._client.chat.completions.create = create

        with pytest.raises(ModelClientError, match="400"):
            await _collect(client)
        assert create.await_count == 1

    @pytest.mark.asyncio()
    async def test_stream_interruption(self, client):
        client._client.chat.completions.create = AsyncMock(
            return_value=_stream_from(
                [_chunk(content="partial")], fail_with=APIConnectionError(request=_REQUEST)
            )
        )
        with pytest.raises(ModelClientError, match="interrupted"):
            await _collect(client)

    @pytest.mark.asyncio()
    async def test_error_event_inside_stream(self, client):
        client._client.chat.completions.create = AsyncMock(
            return_value=_stream_from(
                [_chunk(content="partial")],
                fail_with=APIError("stream error event", request=_REQUEST, body=None),
            )
        )
        with pytest.raises(ModelClientError, match="stream error event"):
            await _collect(client)

    @pytest.mark.asyncio()
    async def test_status_error_inside_stream(self, client):
        response = httpx.Response(500, request=_REQUEST)
        client._client.chat.completions.create = AsyncMock(
            return_value=_stream_from(
                [], fail_with=APIStatusError("server error", response=response, body=None)
            )
        )
        with pytest.raises(ModelClientError, match="500"):
            await _collect(client)

    @pytest.mark.asyncio()
    async def test_generic_api_error_on_open_not_retried(self):
        c = OpenAICompatModelClient(api_key="test-key", max_retries=3, base_delay=0)
        c._client = MagicMock()
        create = AsyncMock(side_effect=APIError("bad frame", request=_REQUEST, body=None))
        c._client.chat.completions.create = create

        with pytest.raises(ModelClientError, match="bad frame"):
            await _collect(c)
        assert create.await_count == 1


class TestTurnEndsOnStreamFailure:
    @pytest.mark.asyncio()
    async def test_stream_error_terminates_turn(self, client, registry, sandbox, session):
        client._client.chat.completions.create = AsyncMock(
            return_value=_stream_from(
                [_chunk(content="partial")],
                fail_with=APIError("stream error event", request=_REQUEST, body=None),
            )
        )
        sink = RecordingSink()
        agent = AgentLoop(client, registry, sandbox, sink, model="test-model")

        outcome = await agent.run_turn(session, "hi")

        assert outcome.state == LoopState.terminated
        assert outcome.reason == TerminationReason.model_error
        assert agent.state == LoopState.terminated
        assert "[model error]" in sink.rendered_text
