from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import structlog
from openai import (
    NOT_GIVEN,
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from agentgate.infra.errors import ModelClientError

logger = structlog.get_logger()

_TRANSIENT = (APIConnectionError, APITimeoutError, RateLimitError)


@dataclass
class ContentDelta:
    text: str


@dataclass
class ToolCallsComplete:
    """Every tool call of one response: {"id", "name", "arguments" (raw JSON)}."""

    tool_calls: list[dict[str, str]] = field(default_factory=list)


StreamEvent = ContentDelta | ToolCallsComplete


class ModelClient(ABC):
    """Boundary to the language model.

    Implementations own their retry policy. Once they give up they raise
    ModelClientError, and nothing else, so the agent loop can end the turn.
    """

    @abstractmethod
    def chat_stream_with_tools(
        self,
        messages: list[dict[str, Any]],
        model: str,
        *,
        tools: list[dict] | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield ContentDelta as text arrives, then at most one ToolCallsComplete."""
        ...


class _ToolCallAccumulator:
    """Joins streamed tool-call fragments into whole calls.

    Fragments are keyed by index. Some compatible servers send index=None:
    there a fragment carrying an id opens a new call and one without an id
    extends the most recent call.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, str]] = []
        self._by_index: dict[int, dict[str, str]] = {}

    def feed(self, fragment: Any) -> None:
        idx = fragment.index
        if idx is not None and idx in self._by_index:
            call = self._by_index[idx]
        elif idx is None and not fragment.id and self.calls:
            call = self.calls[-1]
        else:
            call = {"id": "", "name": "", "arguments": ""}
            self.calls.append(call)
            if idx is not None:
                self._by_index[idx] = call

        if fragment.id:
            call["id"] = fragment.id
        fn = fragment.function
        if fn is not None:
            if fn.name:
                call["name"] = fn.name
            if fn.arguments:
                call["arguments"] += fn.arguments


def _describe(e: APIError) -> str:
    if isinstance(e, APIStatusError):
        return f"{e.status_code} {e.message}"
    return str(e)


class OpenAICompatModelClient(ModelClient):
    """ModelClient for OpenAI and OpenAI-compatible chat completion endpoints.

    Opening the stream is retried with exponential backoff and jitter on
    connection errors, timeouts and rate limits. Any other API error, and
    any error once the stream has started, becomes ModelClientError.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ) -> None:
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._max_retries = max_retries
        self._base_delay = base_delay

    async def _open_stream(self, request: dict[str, Any]) -> Any:
        attempts = self._max_retries + 1
        for attempt in range(attempts):
            try:
                return await self._client.chat.completions.create(**request)
            except _TRANSIENT as e:
                if attempt + 1 == attempts:
                    raise ModelClientError(
                        f"LLM call failed after {attempts} attempts: {e}"
                    ) from e
                backoff = self._base_delay * 2**attempt + random.uniform(0, 0.5)
                logger.warning(
                    "model_stream_retry",
                    attempt=f"{attempt + 1}/{attempts}",
                    backoff_s=round(backoff, 2),
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(backoff)
            except APIError as e:
                raise ModelClientError(f"LLM API error: {_describe(e)}") from e
        raise ModelClientError("LLM call was never attempted")  # max_retries < 0

    async def chat_stream_with_tools(
        self,
        messages: list[dict[str, Any]],
        model: str,
        *,
        tools: list[dict] | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        logger.debug("model_request", model=model, messages=len(messages), tools=len(tools or ()))
        request: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "tools": tools if tools else NOT_GIVEN,
            "stream": True,
        }
        if temperature is not None:
            request["temperature"] = temperature
        stream = await self._open_stream(request)

        accumulator = _ToolCallAccumulator()
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    yield ContentDelta(text=delta.content)
                for fragment in delta.tool_calls or ():
                    accumulator.feed(fragment)
        except APIError as e:
            # includes error events the server sends inside the stream
            raise ModelClientError(f"LLM stream interrupted: {_describe(e)}") from e

        if accumulator.calls:
            yield ToolCallsComplete(tool_calls=accumulator.calls)
