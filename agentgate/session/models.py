"""Session and transcript data model.

A Session is owned by one AgentLoop. Turns are immutable once appended;
a Turn carrying a ToolCallBatch is appended together with all of its
results, never partially.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from agentgate.session.approvals import ApprovalLog

if TYPE_CHECKING:
    from agentgate.sandbox.profile import SandboxProfile
    from agentgate.tools.result import ToolResult


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    tool_name: str
    raw_arguments: str
    originating_turn: int


@dataclass(frozen=True)
class FinalAnswer:
    text: str


@dataclass(frozen=True)
class ToolCallBatch:
    requests: tuple[ToolCallRequest, ...]
    text: str = ""  # content streamed alongside the tool calls, may be empty

    def __post_init__(self) -> None:
        ids = [r.id for r in self.requests]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate tool call ids in batch: {ids}")

    def __len__(self) -> int:
        return len(self.requests)


ModelResponse = FinalAnswer | ToolCallBatch


@dataclass(frozen=True)
class UserMessage:
    text: str


@dataclass(frozen=True)
class Turn:
    index: int
    response: ModelResponse
    results: tuple[ToolResult, ...] = ()


TranscriptEntry = UserMessage | Turn


@dataclass
class Session:
    """Unit of lifetime for one interactive run."""

    profile: SandboxProfile
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    transcript: list[TranscriptEntry] = field(default_factory=list)
    approvals: ApprovalLog = field(default_factory=ApprovalLog)
    turn_counter: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    _cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def next_turn_index(self) -> int:
        self.turn_counter += 1
        return self.turn_counter

    def append_user(self, text: str) -> None:
        self.transcript.append(UserMessage(text))

    def append_turn(self, turn: Turn) -> None:
        if isinstance(turn.response, ToolCallBatch):
            expected = [r.id for r in turn.response.requests]
            actual = [r.call_id for r in turn.results]
            if expected != actual:
                raise ValueError(f"Results {actual} do not match batch requests {expected}")
        self.transcript.append(turn)

    @property
    def turns(self) -> list[Turn]:
        return [e for e in self.transcript if isinstance(e, Turn)]

    def cancel(self) -> None:
        """Signal cancellation to every suspension point of the active turn."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def reset_cancel(self) -> None:
        self._cancel_event.clear()

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()

    def to_messages(self, *, max_output_chars: int = 16_000) -> list[dict[str, Any]]:
        """Convert the transcript to OpenAI chat format dicts."""
        messages: list[dict[str, Any]] = []
        for entry in self.transcript:
            if isinstance(entry, UserMessage):
                messages.append({"role": "user", "content": entry.text})
                continue
            response = entry.response
            if isinstance(response, FinalAnswer):
                messages.append({"role": "assistant", "content": response.text})
                continue
            messages.append(
                {
                    "role": "assistant",
                    "content": response.text,
                    "tool_calls": [
                        {
                            "id": r.id,
                            "type": "function",
                            "function": {"name": r.tool_name, "arguments": r.raw_arguments},
                        }
                        for r in response.requests
                    ],
                }
            )
            for result in entry.results:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.call_id,
                        "content": json.dumps(
                            result.to_payload(max_output_chars), ensure_ascii=False, default=str
                        ),
                    }
                )
        return messages
