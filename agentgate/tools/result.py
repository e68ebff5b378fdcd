from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from agentgate.infra.errors import AgentGateError


class FailureKind(StrEnum):
    """Failure codes the orchestrator itself can attach to a ToolResult.

    Builtin tools may return their own error codes (e.g. FILE_NOT_FOUND);
    those are passed through to the model unchanged.
    """

    UNKNOWN_TOOL = "UNKNOWN_TOOL"
    INVALID_ARGS = "INVALID_ARGS"
    USER_DENIED = "USER_DENIED"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    SANDBOX_VIOLATION = "SANDBOX_VIOLATION"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    EXECUTION_ERROR = "EXECUTION_ERROR"

    @classmethod
    def from_code(cls, code: str) -> FailureKind:
        if code in cls._value2member_map_:
            return cls(code)
        if code == "PROTOCOL_ERROR":
            return cls.PROVIDER_ERROR
        return cls.EXECUTION_ERROR


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n[TRUNCATED {len(text) - limit} chars]"


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool invocation, identical for every execution path.

    call_id correlates the result with its ToolCallRequest.
    """

    call_id: str
    tool_name: str
    ok: bool
    return_value: Any = None
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    duration_ms: int = 0
    error_code: str | None = None
    message: str = ""

    @classmethod
    def failure(
        cls,
        call_id: str,
        tool_name: str,
        error_code: str,
        message: str,
        *,
        duration_ms: int = 0,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
    ) -> ToolResult:
        return cls(
            call_id=call_id,
            tool_name=tool_name,
            ok=False,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration_ms=duration_ms,
            error_code=str(error_code),
            message=message,
        )

    @classmethod
    def from_error(
        cls, call_id: str, tool_name: str, exc: AgentGateError, *, duration_ms: int = 0
    ) -> ToolResult:
        return cls.failure(
            call_id,
            tool_name,
            FailureKind.from_code(exc.code),
            str(exc),
            duration_ms=duration_ms,
        )

    @property
    def exit_signal(self) -> int | None:
        """Signal number when the process was killed by a signal."""
        if self.exit_code is not None and self.exit_code < 0:
            return -self.exit_code
        return None

    def to_payload(self, max_output_chars: int = 16_000) -> dict[str, Any]:
        """Model-visible representation, appended to the transcript as JSON."""
        payload: dict[str, Any] = {"ok": self.ok}
        if self.ok:
            if self.return_value is not None:
                payload["result"] = self.return_value
        else:
            payload["error_code"] = self.error_code
            payload["message"] = self.message
        if self.stdout:
            payload["stdout"] = _truncate(self.stdout, max_output_chars)
        if self.stderr:
            payload["stderr"] = _truncate(self.stderr, max_output_chars)
        if self.exit_code is not None:
            payload["exit_code"] = self.exit_code
        payload["duration_ms"] = self.duration_ms
        return payload
