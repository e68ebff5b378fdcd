"""JSON-RPC 2.0 wire models for external tool providers.

Handshake: `initialize` request, `notifications/initialized` notification,
then `tools/list`. Invocation: `tools/call` with {name, arguments}.
Responses are correlated by id and may arrive in any order.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from agentgate.infra.errors import ProtocolError
from agentgate.tools.result import FailureKind, ToolResult

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "agentgate", "version": "0.1.0"}

METHOD_NOT_FOUND = -32601


class RPCErrorData(BaseModel):
    code: int
    message: str
    data: Any = None


class RPCRequest(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    id: int | str
    method: str
    params: dict[str, Any] | None = None


class RPCNotification(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: dict[str, Any] | None = None


class RPCResponse(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    id: int | str | None
    result: Any = None
    error: RPCErrorData | None = None

    @model_validator(mode="after")
    def _result_or_error(self) -> RPCResponse:
        if self.error is not None and self.result is not None:
            raise ValueError("response carries both result and error")
        return self


RPCMessage = RPCRequest | RPCNotification | RPCResponse


class ToolAnnotations(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    read_only_hint: bool = Field(False, alias="readOnlyHint")


class ToolSpec(BaseModel):
    """One advertised capability from `tools/list`."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )
    annotations: ToolAnnotations | None = None

    @property
    def read_only(self) -> bool:
        return self.annotations is not None and self.annotations.read_only_hint


class ListToolsResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tools: list[ToolSpec] = Field(default_factory=list)


class CallToolResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    content: list[dict[str, Any]] = Field(default_factory=list)
    structured_content: dict[str, Any] | None = Field(None, alias="structuredContent")
    is_error: bool = Field(False, alias="isError")

    def text(self) -> str:
        return "\n".join(
            str(block.get("text", "")) for block in self.content if block.get("type") == "text"
        )


@dataclass(frozen=True)
class RemoteCallOutcome:
    result: CallToolResult
    duration_ms: int

    def to_tool_result(self, call_id: str, tool_name: str) -> ToolResult:
        if self.result.is_error:
            return ToolResult.failure(
                call_id,
                tool_name,
                FailureKind.PROVIDER_ERROR,
                self.result.text() or "Provider reported an error",
                duration_ms=self.duration_ms,
            )
        value: Any = self.result.structured_content
        if value is None:
            value = self.result.text() if self.result.content else None
        return ToolResult(
            call_id=call_id,
            tool_name=tool_name,
            ok=True,
            return_value=value,
            duration_ms=self.duration_ms,
        )


def encode(message: BaseModel) -> str:
    return message.model_dump_json(exclude_none=True)


def parse_message(raw: str | bytes) -> RPCMessage:
    """Parse one JSON-RPC frame.

    Raises ProtocolError on invalid JSON or an unrecognised shape.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"Expected JSON object, got {type(data).__name__}")
    try:
        if "method" in data:
            if "id" in data:
                return RPCRequest.model_validate(data)
            return RPCNotification.model_validate(data)
        if "result" in data or "error" in data:
            return RPCResponse.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid JSON-RPC message: {e}") from e
    raise ProtocolError("Frame is neither request, notification nor response")
