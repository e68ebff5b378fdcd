"""Custom exception hierarchy for agentgate.

All application-specific exceptions inherit from AgentGateError,
which carries an error code. Failures local to one tool invocation are
converted into a failed ToolResult using that code as its error_code.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentgate.sandbox.process import ProcessOutcome


class AgentGateError(Exception):
    """Base exception for all agentgate errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class RegistryError(AgentGateError):
    """Errors in the tool descriptor registry."""

    def __init__(self, message: str, *, code: str = "REGISTRY_ERROR") -> None:
        super().__init__(message, code=code)


class DuplicateNameError(RegistryError):
    """A tool name is already registered by a different source."""

    def __init__(self, name: str, existing_source: str, new_source: str) -> None:
        super().__init__(
            f"Tool '{name}' already registered by {existing_source}; "
            f"rejected registration from {new_source}",
            code="DUPLICATE_TOOL",
        )
        self.name = name
        self.existing_source = existing_source
        self.new_source = new_source


class ToolNotFoundError(RegistryError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}", code="UNKNOWN_TOOL")
        self.name = name


class ToolError(AgentGateError):
    """Errors during a single tool invocation."""

    def __init__(self, message: str, *, code: str = "EXECUTION_ERROR") -> None:
        super().__init__(message, code=code)


class InvalidArgumentsError(ToolError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_ARGS")


class UserDeniedError(ToolError):
    """The operator refused the invocation."""

    def __init__(self, message: str = "User denied tool call") -> None:
        super().__init__(message, code="USER_DENIED")


class ToolTimeoutError(ToolError):
    def __init__(self, message: str = "Tool invocation exceeded its deadline") -> None:
        super().__init__(message, code="TIMEOUT")


class ToolCancelledError(ToolError):
    def __init__(self, message: str = "Tool invocation cancelled") -> None:
        super().__init__(message, code="CANCELLED")


class SandboxError(AgentGateError):
    """Errors raised by the sandbox layer."""

    def __init__(self, message: str, *, code: str = "SANDBOX_ERROR") -> None:
        super().__init__(message, code=code)


class SandboxViolationError(SandboxError):
    """An operation attempted to cross the sandbox boundary.

    outcome holds the blocked process's output when a process was involved.
    """

    def __init__(self, message: str, *, outcome: ProcessOutcome | None = None) -> None:
        super().__init__(message, code="SANDBOX_VIOLATION")
        self.outcome = outcome


class SandboxUnavailableError(SandboxError):
    """The host primitive required by the selected strategy is missing."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="SANDBOX_UNAVAILABLE")


class ProviderError(AgentGateError):
    """Errors talking to an external tool provider."""

    def __init__(self, message: str, *, code: str = "PROVIDER_ERROR") -> None:
        super().__init__(message, code=code)


class ProviderUnavailableError(ProviderError):
    def __init__(self, server_id: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Provider '{server_id}' is not connected",
            code="PROVIDER_UNAVAILABLE",
        )
        self.server_id = server_id


class ProviderCallError(ProviderError):
    """Error reported by the provider itself in a JSON-RPC error response."""

    def __init__(self, message: str, *, rpc_code: int | None = None) -> None:
        super().__init__(message, code="PROVIDER_ERROR")
        self.rpc_code = rpc_code


class ProtocolError(ProviderError):
    """Malformed frame or failed handshake."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="PROTOCOL_ERROR")


class ModelClientError(AgentGateError):
    """Errors from LLM API calls (timeouts, rate limits, failures)."""

    def __init__(self, message: str, *, code: str = "LLM_ERROR") -> None:
        super().__init__(message, code=code)
