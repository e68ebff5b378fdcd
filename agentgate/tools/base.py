from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agentgate.tools.context import ToolContext


class MutabilityClass(StrEnum):
    """Approval classification of a tool.

    Mutating tools go through the confirmation gate. Undeclared tools
    default to mutating (fail-closed).
    """

    read_only = "read_only"
    mutating = "mutating"


class SourceKind(StrEnum):
    builtin = "builtin"
    external = "external"


@dataclass(frozen=True)
class ToolSource:
    """Where a descriptor came from: builtin, or an external provider connection."""

    kind: SourceKind
    server_id: str | None = None

    @classmethod
    def builtin(cls) -> ToolSource:
        return cls(SourceKind.builtin)

    @classmethod
    def external(cls, server_id: str) -> ToolSource:
        return cls(SourceKind.external, server_id)

    @property
    def is_external(self) -> bool:
        return self.kind == SourceKind.external

    def __str__(self) -> str:
        if self.kind == SourceKind.external:
            return f"external:{self.server_id}"
        return "builtin"


BUILTIN = ToolSource.builtin()


@dataclass(frozen=True)
class ToolDescriptor:
    """Model-facing description of a callable tool.

    remote_name is the name the owning provider knows the tool by; it differs
    from name only when the provider collision policy prefixes external names.
    """

    name: str
    description: str
    parameters: dict[str, Any]
    mutability: MutabilityClass = MutabilityClass.mutating
    source: ToolSource = BUILTIN
    remote_name: str | None = field(default=None, compare=False)

    def to_schema(self) -> dict[str, Any]:
        """OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class BaseTool(ABC):
    """Abstract base class for builtin tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name used in function calling."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of what the tool does."""
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict:
        """JSON Schema describing the tool's input parameters."""
        ...

    @property
    def mutability(self) -> MutabilityClass:
        """Fail-closed default: mutating.

        Tools that only read state should explicitly declare read_only.
        """
        return MutabilityClass.mutating

    @abstractmethod
    async def execute(self, arguments: dict, context: ToolContext) -> dict:
        """Execute the tool with validated arguments.

        context is injected by the sandbox executor and carries the session's
        sandbox strategy; filesystem and process access must go through it.
        Expected failures are returned as {"error_code": ..., "message": ...}.
        """
        ...

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
            mutability=self.mutability,
            source=BUILTIN,
        )
