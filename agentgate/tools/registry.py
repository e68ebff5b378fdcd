"""Tool descriptor registry.

Copy-on-write: writers build a new immutable RegistrySnapshot under a lock
and swap it in; readers take the current snapshot without locking. A batch
pins one snapshot for all of its lookups, so a provider disconnect
mid-batch cannot change what the batch resolved.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import structlog

from agentgate.infra.errors import DuplicateNameError, ToolNotFoundError
from agentgate.tools.base import BUILTIN, BaseTool, ToolDescriptor
from agentgate.tools.executable import (
    Executable,
    LocalExecutable,
    RegisteredTool,
    RemoteExecutable,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of the registry at one version."""

    version: int
    entries: tuple[RegisteredTool, ...] = ()
    _by_name: Mapping[str, RegisteredTool] = field(
        default_factory=lambda: MappingProxyType({}), repr=False
    )

    @classmethod
    def build(cls, version: int, entries: Iterable[RegisteredTool]) -> RegistrySnapshot:
        ordered = tuple(entries)
        return cls(
            version=version,
            entries=ordered,
            _by_name=MappingProxyType({e.name: e for e in ordered}),
        )

    def get(self, name: str) -> RegisteredTool | None:
        return self._by_name.get(name)

    def lookup(self, name: str) -> ToolDescriptor:
        entry = self._by_name.get(name)
        if entry is None:
            raise ToolNotFoundError(name)
        return entry.descriptor

    def list(self) -> list[ToolDescriptor]:
        """Builtin tools first, then external tools in connection order."""
        return [e.descriptor for e in self.entries]

    def tools_schema(self) -> list[dict[str, Any]]:
        return [e.descriptor.to_schema() for e in self.entries]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[RegisteredTool]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


def _check_executable(descriptor: ToolDescriptor, executable: Executable) -> None:
    if descriptor.source.is_external:
        if not isinstance(executable, RemoteExecutable):
            raise TypeError(f"External tool '{descriptor.name}' needs a RemoteExecutable")
        if executable.server_id != descriptor.source.server_id:
            raise ValueError(
                f"Tool '{descriptor.name}': executable server "
                f"'{executable.server_id}' does not match descriptor source"
            )
    elif not isinstance(executable, LocalExecutable):
        raise TypeError(f"Builtin tool '{descriptor.name}' needs a LocalExecutable")


class ToolRegistry:
    """Registry for builtin and external tools. Names are globally unique.

    Builtin entries are owned here. External entries are per-connection views
    attached by the provider manager and dropped as a unit when the
    connection closes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._builtin: dict[str, RegisteredTool] = {}
        # insertion order == connection order
        self._external: dict[str, tuple[RegisteredTool, ...]] = {}
        self._snapshot = RegistrySnapshot.build(0, ())

    @property
    def version(self) -> int:
        return self._snapshot.version

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def _owner_of(self, name: str) -> str | None:
        if name in self._builtin:
            return str(BUILTIN)
        for server_id, entries in self._external.items():
            if any(e.name == name for e in entries):
                return f"external:{server_id}"
        return None

    def _publish(self) -> None:
        entries = [*self._builtin.values()]
        for view in self._external.values():
            entries.extend(view)
        self._snapshot = RegistrySnapshot.build(self._snapshot.version + 1, entries)

    def register(self, descriptor: ToolDescriptor, executable: Executable) -> None:
        """Register one descriptor.

        Raises DuplicateNameError if the name is owned by a different source.
        Re-registering a name from the same source replaces the entry.
        """
        _check_executable(descriptor, executable)
        entry = RegisteredTool(descriptor, executable)
        source = str(descriptor.source)
        with self._lock:
            owner = self._owner_of(descriptor.name)
            if owner is not None and owner != source:
                raise DuplicateNameError(descriptor.name, owner, source)
            if descriptor.source.is_external:
                server_id = descriptor.source.server_id
                view = [e for e in self._external.get(server_id, ()) if e.name != entry.name]
                self._external[server_id] = (*view, entry)
            else:
                self._builtin[descriptor.name] = entry
            self._publish()
        logger.info("tool_registered", tool_name=descriptor.name, source=source)

    def register_tool(self, tool: BaseTool) -> None:
        """Register a builtin tool."""
        self.register(tool.descriptor(), LocalExecutable(tool))

    def attach_server(self, server_id: str, entries: Iterable[RegisteredTool]) -> None:
        """Atomically install the full tool view of one provider connection.

        All-or-nothing: on DuplicateNameError nothing from this server is
        registered. Replaces any previous view for the same server_id.
        """
        view = tuple(entries)
        source = f"external:{server_id}"
        seen: set[str] = set()
        for entry in view:
            _check_executable(entry.descriptor, entry.executable)
            if entry.descriptor.source.server_id != server_id:
                raise ValueError(f"Tool '{entry.name}' does not belong to '{server_id}'")
            if entry.name in seen:
                raise DuplicateNameError(entry.name, source, source)
            seen.add(entry.name)

        with self._lock:
            for entry in view:
                owner = self._owner_of(entry.name)
                if owner is not None and owner != source:
                    raise DuplicateNameError(entry.name, owner, source)
            # re-attach keeps the server's original position in connection order
            self._external[server_id] = view
            self._publish()
        logger.info("provider_tools_attached", server_id=server_id, tool_count=len(view))

    def unregister_all_from(self, server_id: str) -> int:
        """Remove every descriptor owned by server_id. Idempotent.

        Returns the number of descriptors removed.
        """
        with self._lock:
            view = self._external.pop(server_id, None)
            if view is None:
                return 0
            self._publish()
        logger.info("provider_tools_detached", server_id=server_id, tool_count=len(view))
        return len(view)

    def get(self, name: str) -> RegisteredTool | None:
        """Get a registered tool by name. Returns None if not found."""
        return self._snapshot.get(name)

    def lookup(self, name: str) -> ToolDescriptor:
        """Raises ToolNotFoundError for unknown names."""
        return self._snapshot.lookup(name)

    def list(self) -> list[ToolDescriptor]:
        return self._snapshot.list()

    def tools_schema(self) -> list[dict[str, Any]]:
        """Return tools in OpenAI function calling format.

        Output format:
        [{"type": "function", "function": {"name": ..., "description": ..., "parameters": ...}}]
        """
        return self._snapshot.tools_schema()

    def servers(self) -> list[str]:
        return list(self._external)
