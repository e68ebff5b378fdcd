from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any, Literal

import structlog

from agentgate.infra.errors import AgentGateError, ProviderUnavailableError
from agentgate.providers.connection import ExternalConnection
from agentgate.providers.transport import Transport, create_transport
from agentgate.tools.base import MutabilityClass, ToolDescriptor, ToolSource
from agentgate.tools.executable import RegisteredTool, RemoteExecutable

if TYPE_CHECKING:
    from agentgate.config.settings import ServerConfig
    from agentgate.providers.protocol import RemoteCallOutcome
    from agentgate.tools.registry import ToolRegistry

logger = structlog.get_logger()

CollisionPolicy = Literal["reject", "prefix"]

PREFIX_SEPARATOR = "__"


class ProviderManager:
    """Owns the named external provider connections.

    The only writer of external entries in the ToolRegistry: descriptors are
    attached on connect and detached when a connection closes. Reconnection
    is never automatic; callers decide when to invoke reconnect().
    """

    def __init__(
        self,
        registry: ToolRegistry,
        configs: Iterable[ServerConfig] = (),
        *,
        collision_policy: CollisionPolicy = "reject",
        transport_factory: Callable[[ServerConfig], Transport] = create_transport,
    ) -> None:
        self._registry = registry
        self._configs: dict[str, ServerConfig] = {c.server_id: c for c in configs}
        self._collision_policy = collision_policy
        self._transport_factory = transport_factory
        self._connections: dict[str, ExternalConnection] = {}

    async def __aenter__(self) -> ProviderManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close_all()

    @property
    def server_ids(self) -> list[str]:
        return list(self._configs)

    def add_server(self, config: ServerConfig) -> None:
        if config.server_id in self._configs:
            raise ValueError(f"Provider '{config.server_id}' already configured")
        self._configs[config.server_id] = config

    def connection(self, server_id: str) -> ExternalConnection | None:
        return self._connections.get(server_id)

    def is_live(self, server_id: str) -> bool:
        conn = self._connections.get(server_id)
        return conn is not None and conn.is_live

    def tool_name_for(self, server_id: str, remote_name: str) -> str:
        if self._collision_policy == "prefix":
            return f"{server_id}{PREFIX_SEPARATOR}{remote_name}"
        return remote_name

    async def connect(self, server_id: str) -> ExternalConnection:
        """Connect, handshake and register the provider's tools.

        Raises DuplicateNameError when an advertised name collides with an
        existing tool from another source; the connection is closed and no
        tool from this provider is registered.
        """
        config = self._configs.get(server_id)
        if config is None:
            raise KeyError(f"Provider not configured: {server_id}")
        existing = self._connections.get(server_id)
        if existing is not None and existing.is_live:
            return existing

        conn = ExternalConnection(
            config, self._transport_factory(config), on_close=self._on_connection_closed
        )
        await conn.start()
        self._connections[server_id] = conn
        try:
            self._registry.attach_server(server_id, self._build_entries(conn))
        except AgentGateError:
            logger.exception("provider_registration_failed", server_id=server_id)
            del self._connections[server_id]
            await conn.close(reason="registration failed")
            raise
        logger.info(
            "provider_connected",
            server_id=server_id,
            transport=config.transport,
            tools=sorted(conn.advertised_tools),
        )
        return conn

    async def connect_all(self) -> dict[str, AgentGateError]:
        """Connect every configured provider in configuration order.

        A provider that fails is logged and skipped. Returns the failures.
        """
        failures: dict[str, AgentGateError] = {}
        for server_id in self._configs:
            try:
                await self.connect(server_id)
            except AgentGateError as e:
                logger.warning(
                    "provider_connect_failed", server_id=server_id, code=e.code, error=str(e)
                )
                failures[server_id] = e
        return failures

    async def disconnect(self, server_id: str) -> None:
        conn = self._connections.get(server_id)
        if conn is None:
            return
        await conn.close()
        # close() triggers _on_connection_closed; this covers an already-closed connection
        self._registry.unregister_all_from(server_id)
        self._connections.pop(server_id, None)

    async def reconnect(self, server_id: str) -> ExternalConnection:
        await self.disconnect(server_id)
        return await self.connect(server_id)

    async def close_all(self) -> None:
        for server_id in list(self._connections):
            await self.disconnect(server_id)

    async def call_tool(
        self, server_id: str, remote_name: str, arguments: dict[str, Any]
    ) -> RemoteCallOutcome:
        """Forward one invocation. Fails fast if the connection is not live."""
        conn = self._connections.get(server_id)
        if conn is None or not conn.is_live:
            raise ProviderUnavailableError(server_id)
        return await conn.call_tool(remote_name, arguments)

    def _build_entries(self, conn: ExternalConnection) -> list[RegisteredTool]:
        source = ToolSource.external(conn.server_id)
        entries: list[RegisteredTool] = []
        for spec in conn.advertised_tools.values():
            descriptor = ToolDescriptor(
                name=self.tool_name_for(conn.server_id, spec.name),
                description=spec.description,
                parameters=spec.input_schema,
                mutability=(
                    MutabilityClass.read_only if spec.read_only else MutabilityClass.mutating
                ),
                source=source,
                remote_name=spec.name,
            )
            entries.append(RegisteredTool(descriptor, RemoteExecutable(conn.server_id, spec.name)))
        return entries

    def _on_connection_closed(self, conn: ExternalConnection) -> None:
        # A stale connection closing must not detach a newer one's tools.
        if self._connections.get(conn.server_id) is not conn:
            return
        self._registry.unregister_all_from(conn.server_id)
