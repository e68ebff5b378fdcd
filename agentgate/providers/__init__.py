"""External tool providers: JSON-RPC connections over stdio or WebSocket."""

from agentgate.providers.connection import ExternalConnection, Liveness
from agentgate.providers.manager import ProviderManager
from agentgate.providers.protocol import CallToolResult, RemoteCallOutcome, ToolSpec
from agentgate.providers.transport import StdioTransport, Transport, WebSocketTransport

__all__ = [
    "CallToolResult",
    "ExternalConnection",
    "Liveness",
    "ProviderManager",
    "RemoteCallOutcome",
    "StdioTransport",
    "ToolSpec",
    "Transport",
    "WebSocketTransport",
]
