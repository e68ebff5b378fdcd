"""WebSocket provider transport against a local websockets server.

Covers: raw frame exchange, full handshake and call through the manager,
peer hangup failing the pending call, unreachable url.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import pytest
from websockets.asyncio.server import ServerConnection, serve

from agentgate.config.settings import ServerConfig
from agentgate.infra.errors import ProviderUnavailableError
from agentgate.providers.manager import ProviderManager
from agentgate.providers.transport import WebSocketTransport, create_transport
from agentgate.tools.base import ToolSource

pytestmark = pytest.mark.integration

_TOOLS = [
    {
        "name": "echo",
        "description": "Echo arguments",
        "inputSchema": {"type": "object", "properties": {}},
        "annotations": {"readOnlyHint": True},
    },
    {
        "name": "hangup",
        "description": "Closes the socket without answering",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


async def _provider(ws: ServerConnection) -> None:
    async for raw in ws:
        message = json.loads(raw)
        request_id = message.get("id")
        method = message.get("method")
        if request_id is None:
            continue
        if method == "initialize":
            result = {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "ws-provider", "version": "1.0"},
            }
        elif method == "tools/list":
            result = {"tools": _TOOLS}
        elif method == "tools/call" and message["params"]["name"] == "hangup":
            await ws.close()
            return
        elif method == "tools/call":
            args = message["params"].get("arguments") or {}
            result = {
                "content": [{"type": "text", "text": json.dumps(args)}],
                "structuredContent": {"echo": args},
            }
        else:
            result = {"echoed": message.get("params")}
        await ws.send(json.dumps({"jsonrpc": "2.0", "id": request_id, "result": result}))


@asynccontextmanager
async def _running_provider() -> AsyncIterator[str]:
    async with serve(_provider, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


def _config(url: str) -> ServerConfig:
    return ServerConfig(server_id="ws", transport="websocket", url=url, call_timeout_s=5)


class TestWebSocketTransport:
    @pytest.mark.asyncio
    async def test_frame_exchange(self):
        async with _running_provider() as url:
            transport = WebSocketTransport("ws", url)
            await transport.open()
            await transport.send(json.dumps({"jsonrpc": "2.0", "id": 1, "method": "ping"}))
            reply = json.loads(await asyncio.wait_for(transport.receive(), 5))
            await transport.close()

        assert reply == {"jsonrpc": "2.0", "id": 1, "result": {"echoed": None}}

    @pytest.mark.asyncio
    async def test_receive_after_close_returns_none(self):
        async with _running_provider() as url:
            transport = WebSocketTransport("ws", url)
            await transport.open()
            await transport.close()
            assert await transport.receive() is None
            with pytest.raises(ProviderUnavailableError):
                await transport.send("{}")

    @pytest.mark.asyncio
    async def test_unreachable_url(self):
        async with _running_provider() as url:
            pass
        transport = WebSocketTransport("ws", url)
        with pytest.raises(ProviderUnavailableError, match="Failed to connect"):
            await transport.open()

    def test_factory_requires_url(self):
        config = ServerConfig.model_construct(server_id="ws", transport="websocket", url=None)
        with pytest.raises(ProviderUnavailableError, match="no websocket url"):
            create_transport(config)


class TestWebSocketProvider:
    @pytest.mark.asyncio
    async def test_handshake_and_call(self, registry):
        async with _running_provider() as url:
            async with ProviderManager(registry, [_config(url)]) as manager:
                failures = await manager.connect_all()

                assert failures == {}
                assert manager.connection("ws").server_info["name"] == "ws-provider"
                assert registry.lookup("echo").source == ToolSource.external("ws")
                outcome = await manager.call_tool("ws", "echo", {"msg": "hi"})
                assert outcome.result.structured_content == {"echo": {"msg": "hi"}}

    @pytest.mark.asyncio
    async def test_hangup_fails_pending_call(self, registry):
        async with _running_provider() as url:
            async with ProviderManager(registry, [_config(url)]) as manager:
                await manager.connect_all()

                with pytest.raises(ProviderUnavailableError):
                    await manager.call_tool("ws", "hangup", {})

                assert not manager.is_live("ws")
                assert registry.get("echo") is None
