from __future__ import annotations

import asyncio
import contextlib
import itertools
import time
from collections.abc import Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from agentgate.infra.errors import (
    AgentGateError,
    ProtocolError,
    ProviderCallError,
    ProviderUnavailableError,
    ToolTimeoutError,
)
from agentgate.providers.protocol import (
    CLIENT_INFO,
    METHOD_NOT_FOUND,
    PROTOCOL_VERSION,
    CallToolResult,
    ListToolsResult,
    RemoteCallOutcome,
    RPCErrorData,
    RPCNotification,
    RPCRequest,
    RPCResponse,
    ToolSpec,
    encode,
    parse_message,
)

if TYPE_CHECKING:
    from agentgate.config.settings import ServerConfig
    from agentgate.providers.transport import Transport

logger = structlog.get_logger()


class Liveness(StrEnum):
    connecting = "connecting"
    live = "live"
    closed = "closed"


class ExternalConnection:
    """One long-lived connection to an external tool provider.

    A background reader task resolves pending requests by id, so responses
    may arrive in any order. When the peer goes away every pending request
    fails with ProviderUnavailableError and on_close is invoked once.
    """

    def __init__(
        self,
        config: ServerConfig,
        transport: Transport,
        *,
        on_close: Callable[[ExternalConnection], None] | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._on_close = on_close
        self._ids = itertools.count(1)
        self._pending: dict[int | str, asyncio.Future] = {}
        self._reader_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._state = Liveness.connecting
        self._close_reason = ""
        self.advertised_tools: dict[str, ToolSpec] = {}
        self.server_info: dict[str, Any] = {}

    @property
    def server_id(self) -> str:
        return self._config.server_id

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def liveness(self) -> Liveness:
        return self._state

    @property
    def is_live(self) -> bool:
        return self._state == Liveness.live

    async def start(self) -> None:
        """Open the transport, perform the handshake and fetch capabilities.

        Raises ProviderUnavailableError or ProtocolError; the connection is
        closed before raising.
        """
        await self._transport.open()
        self._reader_task = asyncio.create_task(self._read_loop())
        try:
            init = await self._request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
                timeout=self._config.handshake_timeout_s,
            )
            if not isinstance(init, dict):
                raise ProtocolError(f"Provider '{self.server_id}' sent invalid initialize result")
            self.server_info = init.get("serverInfo", {}) or {}
            await self._notify("notifications/initialized")
            listed = await self._request(
                "tools/list", {}, timeout=self._config.handshake_timeout_s
            )
            try:
                tools = ListToolsResult.model_validate(listed or {}).tools
            except ValueError as e:
                raise ProtocolError(f"Invalid tools/list result: {e}") from e
        except ToolTimeoutError as e:
            await self.close(reason="handshake timeout")
            raise ProviderUnavailableError(
                self.server_id, f"Provider '{self.server_id}' handshake timed out"
            ) from e
        except ProviderCallError as e:
            await self.close(reason="handshake rejected")
            raise ProtocolError(f"Provider '{self.server_id}' rejected handshake: {e}") from e
        except AgentGateError:
            await self.close(reason="handshake failed")
            raise

        self.advertised_tools = {t.name: t for t in tools}
        self._state = Liveness.live
        logger.info(
            "provider_handshake_complete",
            server_id=self.server_id,
            server_info=self.server_info,
            tool_count=len(tools),
        )

    async def call_tool(
        self, name: str, arguments: dict[str, Any], *, timeout: float | None = None
    ) -> RemoteCallOutcome:
        if not self.is_live:
            raise ProviderUnavailableError(self.server_id)
        start = time.monotonic()
        raw = await self._request(
            "tools/call",
            {"name": name, "arguments": arguments},
            timeout=timeout or self._config.call_timeout_s,
        )
        try:
            result = CallToolResult.model_validate(raw or {})
        except ValueError as e:
            raise ProtocolError(f"Invalid tools/call result from '{self.server_id}': {e}") from e
        return RemoteCallOutcome(result=result, duration_ms=int((time.monotonic() - start) * 1000))

    async def _request(self, method: str, params: dict[str, Any], *, timeout: float) -> Any:
        if self._state == Liveness.closed:
            raise ProviderUnavailableError(self.server_id)
        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._transport.send(
                encode(RPCRequest(id=request_id, method=method, params=params))
            )
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError as e:
            self._spawn(self._notify_cancelled(request_id, "timeout"))
            raise ToolTimeoutError(
                f"Provider '{self.server_id}' did not answer {method} within {timeout}s"
            ) from e
        except asyncio.CancelledError:
            self._spawn(self._notify_cancelled(request_id, "cancelled"))
            raise
        finally:
            self._pending.pop(request_id, None)

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._transport.send(encode(RPCNotification(method=method, params=params)))

    async def _notify_cancelled(self, request_id: int | str, reason: str) -> None:
        if self._state == Liveness.closed:
            return
        try:
            await self._notify(
                "notifications/cancelled", {"requestId": request_id, "reason": reason}
            )
        except ProviderUnavailableError:
            logger.debug("provider_cancel_notify_failed", server_id=self.server_id)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _read_loop(self) -> None:
        reason = "peer closed connection"
        try:
            while True:
                raw = await self._transport.receive()
                if raw is None:
                    break
                if not raw.strip():
                    continue
                try:
                    message = parse_message(raw)
                except ProtocolError as e:
                    logger.warning("provider_bad_frame", server_id=self.server_id, error=str(e))
                    continue
                await self._handle(message)
        except asyncio.CancelledError:
            reason = "closed locally"
            raise
        except (OSError, ProviderUnavailableError) as e:
            reason = f"transport error: {e}"
        finally:
            self._mark_closed(reason)

    async def _handle(self, message: RPCRequest | RPCNotification | RPCResponse) -> None:
        if isinstance(message, RPCResponse):
            future = self._pending.get(message.id) if message.id is not None else None
            if future is None or future.done():
                logger.warning(
                    "provider_unmatched_response", server_id=self.server_id, id=message.id
                )
                return
            if message.error is not None:
                future.set_exception(
                    ProviderCallError(message.error.message, rpc_code=message.error.code)
                )
            else:
                future.set_result(message.result)
        elif isinstance(message, RPCRequest):
            # Server-initiated requests: answer ping, refuse everything else.
            if message.method == "ping":
                reply = RPCResponse(id=message.id, result={})
            else:
                reply = RPCResponse(
                    id=message.id,
                    error=RPCErrorData(
                        code=METHOD_NOT_FOUND, message=f"Method not found: {message.method}"
                    ),
                )
            await self._transport.send(encode(reply))
        else:
            logger.debug("provider_notification", server_id=self.server_id, method=message.method)

    def _mark_closed(self, reason: str) -> None:
        if self._state == Liveness.closed:
            return
        self._state = Liveness.closed
        self._close_reason = reason
        for future in self._pending.values():
            if not future.done():
                future.set_exception(
                    ProviderUnavailableError(
                        self.server_id, f"Provider '{self.server_id}' disconnected: {reason}"
                    )
                )
        self._pending.clear()
        logger.warning("provider_disconnected", server_id=self.server_id, reason=reason)
        if self._on_close is not None:
            self._on_close(self)

    async def close(self, *, reason: str = "closed locally") -> None:
        self._mark_closed(reason)
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        await self._transport.close()
