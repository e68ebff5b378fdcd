"""Transports for external provider connections.

StdioTransport speaks newline-delimited JSON over a child process's pipes;
WebSocketTransport sends one JSON message per WebSocket frame.
receive() returns None once the peer is gone.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from agentgate.infra.errors import ProviderUnavailableError

if TYPE_CHECKING:
    from agentgate.config.settings import ServerConfig

logger = structlog.get_logger()

_TERMINATE_GRACE_S = 2.0


class Transport(ABC):
    def __init__(self, server_id: str) -> None:
        self.server_id = server_id

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def send(self, message: str) -> None: ...

    @abstractmethod
    async def receive(self) -> str | None: ...

    @abstractmethod
    async def close(self) -> None: ...


async def _read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read a full line from stream with no size limit.

    A single frame (e.g. a large tool result) can exceed the default
    64 KiB StreamReader limit; drain and keep accumulating in that case.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunks.append(await stream.read(exc.consumed))
        except asyncio.IncompleteReadError as exc:
            chunks.append(exc.partial)
            return b"".join(chunks)


class StdioTransport(Transport):
    """Provider running as a local subprocess."""

    def __init__(
        self,
        server_id: str,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> None:
        super().__init__(server_id)
        self._command = command
        self._env = env or {}
        self._cwd = cwd
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    async def open(self) -> None:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self._env},
                cwd=self._cwd,
            )
        except OSError as e:
            raise ProviderUnavailableError(
                self.server_id, f"Failed to start provider '{self.server_id}': {e}"
            ) from e
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            line = await self._proc.stderr.readline()
            if not line:
                return
            logger.debug(
                "provider_stderr",
                server_id=self.server_id,
                line=line.decode("utf-8", errors="replace").rstrip()[:500],
            )

    async def send(self, message: str) -> None:
        if self._proc is None or self._proc.stdin is None or self._proc.stdin.is_closing():
            raise ProviderUnavailableError(self.server_id)
        try:
            self._proc.stdin.write(message.encode("utf-8") + b"\n")
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProviderUnavailableError(self.server_id, f"Provider pipe closed: {e}") from e

    async def receive(self) -> str | None:
        if self._proc is None or self._proc.stdout is None:
            return None
        line = await _read_line_unbounded(self._proc.stdout)
        if not line:
            return None
        return line.decode("utf-8", errors="replace")

    async def close(self) -> None:
        proc = self._proc
        if proc is None:
            return
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        if proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE_S)
            except TimeoutError:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE_S)
                except TimeoutError:
                    proc.kill()
                    await proc.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
        logger.info("provider_process_exited", server_id=self.server_id, returncode=proc.returncode)


class WebSocketTransport(Transport):
    """Provider reachable over a network socket (WebSocket)."""

    def __init__(self, server_id: str, url: str) -> None:
        super().__init__(server_id)
        self._url = url
        self._ws: ClientConnection | None = None

    async def open(self) -> None:
        try:
            self._ws = await connect(self._url, max_size=2**22)
        except (OSError, WebSocketException) as e:
            raise ProviderUnavailableError(
                self.server_id, f"Failed to connect to provider '{self.server_id}': {e}"
            ) from e

    async def send(self, message: str) -> None:
        if self._ws is None:
            raise ProviderUnavailableError(self.server_id)
        try:
            await self._ws.send(message)
        except ConnectionClosed as e:
            raise ProviderUnavailableError(self.server_id, f"Provider socket closed: {e}") from e

    async def receive(self) -> str | None:
        if self._ws is None:
            return None
        try:
            frame = await self._ws.recv()
        except ConnectionClosed:
            return None
        if isinstance(frame, bytes):
            return frame.decode("utf-8", errors="replace")
        return frame

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()


def create_transport(config: ServerConfig) -> Transport:
    if config.transport == "websocket":
        if not config.url:
            raise ProviderUnavailableError(
                config.server_id, f"Provider '{config.server_id}' has no websocket url"
            )
        return WebSocketTransport(config.server_id, config.url)
    return StdioTransport(
        config.server_id,
        list(config.command),
        env=dict(config.env),
        cwd=str(config.cwd) if config.cwd else None,
    )
