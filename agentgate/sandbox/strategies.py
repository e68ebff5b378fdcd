"""Sandbox strategies: one interface, three isolation mechanisms.

The strategy is chosen once from the session's SandboxProfile
(create_strategy) and never branched on at call sites.

- DirectStrategy: runs argv as-is.
- RestrictiveOSStrategy: bubblewrap on Linux, sandbox-exec (Seatbelt) on macOS.
  Writes are confined to filesystem_scope; network is unshared when the
  policy is deny.
- ContainerStrategy: `<runtime> run --rm` of a pre-built image that mounts
  only filesystem_scope, bounded by container_timeout_s.

The builtin file tools go through file_op(), so their reads and writes are
confined by the same mechanism as run_command.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import json
import shutil
import sys
import uuid
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import structlog

from agentgate.infra.errors import (
    SandboxUnavailableError,
    SandboxViolationError,
    ToolTimeoutError,
)
from agentgate.sandbox import fileops
from agentgate.sandbox.process import ProcessOutcome, run_process
from agentgate.sandbox.profile import SandboxProfile, StrategyKind

logger = structlog.get_logger()

# stderr fragments the host primitive itself produces when it blocks an
# operation. Plain EACCES ("Permission denied") is ordinary file-mode
# failure and never counts.
_SEATBELT_MARKERS = ("Operation not permitted", "deny(1)")
_BWRAP_WRITE_MARKERS = ("Read-only file system",)
_BWRAP_NETWORK_MARKERS = ("Network is unreachable",)


@functools.cache
def _fileops_source() -> str:
    return inspect.getsource(fileops)


def _helper_failure(outcome: ProcessOutcome) -> dict[str, Any]:
    return {
        "error_code": "EXECUTION_ERROR",
        "message": (
            f"File helper exited with {outcome.exit_code}: {outcome.stderr.strip()[-300:]}"
        ),
    }


class SandboxStrategy(ABC):
    """Runs a process under one isolation mechanism."""

    kind: StrategyKind

    def __init__(self, profile: SandboxProfile) -> None:
        self._profile = profile

    @property
    def profile(self) -> SandboxProfile:
        return self._profile

    def check_available(self) -> None:
        """Raise SandboxUnavailableError if the host primitive is missing."""

    @abstractmethod
    def wrap_command(self, argv: Sequence[str], cwd: Path) -> list[str]:
        """Return the argv that runs `argv` inside this strategy."""
        ...

    def detect_violation(self, outcome: ProcessOutcome) -> str | None:
        """Return a description if the outcome shows a blocked operation."""
        return None

    def _check_violation(self, outcome: ProcessOutcome) -> ProcessOutcome:
        violation = self.detect_violation(outcome)
        if violation is not None:
            raise SandboxViolationError(violation, outcome=outcome)
        return outcome

    async def run(
        self, argv: Sequence[str], *, cwd: Path | None = None, stdin: bytes | None = None
    ) -> ProcessOutcome:
        workdir = self._profile.resolve_path(cwd or self._profile.filesystem_scope)
        wrapped = self.wrap_command(argv, workdir)
        logger.debug(
            "sandbox_run", strategy=self.kind.value, argv=[arg[:80] for arg in wrapped[:12]]
        )
        outcome = await run_process(wrapped, cwd=workdir, stdin=stdin)
        return self._check_violation(outcome)

    @property
    def helper_python(self) -> str:
        """Interpreter that runs the file helper inside this strategy."""
        return sys.executable

    async def file_op(self, request: dict[str, Any]) -> dict[str, Any]:
        """Run one builtin file operation (see fileops) under this strategy."""
        outcome = await self.run(
            [self.helper_python, "-I", "-c", _fileops_source()],
            stdin=json.dumps(request).encode("utf-8"),
        )
        try:
            reply = json.loads(outcome.stdout)
        except ValueError:
            logger.warning(
                "file_helper_failed",
                strategy=self.kind.value,
                op=request.get("op"),
                exit_code=outcome.exit_code,
                stderr=outcome.stderr[-300:],
            )
            return _helper_failure(outcome)
        if not isinstance(reply, dict):
            return _helper_failure(outcome)
        return reply


class DirectStrategy(SandboxStrategy):
    """No isolation. Intended only for trusted operations."""

    kind = StrategyKind.none

    def wrap_command(self, argv: Sequence[str], cwd: Path) -> list[str]:
        return list(argv)

    async def file_op(self, request: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(fileops.perform, request)


def _seatbelt_profile(scope: Path, network_allowed: bool) -> str:
    rules = [
        "(version 1)",
        "(allow default)",
        "(deny file-write*)",
        "(allow file-write*"
        f' (subpath "{scope}")'
        ' (subpath "/private/tmp")'
        ' (subpath "/private/var/folders")'
        ' (literal "/dev/null"))',
    ]
    if not network_allowed:
        rules.append("(deny network*)")
    return "\n".join(rules)


class RestrictiveOSStrategy(SandboxStrategy):
    kind = StrategyKind.restrictive_os

    def __init__(self, profile: SandboxProfile, *, platform: str | None = None) -> None:
        super().__init__(profile)
        self._platform = platform or sys.platform

    @property
    def executable(self) -> str:
        return "sandbox-exec" if self._platform == "darwin" else "bwrap"

    def check_available(self) -> None:
        if not self._platform.startswith(("linux", "darwin")):
            raise SandboxUnavailableError(
                f"restrictive_os sandbox is not supported on {self._platform}"
            )
        if shutil.which(self.executable) is None:
            raise SandboxUnavailableError(
                f"restrictive_os sandbox requires '{self.executable}' on PATH"
            )

    def wrap_command(self, argv: Sequence[str], cwd: Path) -> list[str]:
        scope = str(self._profile.filesystem_scope)
        if self._platform == "darwin":
            profile = _seatbelt_profile(
                self._profile.filesystem_scope, self._profile.network_allowed
            )
            return ["sandbox-exec", "-p", profile, *argv]

        wrapped = [
            "bwrap",
            "--ro-bind", "/", "/",
            "--dev", "/dev",
            "--proc", "/proc",
            "--tmpfs", "/tmp",
            "--bind", scope, scope,
            "--chdir", str(cwd),
            "--die-with-parent",
            "--new-session",
            # killing bwrap then takes down everything the command forked
            "--unshare-pid",
        ]
        if not self._profile.network_allowed:
            wrapped.append("--unshare-net")
        return [*wrapped, "--", *argv]

    @property
    def violation_markers(self) -> tuple[str, ...]:
        if self._platform == "darwin":
            return _SEATBELT_MARKERS
        if self._profile.network_allowed:
            return _BWRAP_WRITE_MARKERS
        return _BWRAP_WRITE_MARKERS + _BWRAP_NETWORK_MARKERS

    def detect_violation(self, outcome: ProcessOutcome) -> str | None:
        if outcome.ok:
            return None
        for marker in self.violation_markers:
            if marker in outcome.stderr:
                return (
                    f"Blocked by {self.executable} sandbox ({marker}): "
                    f"{outcome.stderr.strip()[:300]}"
                )
        return None


class ContainerStrategy(SandboxStrategy):
    kind = StrategyKind.container

    def check_available(self) -> None:
        if shutil.which(self._profile.container_runtime) is None:
            raise SandboxUnavailableError(
                f"container sandbox requires '{self._profile.container_runtime}' on PATH"
            )

    def wrap_command(
        self, argv: Sequence[str], cwd: Path, *, container_name: str | None = None
    ) -> list[str]:
        scope = str(self._profile.filesystem_scope)
        wrapped = [
            self._profile.container_runtime,
            "run",
            "--rm",
            "-i",
            "--read-only",
            "--tmpfs", "/tmp",
            "--network", "bridge" if self._profile.network_allowed else "none",
            "-v", f"{scope}:{scope}:rw",
            "-w", str(cwd),
        ]
        if container_name:
            wrapped += ["--name", container_name]
        return [*wrapped, str(self._profile.container_image), *argv]

    def detect_violation(self, outcome: ProcessOutcome) -> str | None:
        if outcome.ok or "Read-only file system" not in outcome.stderr:
            return None
        return f"Write outside mounted scope blocked: {outcome.stderr.strip()[:300]}"

    @property
    def helper_python(self) -> str:
        return self._profile.container_python

    async def run(
        self, argv: Sequence[str], *, cwd: Path | None = None, stdin: bytes | None = None
    ) -> ProcessOutcome:
        workdir = self._profile.resolve_path(cwd or self._profile.filesystem_scope)
        name = f"agentgate-{uuid.uuid4().hex[:12]}"
        wrapped = self.wrap_command(argv, workdir, container_name=name)

        async def _kill_container() -> None:
            try:
                await run_process([self._profile.container_runtime, "kill", name])
            except OSError:
                logger.exception("container_kill_failed", container=name)

        logger.debug("sandbox_run", strategy=self.kind.value, container=name)
        try:
            outcome = await asyncio.wait_for(
                run_process(wrapped, stdin=stdin, on_cancel=_kill_container),
                timeout=self._profile.container_timeout_s,
            )
        except TimeoutError as e:
            raise ToolTimeoutError(
                f"Container round trip exceeded {self._profile.container_timeout_s}s"
            ) from e
        return self._check_violation(outcome)


def create_strategy(profile: SandboxProfile) -> SandboxStrategy:
    """Select the strategy for a session's profile."""
    strategies: dict[StrategyKind, type[SandboxStrategy]] = {
        StrategyKind.none: DirectStrategy,
        StrategyKind.restrictive_os: RestrictiveOSStrategy,
        StrategyKind.container: ContainerStrategy,
    }
    return strategies[profile.strategy](profile)
