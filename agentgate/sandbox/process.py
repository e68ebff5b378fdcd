"""Async subprocess runner shared by all sandbox strategies.

Each child leads its own process group. Cancelling the awaiting task
kills the whole group, so processes the child forked cannot keep the
output pipes open, and the CancelledError propagates once the child is
reaped.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger()

_POSIX = hasattr(os, "killpg")


@dataclass(frozen=True)
class ProcessOutcome:
    argv: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _kill_tree(proc: asyncio.subprocess.Process) -> None:
    if _POSIX:
        try:
            # the child's pid is its process group id (start_new_session)
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            pass
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()


async def run_process(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    stdin: bytes | None = None,
    on_cancel: Callable[[], Awaitable[None]] | None = None,
) -> ProcessOutcome:
    """Run argv to completion and capture its output.

    on_cancel runs after the local child is killed, for strategies whose
    real workload lives outside the child (e.g. a container).
    """
    start = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
        start_new_session=_POSIX,
    )
    try:
        stdout, stderr = await proc.communicate(stdin)
    except asyncio.CancelledError:
        _kill_tree(proc)
        await proc.wait()
        logger.info("process_killed", argv0=argv[0], pid=proc.pid)
        if on_cancel is not None:
            await on_cancel()
        raise

    return ProcessOutcome(
        argv=tuple(argv),
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        duration_ms=int((time.monotonic() - start) * 1000),
    )
