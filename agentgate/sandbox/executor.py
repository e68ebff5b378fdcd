from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import structlog

from agentgate.infra.errors import SandboxViolationError, ToolError
from agentgate.sandbox.strategies import SandboxStrategy, create_strategy
from agentgate.tools.context import ToolContext
from agentgate.tools.result import FailureKind, ToolResult

if TYPE_CHECKING:
    from agentgate.sandbox.profile import SandboxProfile
    from agentgate.tools.base import BaseTool

logger = structlog.get_logger()


class SandboxExecutor:
    """Runs builtin tool logic under the session's fixed SandboxProfile.

    Every strategy yields the same ToolResult shape. Failures local to the
    invocation become failed results; cancellation propagates to the caller.
    """

    def __init__(
        self,
        profile: SandboxProfile,
        *,
        strategy: SandboxStrategy | None = None,
        check_available: bool = True,
    ) -> None:
        self._profile = profile
        self._strategy = strategy or create_strategy(profile)
        if check_available:
            self._strategy.check_available()
        logger.info(
            "sandbox_ready",
            strategy=self._strategy.kind.value,
            filesystem_scope=str(profile.filesystem_scope),
            network_policy=profile.network_policy.value,
        )

    @property
    def profile(self) -> SandboxProfile:
        return self._profile

    @property
    def strategy(self) -> SandboxStrategy:
        return self._strategy

    async def execute(
        self,
        tool: BaseTool,
        arguments: dict,
        *,
        call_id: str,
        session_id: str = "main",
    ) -> ToolResult:
        context = ToolContext(
            profile=self._profile,
            strategy=self._strategy,
            session_id=session_id,
            call_id=call_id,
        )
        start = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            output = await tool.execute(arguments, context)
        except SandboxViolationError as e:
            blocked = e.outcome
            logger.warning(
                "sandbox_violation",
                audit=True,
                tool_name=tool.name,
                call_id=call_id,
                session_id=session_id,
                strategy=self._strategy.kind.value,
                detail=str(e),
            )
            if blocked is None:
                return ToolResult.from_error(call_id, tool.name, e, duration_ms=_elapsed())
            return ToolResult.failure(
                call_id,
                tool.name,
                FailureKind.SANDBOX_VIOLATION,
                str(e),
                duration_ms=_elapsed(),
                stdout=blocked.stdout,
                stderr=blocked.stderr,
                exit_code=blocked.exit_code,
            )
        except ToolError as e:
            logger.warning("tool_failed", tool_name=tool.name, call_id=call_id, code=e.code)
            return ToolResult.from_error(call_id, tool.name, e, duration_ms=_elapsed())
        except Exception:
            logger.exception("tool_execution_failed", tool_name=tool.name, call_id=call_id)
            return ToolResult.failure(
                call_id,
                tool.name,
                FailureKind.EXECUTION_ERROR,
                f"Tool {tool.name} failed",
                duration_ms=_elapsed(),
            )

        return self._build_result(tool.name, call_id, output, context, _elapsed())

    @staticmethod
    def _build_result(
        tool_name: str,
        call_id: str,
        output: Any,
        context: ToolContext,
        duration_ms: int,
    ) -> ToolResult:
        stdout = "".join(p.stdout for p in context.processes)
        stderr = "".join(p.stderr for p in context.processes)
        exit_code = context.processes[-1].exit_code if context.processes else None

        if isinstance(output, dict) and output.get("error_code"):
            return ToolResult.failure(
                call_id,
                tool_name,
                str(output["error_code"]),
                str(output.get("message", "")),
                duration_ms=duration_ms,
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
            )

        logger.info("tool_executed", tool_name=tool_name, call_id=call_id, duration_ms=duration_ms)
        return ToolResult(
            call_id=call_id,
            tool_name=tool_name,
            ok=True,
            return_value=output,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration_ms=duration_ms,
        )
