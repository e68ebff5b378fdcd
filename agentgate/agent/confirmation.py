"""Confirmation gate: the approval contract for tool invocations.

ReadOnly tools are auto-approved. Mutating tools are approved by the most
recent matching cached decision in the session's ApprovalLog, or else by
prompting the operator through the PresentationSink. Prompts are issued
one at a time; the cache is re-checked after waiting for the prompt slot so
an "always" granted to a sibling call in the same batch is honoured.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

import structlog

from agentgate.agent.presentation import ApprovalPrompt
from agentgate.session.approvals import ApprovalScope, ConfirmationDecision, exact_pattern
from agentgate.tools.arguments import render_arguments
from agentgate.tools.base import MutabilityClass

if TYPE_CHECKING:
    from agentgate.agent.presentation import PresentationSink
    from agentgate.session.models import Session, ToolCallRequest
    from agentgate.tools.base import ToolDescriptor

logger = structlog.get_logger()


@dataclass(frozen=True)
class GateDecision:
    approved: bool
    prompted: bool = False
    scope: ApprovalScope | None = None
    reason: str = ""


class ConfirmationGate:
    def __init__(
        self,
        sink: PresentationSink,
        *,
        granularity: Literal["tool", "arguments"] = "tool",
        prompt_timeout_s: float | None = None,
    ) -> None:
        self._sink = sink
        self._granularity = granularity
        self._prompt_timeout_s = prompt_timeout_s
        self._prompt_lock = asyncio.Lock()

    async def authorize(
        self,
        session: Session,
        request: ToolCallRequest,
        descriptor: ToolDescriptor,
        arguments: dict[str, Any],
    ) -> GateDecision:
        """Decide whether this invocation may run.

        Raises CancelledError (after retracting any pending prompt) when the
        enclosing turn is cancelled.
        """
        if descriptor.mutability == MutabilityClass.read_only:
            return GateDecision(approved=True, reason="read_only")

        cached = self._cached(session, descriptor.name, arguments, request.id)
        if cached is not None:
            return cached

        async with self._prompt_lock:
            cached = self._cached(session, descriptor.name, arguments, request.id)
            if cached is not None:
                return cached
            return await self._prompt(session, request, descriptor, arguments)

    def _cached(
        self, session: Session, tool_name: str, arguments: dict[str, Any], call_id: str
    ) -> GateDecision | None:
        record = session.approvals.find(tool_name, arguments)
        if record is None:
            return None
        approved = record.scope == ApprovalScope.session_always
        logger.info(
            "approval_cached",
            tool_name=tool_name,
            call_id=call_id,
            scope=record.scope.value,
            session_id=session.id,
        )
        return GateDecision(
            approved=approved,
            scope=record.scope,
            reason="cached " + record.scope.value,
        )

    async def _prompt(
        self,
        session: Session,
        request: ToolCallRequest,
        descriptor: ToolDescriptor,
        arguments: dict[str, Any],
    ) -> GateDecision:
        prompt = ApprovalPrompt(
            call_id=request.id,
            tool_name=descriptor.name,
            arguments=arguments,
            rendered_arguments=render_arguments(arguments),
            source=str(descriptor.source),
        )
        logger.info(
            "approval_prompted",
            tool_name=descriptor.name,
            call_id=request.id,
            session_id=session.id,
        )
        try:
            if self._prompt_timeout_s is None:
                reply = await self._sink.prompt_approval(prompt)
            else:
                reply = await asyncio.wait_for(
                    self._sink.prompt_approval(prompt), timeout=self._prompt_timeout_s
                )
        except asyncio.CancelledError:
            logger.info("approval_retracted", tool_name=descriptor.name, call_id=request.id)
            await self._sink.retract_approval(prompt)
            raise
        except TimeoutError:
            logger.warning(
                "approval_timeout",
                tool_name=descriptor.name,
                call_id=request.id,
                timeout_s=self._prompt_timeout_s,
            )
            await self._sink.retract_approval(prompt)
            return GateDecision(
                approved=False,
                prompted=True,
                scope=ApprovalScope.deny_once,
                reason="approval prompt timed out",
            )

        if reply.scope.cached:
            pattern = reply.argument_pattern
            if pattern is None and self._granularity == "arguments":
                pattern = exact_pattern(arguments)
            session.approvals.append(
                ConfirmationDecision(
                    scope=reply.scope,
                    tool_name=descriptor.name,
                    argument_pattern=pattern,
                )
            )

        logger.info(
            "approval_decided",
            tool_name=descriptor.name,
            call_id=request.id,
            scope=reply.scope.value,
            session_id=session.id,
        )
        return GateDecision(
            approved=reply.scope.approves,
            prompted=True,
            scope=reply.scope,
            reason=reply.scope.value,
        )
