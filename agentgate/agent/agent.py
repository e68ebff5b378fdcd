from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from agentgate.agent.confirmation import ConfirmationGate
from agentgate.agent.model_client import ContentDelta, ModelClient, ToolCallsComplete
from agentgate.infra.errors import (
    InvalidArgumentsError,
    ModelClientError,
    ToolCancelledError,
    ToolNotFoundError,
    ToolTimeoutError,
    UserDeniedError,
)
from agentgate.session.models import (
    FinalAnswer,
    ModelResponse,
    Session,
    ToolCallBatch,
    ToolCallRequest,
    Turn,
)
from agentgate.tools.arguments import parse_arguments, validate_arguments
from agentgate.tools.executable import ToolDispatcher
from agentgate.tools.result import FailureKind, ToolResult

if TYPE_CHECKING:
    from agentgate.agent.presentation import PresentationSink
    from agentgate.providers.manager import ProviderManager
    from agentgate.sandbox.executor import SandboxExecutor
    from agentgate.tools.registry import RegistrySnapshot, ToolRegistry

logger = structlog.get_logger()

T = TypeVar("T")

MAX_TOOL_ITERATIONS = 10

TURN_LIMIT_MESSAGE = "I've reached the maximum number of tool calls. Please try again."

TranscriptWindow = Callable[[list[dict[str, Any]]], list[dict[str, Any]]]


class LoopState(StrEnum):
    awaiting_model = "awaiting_model"
    interpreting_response = "interpreting_response"
    executing_tools = "executing_tools"
    done = "done"
    terminated = "terminated"


class TerminationReason(StrEnum):
    turn_limit = "turn_limit"
    model_error = "model_error"
    cancelled = "cancelled"


@dataclass(frozen=True)
class TurnOutcome:
    state: LoopState
    text: str = ""
    reason: TerminationReason | None = None
    message: str = ""
    iterations: int = 0


class _TurnCancelled(Exception):
    pass


class AgentLoop:
    """Core agent loop with tool calling support.

    Flow: user msg → LLM → (tool_calls → gate → sandbox | provider → LLM)* → text

    States: awaiting_model → interpreting_response → done | executing_tools →
    awaiting_model ... | terminated. A turn terminates on the iteration
    ceiling, a ModelClientError, or session cancellation. Failures local to
    one tool invocation become failed ToolResults fed back to the model.
    """

    def __init__(
        self,
        model_client: ModelClient,
        registry: ToolRegistry,
        sandbox: SandboxExecutor,
        sink: PresentationSink,
        *,
        providers: ProviderManager | None = None,
        gate: ConfirmationGate | None = None,
        model: str = "gpt-4o-mini",
        max_iterations: int = MAX_TOOL_ITERATIONS,
        tool_timeout_s: float = 60.0,
        max_parallel_tools: int = 4,
        max_output_chars: int = 16_000,
        system_prompt: str | None = None,
        window: TranscriptWindow | None = None,
    ) -> None:
        self._model_client = model_client
        self._registry = registry
        self._sandbox = sandbox
        self._sink = sink
        self._dispatcher = ToolDispatcher(sandbox, providers)
        self._gate = gate or ConfirmationGate(sink)
        self._model = model
        self._max_iterations = max_iterations
        self._tool_timeout_s = tool_timeout_s
        self._max_parallel_tools = max_parallel_tools
        self._max_output_chars = max_output_chars
        self._system_prompt = system_prompt
        self._window = window
        self._state = LoopState.done

    @property
    def state(self) -> LoopState:
        return self._state

    def new_session(self) -> Session:
        return Session(profile=self._sandbox.profile)

    def _transition(self, state: LoopState, session: Session) -> None:
        logger.debug("loop_state", old=self._state.value, new=state.value, session_id=session.id)
        self._state = state

    async def run_turn(self, session: Session, content: str) -> TurnOutcome:
        """Drive one conversational turn to done or terminated."""
        session.append_user(content)
        with structlog.contextvars.bound_contextvars(session_id=session.id):
            try:
                return await self._run(session)
            finally:
                session.reset_cancel()

    async def _run(self, session: Session) -> TurnOutcome:
        for iteration in range(self._max_iterations):
            if session.cancelled:
                return self._terminate(session, TerminationReason.cancelled, iteration)

            self._transition(LoopState.awaiting_model, session)
            # One snapshot per iteration: the tools shown to the model are the
            # tools the batch resolves against.
            snapshot = self._registry.snapshot()
            turn_index = session.next_turn_index()
            messages = self._build_messages(session)

            try:
                response = await self._until_cancelled(
                    session, self._await_model(messages, snapshot, turn_index)
                )
            except ModelClientError as e:
                logger.error("model_client_failed", error=str(e), turn=turn_index)
                await self._sink.render_text(f"\n[model error] {e}\n")
                return self._terminate(
                    session, TerminationReason.model_error, iteration + 1, message=str(e)
                )
            except _TurnCancelled:
                return self._terminate(session, TerminationReason.cancelled, iteration + 1)

            self._transition(LoopState.interpreting_response, session)
            if isinstance(response, FinalAnswer):
                session.append_turn(Turn(turn_index, response))
                self._transition(LoopState.done, session)
                logger.info("response_complete", chars=len(response.text), turn=turn_index)
                return TurnOutcome(LoopState.done, text=response.text, iterations=iteration + 1)

            self._transition(LoopState.executing_tools, session)
            results, cancelled = await self._execute_batch(session, response, snapshot)
            session.append_turn(Turn(turn_index, response, tuple(results)))
            logger.info(
                "tool_call_iteration",
                iteration=iteration + 1,
                tools_called=len(response),
                failed=sum(1 for r in results if not r.ok),
            )
            if cancelled:
                return self._terminate(session, TerminationReason.cancelled, iteration + 1)

        # Safety: max iterations
        logger.warning("max_tool_iterations", max=self._max_iterations)
        await self._sink.render_text(TURN_LIMIT_MESSAGE)
        return self._terminate(
            session,
            TerminationReason.turn_limit,
            self._max_iterations,
            message=TURN_LIMIT_MESSAGE,
        )

    def _terminate(
        self,
        session: Session,
        reason: TerminationReason,
        iterations: int,
        *,
        message: str = "",
    ) -> TurnOutcome:
        self._transition(LoopState.terminated, session)
        logger.info("turn_terminated", reason=reason.value, iterations=iterations)
        return TurnOutcome(
            LoopState.terminated, reason=reason, message=message, iterations=iterations
        )

    def _build_messages(self, session: Session) -> list[dict[str, Any]]:
        history = session.to_messages(max_output_chars=self._max_output_chars)
        if self._window is not None:
            history = self._window(history)
        if self._system_prompt:
            return [{"role": "system", "content": self._system_prompt}, *history]
        return history

    async def _until_cancelled(self, session: Session, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the session is cancelled first."""
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(session.wait_cancelled())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise _TurnCancelled()

    async def _await_model(
        self,
        messages: list[dict[str, Any]],
        snapshot: RegistrySnapshot,
        turn_index: int,
    ) -> ModelResponse:
        tools = snapshot.tools_schema() or None
        collected_text = ""
        tool_calls: list[dict[str, str]] | None = None

        async for event in self._model_client.chat_stream_with_tools(
            messages, self._model, tools=tools
        ):
            if isinstance(event, ContentDelta):
                await self._sink.render_text(event.text)
                collected_text += event.text
            elif isinstance(event, ToolCallsComplete):
                tool_calls = event.tool_calls

        if not tool_calls:
            return FinalAnswer(collected_text)

        requests = tuple(
            ToolCallRequest(
                id=tc.get("id") or f"call_{turn_index}_{i}",
                tool_name=tc.get("name", ""),
                raw_arguments=tc.get("arguments") or "",
                originating_turn=turn_index,
            )
            for i, tc in enumerate(tool_calls)
        )
        try:
            return ToolCallBatch(requests=requests, text=collected_text)
        except ValueError as e:
            raise ModelClientError(f"Malformed model response: {e}") from e

    async def _execute_batch(
        self,
        session: Session,
        batch: ToolCallBatch,
        snapshot: RegistrySnapshot,
    ) -> tuple[list[ToolResult], bool]:
        """Run every request of a batch; returns (results in request order, cancelled)."""
        semaphore = asyncio.Semaphore(self._max_parallel_tools)
        tasks = [
            asyncio.create_task(
                self._invoke(session, request, snapshot, semaphore),
                name=f"tool:{request.tool_name}:{request.id}",
            )
            for request in batch.requests
        ]
        waiter = asyncio.ensure_future(session.wait_cancelled())
        pending: set[asyncio.Task] = set(tasks)
        try:
            while pending and not waiter.done():
                done, _ = await asyncio.wait(
                    {*pending, waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                pending -= done
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        finally:
            waiter.cancel()

        if pending:
            logger.warning("batch_cancelled", pending=len(pending), total=len(tasks))
            for task in pending:
                task.cancel()
            await asyncio.wait(pending)

        results: list[ToolResult] = []
        for request, task in zip(batch.requests, tasks, strict=True):
            if task.cancelled():
                result = ToolResult.from_error(
                    request.id,
                    request.tool_name,
                    ToolCancelledError("Tool invocation cancelled by operator"),
                )
                await self._sink.render_tool_result(result)
            elif task.exception() is not None:
                logger.error(
                    "tool_invocation_crashed",
                    tool_name=request.tool_name,
                    call_id=request.id,
                    exc_info=task.exception(),
                )
                result = ToolResult.failure(
                    request.id,
                    request.tool_name,
                    FailureKind.EXECUTION_ERROR,
                    f"Tool {request.tool_name} failed",
                )
            else:
                result = task.result()
            results.append(result)
        return results, bool(pending) or session.cancelled

    async def _invoke(
        self,
        session: Session,
        request: ToolCallRequest,
        snapshot: RegistrySnapshot,
        semaphore: asyncio.Semaphore,
    ) -> ToolResult:
        """Resolve, validate, authorize and run one request.

        Never raises except CancelledError.
        """
        entry = snapshot.get(request.tool_name)
        if entry is None:
            logger.warning("unknown_tool", tool_name=request.tool_name, call_id=request.id)
            result = ToolResult.from_error(
                request.id, request.tool_name, ToolNotFoundError(request.tool_name)
            )
            await self._sink.render_tool_result(result)
            return result

        try:
            arguments = parse_arguments(request.raw_arguments)
            validate_arguments(entry.descriptor.parameters, arguments)
        except InvalidArgumentsError as e:
            logger.warning(
                "tool_call_args_invalid",
                tool_name=request.tool_name,
                error=str(e),
                raw_args=request.raw_arguments[:200],
            )
            result = ToolResult.from_error(request.id, request.tool_name, e)
            await self._sink.render_tool_result(result)
            return result

        await self._sink.render_tool_start(request.id, request.tool_name, arguments)

        decision = await self._gate.authorize(session, request, entry.descriptor, arguments)
        if not decision.approved:
            logger.info(
                "tool_denied", tool_name=request.tool_name, call_id=request.id,
                reason=decision.reason,
            )
            result = ToolResult.from_error(
                request.id,
                request.tool_name,
                UserDeniedError(f"User denied tool call ({decision.reason})"),
            )
            await self._sink.render_tool_result(result)
            return result

        async with semaphore:
            start = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    self._dispatcher.dispatch(
                        entry, arguments, call_id=request.id, session_id=session.id
                    ),
                    timeout=self._tool_timeout_s,
                )
            except TimeoutError:
                logger.warning(
                    "tool_timeout",
                    tool_name=request.tool_name,
                    call_id=request.id,
                    timeout_s=self._tool_timeout_s,
                )
                result = ToolResult.from_error(
                    request.id,
                    request.tool_name,
                    ToolTimeoutError(f"Tool exceeded its {self._tool_timeout_s}s deadline"),
                    duration_ms=int((time.monotonic() - start) * 1000),
                )

        await self._sink.render_tool_result(result)
        return result
