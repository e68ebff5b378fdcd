"""Composition root and CLI entry point.

Wires settings into the registry, provider manager, sandbox, confirmation
gate and agent loop, then runs a console REPL. Ctrl-C during a turn cancels
that turn; Ctrl-C while idle (or EOF) exits.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from dataclasses import dataclass
from pathlib import Path

import structlog
from pydantic import ValidationError

from agentgate.agent.agent import AgentLoop, LoopState
from agentgate.agent.confirmation import ConfirmationGate
from agentgate.agent.model_client import ModelClient, OpenAICompatModelClient
from agentgate.agent.presentation import PresentationSink
from agentgate.channels.console import ConsoleSink
from agentgate.config.settings import SandboxSettings, Settings, get_settings
from agentgate.infra.errors import SandboxUnavailableError
from agentgate.infra.logging import setup_logging
from agentgate.providers.manager import ProviderManager
from agentgate.sandbox.executor import SandboxExecutor
from agentgate.sandbox.profile import SandboxProfile
from agentgate.tools.builtins import register_builtins
from agentgate.tools.registry import ToolRegistry

logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    registry: ToolRegistry
    providers: ProviderManager
    sandbox: SandboxExecutor
    agent: AgentLoop


def build_runtime(
    settings: Settings,
    sink: PresentationSink,
    *,
    model_client: ModelClient | None = None,
) -> Runtime:
    """Build all components for one session.

    Raises SandboxUnavailableError when the selected strategy's host
    primitive is missing.
    """
    registry = ToolRegistry()
    register_builtins(registry)

    profile = SandboxProfile.from_settings(settings.sandbox)
    sandbox = SandboxExecutor(profile)

    providers = ProviderManager(
        registry,
        settings.providers.servers,
        collision_policy=settings.providers.collision_policy,
    )
    gate = ConfirmationGate(
        sink,
        granularity=settings.approval.granularity,
        prompt_timeout_s=settings.approval.prompt_timeout_s,
    )
    if model_client is None:
        model_client = OpenAICompatModelClient(
            api_key=settings.openai.api_key,
            base_url=settings.openai.base_url,
            max_retries=settings.openai.max_retries,
        )
    agent = AgentLoop(
        model_client,
        registry,
        sandbox,
        sink,
        providers=providers,
        gate=gate,
        model=settings.openai.model,
        max_iterations=settings.agent.max_iterations,
        tool_timeout_s=settings.agent.tool_timeout_s,
        max_parallel_tools=settings.agent.max_parallel_tools,
        max_output_chars=settings.agent.max_output_chars,
        system_prompt=settings.agent.system_prompt,
    )
    return Runtime(
        settings=settings,
        registry=registry,
        providers=providers,
        sandbox=sandbox,
        agent=agent,
    )


async def run_console(settings: Settings) -> int:
    sink = ConsoleSink()
    runtime = build_runtime(settings, sink)
    session = runtime.agent.new_session()
    loop = asyncio.get_running_loop()
    turn: asyncio.Task | None = None

    def _on_sigint() -> None:
        if turn is not None and not turn.done():
            logger.info("turn_cancel_requested", session_id=session.id)
            session.cancel()
        else:
            sink.close_input()

    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, _on_sigint)

    async with runtime.providers:
        failures = await runtime.providers.connect_all()
        for server_id, error in failures.items():
            print(f"[provider {server_id} unavailable: {error}]")
        sink.start()
        print(f"agentgate: {len(runtime.registry.list())} tools, session {session.id}")
        while True:
            line = await sink.read_line("\nyou> ")
            if line is None:
                break
            text = line.strip()
            if not text:
                continue
            if text in ("/exit", "/quit"):
                break
            if text == "/tools":
                for d in runtime.registry.list():
                    print(f"  {d.name} [{d.mutability.value}, {d.source}]")
                continue

            turn = asyncio.create_task(runtime.agent.run_turn(session, text))
            outcome = await turn
            turn = None
            if outcome.state == LoopState.terminated:
                print(f"\n[turn ended: {outcome.reason}]")

    with contextlib.suppress(NotImplementedError):
        loop.remove_signal_handler(signal.SIGINT)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="agentgate", description="Interactive tool-using agent with approval and sandboxing"
    )
    parser.add_argument(
        "--workspace", type=Path, default=None,
        help="Filesystem scope for tools (default: SANDBOX_FILESYSTEM_SCOPE or cwd)",
    )
    parser.add_argument(
        "--sandbox", choices=["none", "restrictive_os", "container"], default=None,
        help="Sandbox strategy (default: SANDBOX_STRATEGY or none)",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)

    overrides: dict[str, object] = {}
    if args.workspace is not None:
        overrides["filesystem_scope"] = args.workspace
    if args.sandbox is not None:
        overrides["strategy"] = args.sandbox

    try:
        settings = get_settings()
        if overrides:
            settings.sandbox = SandboxSettings.model_validate(
                {**settings.sandbox.model_dump(), **overrides}
            )
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2

    setup_logging(
        json_output=settings.log.json_output,
        log_level=args.log_level or settings.log.level,
    )

    try:
        return asyncio.run(run_console(settings))
    except SandboxUnavailableError as e:
        print(f"Sandbox unavailable: {e}", file=sys.stderr)
        return 3


if __name__ == "__main__":
    sys.exit(main())
