"""Agent loop driving builtin and external tools in one batch."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from conftest import FakeModelClient, RecordingSink

from agentgate.agent.agent import AgentLoop, LoopState
from agentgate.agent.model_client import ContentDelta, ToolCallsComplete
from agentgate.config.settings import ServerConfig
from agentgate.providers.manager import ProviderManager
from agentgate.session.approvals import ApprovalScope
from agentgate.tools.builtins import register_builtins

pytestmark = pytest.mark.integration

FAKE_PROVIDER = Path(__file__).resolve().parent.parent / "fixtures" / "fake_provider.py"


def _calls(*specs: tuple[str, str, dict]) -> ToolCallsComplete:
    return ToolCallsComplete(
        [{"id": i, "name": n, "arguments": json.dumps(a)} for i, n, a in specs]
    )


@pytest.mark.asyncio
async def test_mixed_batch_and_provider_crash(registry, sandbox, session):
    register_builtins(registry, allow_commands=False)
    config = ServerConfig(server_id="srv", command=[sys.executable, str(FAKE_PROVIDER)])
    model = FakeModelClient(
        [
            _calls(
                ("c1", "read_file", {"path": "notes.txt"}),
                ("c2", "echo", {"msg": "hi"}),
            )
        ],
        [_calls(("c3", "crash", {}))],
        [_calls(("c4", "echo", {}))],
        [ContentDelta("done")],
    )
    sink = RecordingSink(default=ApprovalScope.once)

    async with ProviderManager(registry, [config]) as manager:
        assert await manager.connect_all() == {}
        agent = AgentLoop(model, registry, sandbox, sink, providers=manager)

        outcome = await agent.run_turn(session, "go")

    assert outcome.state == LoopState.done
    first, crashed, after = (t.results for t in session.turns[:3])
    assert first[0].return_value["content"] == "hello"
    assert first[1].return_value == {"echo": {"msg": "hi"}}
    assert crashed[0].error_code == "PROVIDER_UNAVAILABLE"
    # the crashed provider's tools are gone from the next snapshot
    assert after[0].error_code == "UNKNOWN_TOOL"
    offered = {t["function"]["name"] for t in model.calls[2]["tools"]}
    assert offered == {"list_files", "read_file", "write_file", "delete_file"}
