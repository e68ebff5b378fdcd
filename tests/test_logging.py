from __future__ import annotations

import io
import json

import pytest
import structlog

from agentgate.infra.logging import setup_logging


@pytest.fixture(autouse=True)
def _restore_structlog():
    yield
    structlog.reset_defaults()


def test_json_lines_go_to_stream():
    out = io.StringIO()
    setup_logging(json_output=True, log_level="INFO", stream=out)

    structlog.get_logger().info("tool_executed", tool_name="read_file")

    record = json.loads(out.getvalue())
    assert record["event"] == "tool_executed"
    assert record["tool_name"] == "read_file"
    assert record["level"] == "info"


def test_level_filters_debug():
    out = io.StringIO()
    setup_logging(json_output=True, log_level="warning", stream=out)

    structlog.get_logger().debug("sandbox_run")

    assert out.getvalue() == ""
