"""structlog setup. setup_logging() runs once, from the CLI entry point."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

import structlog


def _renderer(json_output: bool) -> structlog.types.Processor:
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def setup_logging(
    *, json_output: bool = True, log_level: str = "INFO", stream: TextIO | None = None
) -> None:
    """Route agentgate's logs to stderr (or `stream`).

    stdout belongs to the console channel, so log lines never interleave
    with streamed model text or approval prompts.
    """
    level = logging.getLevelNamesMapping()[log_level.upper()]
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(json_output),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )
