from __future__ import annotations

import json
from typing import Any

import structlog
from jsonschema import SchemaError
from jsonschema.validators import validator_for

from agentgate.infra.errors import InvalidArgumentsError

logger = structlog.get_logger()


def parse_arguments(raw: str | dict | None) -> dict[str, Any]:
    """Parse tool call arguments as produced by the model.

    Raises InvalidArgumentsError on non-JSON or non-object input. An empty
    string means no arguments.
    """
    if isinstance(raw, dict):
        return raw
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise InvalidArgumentsError(f"JSON parse error: {e}") from e
    if not isinstance(parsed, dict):
        raise InvalidArgumentsError(f"Expected dict, got {type(parsed).__name__}")
    return parsed


def validate_arguments(schema: dict[str, Any], arguments: dict[str, Any]) -> None:
    """Validate arguments against a tool's JSON Schema.

    Raises InvalidArgumentsError listing every violation. A schema that is
    itself invalid is logged and skipped.
    """
    if not schema:
        return
    cls = validator_for(schema)
    try:
        cls.check_schema(schema)
    except SchemaError as e:
        logger.warning("tool_schema_invalid", error=e.message)
        return
    errors = sorted(cls(schema).iter_errors(arguments), key=lambda e: list(e.path))
    if errors:
        details = "; ".join(
            f"{'/'.join(str(p) for p in err.path) or '<root>'}: {err.message}"
            for err in errors
        )
        raise InvalidArgumentsError(f"Arguments do not match schema: {details}")


def render_arguments(arguments: dict[str, Any], *, max_chars: int = 500) -> str:
    """Human-readable rendering of arguments for approval prompts."""
    text = json.dumps(arguments, ensure_ascii=False, indent=2, sort_keys=True)
    if len(text) > max_chars:
        return text[:max_chars] + " …"
    return text
