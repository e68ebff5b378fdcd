"""Append-only per-session approval log.

Records are never mutated; a lookup returns the most recent cached record
matching the tool name (and argument pattern, when one was recorded).
Appends happen from the confirmation gate only; readers see an immutable
tuple, so lookups during a concurrent batch never observe a partial append.
"""

from __future__ import annotations

import glob
import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from fnmatch import fnmatchcase
from typing import Any


class ApprovalScope(StrEnum):
    once = "once"
    session_always = "session_always"
    session_deny = "session_deny"
    deny_once = "deny_once"

    @property
    def approves(self) -> bool:
        return self in (ApprovalScope.once, ApprovalScope.session_always)

    @property
    def cached(self) -> bool:
        """Single-call scopes are not stored in the log."""
        return self in (ApprovalScope.session_always, ApprovalScope.session_deny)


def stringify_argument(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


def exact_pattern(arguments: Mapping[str, Any]) -> dict[str, str]:
    """Argument pattern matching exactly these argument values."""
    return {k: glob.escape(stringify_argument(v)) for k, v in arguments.items()}


@dataclass(frozen=True)
class ConfirmationDecision:
    scope: ApprovalScope
    tool_name: str
    # argument name -> fnmatch pattern; None matches any arguments
    argument_pattern: Mapping[str, str] | None = None
    granted_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def matches(self, tool_name: str, arguments: Mapping[str, Any]) -> bool:
        if tool_name != self.tool_name:
            return False
        if self.argument_pattern is None:
            return True
        for key, pattern in self.argument_pattern.items():
            if key not in arguments:
                return False
            if not fnmatchcase(stringify_argument(arguments[key]), pattern):
                return False
        return True


class ApprovalLog:
    def __init__(self) -> None:
        self._records: tuple[ConfirmationDecision, ...] = ()

    def append(self, decision: ConfirmationDecision) -> None:
        if not decision.scope.cached:
            raise ValueError(f"Scope '{decision.scope}' is not cacheable")
        self._records = (*self._records, decision)

    def find(self, tool_name: str, arguments: Mapping[str, Any]) -> ConfirmationDecision | None:
        """Most recent cached decision matching this invocation, or None."""
        for record in reversed(self._records):
            if record.matches(tool_name, arguments):
                return record
        return None

    def __iter__(self) -> Iterator[ConfirmationDecision]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)
