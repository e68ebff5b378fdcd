from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from agentgate.infra.errors import SandboxViolationError

if TYPE_CHECKING:
    from agentgate.config.settings import SandboxSettings


class StrategyKind(StrEnum):
    none = "none"
    restrictive_os = "restrictive_os"
    container = "container"


class NetworkPolicy(StrEnum):
    deny = "deny"
    allow = "allow"


@dataclass(frozen=True)
class SandboxProfile:
    """Isolation strategy and resource scope for one session.

    Built once at session start. Switching strategy requires a new process.
    """

    strategy: StrategyKind
    filesystem_scope: Path
    network_policy: NetworkPolicy = NetworkPolicy.deny
    container_image: str | None = None
    container_runtime: str = "docker"
    container_timeout_s: float = 120.0
    container_python: str = "python3"

    def __post_init__(self) -> None:
        object.__setattr__(self, "filesystem_scope", Path(self.filesystem_scope).resolve())
        if self.strategy == StrategyKind.container and not self.container_image:
            raise ValueError("container strategy requires container_image")

    @classmethod
    def from_settings(cls, settings: SandboxSettings) -> SandboxProfile:
        return cls(
            strategy=StrategyKind(settings.strategy),
            filesystem_scope=settings.filesystem_scope,
            network_policy=NetworkPolicy(settings.network_policy),
            container_image=settings.container_image,
            container_runtime=settings.container_runtime,
            container_timeout_s=settings.container_timeout_s,
            container_python=settings.container_python,
        )

    @property
    def network_allowed(self) -> bool:
        return self.network_policy == NetworkPolicy.allow

    def resolve_path(self, raw_path: str | Path) -> Path:
        """Resolve a path against filesystem_scope (follows symlinks).

        Raises SandboxViolationError when the resolved path escapes the scope.
        """
        candidate = Path(raw_path)
        if not candidate.is_absolute():
            candidate = self.filesystem_scope / candidate
        target = candidate.resolve()
        if not target.is_relative_to(self.filesystem_scope):
            raise SandboxViolationError(
                f"Path '{raw_path}' escapes sandbox scope {self.filesystem_scope}"
            )
        return target
