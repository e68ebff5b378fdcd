from __future__ import annotations

import json
from pathlib import Path
from typing import Literal, Self

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env once at module import; every BaseSettings subclass sees the env vars
load_dotenv()


class OpenAISettings(BaseSettings):
    """OpenAI API settings. Env vars prefixed with OPENAI_."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: str  # required, fail fast if missing
    model: str = "gpt-4o-mini"
    base_url: str | None = None
    max_retries: int = Field(3, ge=0)


class AgentSettings(BaseSettings):
    """Agent loop limits. Env vars prefixed with AGENT_."""

    model_config = SettingsConfigDict(env_prefix="AGENT_")

    max_iterations: int = Field(10, gt=0)
    tool_timeout_s: float = Field(60.0, gt=0)
    max_parallel_tools: int = Field(4, ge=1)
    max_output_chars: int = Field(16_000, ge=256)
    system_prompt: str | None = None


class ApprovalSettings(BaseSettings):
    """Confirmation gate policy. Env vars prefixed with APPROVAL_."""

    model_config = SettingsConfigDict(env_prefix="APPROVAL_")

    granularity: Literal["tool", "arguments"] = "tool"
    prompt_timeout_s: float | None = Field(None, gt=0)


class SandboxSettings(BaseSettings):
    """Sandbox selection, read once per session. Env vars prefixed with SANDBOX_."""

    model_config = SettingsConfigDict(env_prefix="SANDBOX_")

    strategy: Literal["none", "restrictive_os", "container"] = "none"
    filesystem_scope: Path = Field(default_factory=Path.cwd)
    network_policy: Literal["deny", "allow"] = "deny"
    container_image: str | None = None
    container_runtime: str = "docker"
    container_timeout_s: float = Field(120.0, gt=0)
    # interpreter inside the image that runs the builtin file tools
    container_python: str = "python3"

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.strategy == "container" and not self.container_image:
            raise ValueError(
                "SANDBOX_CONTAINER_IMAGE is required when SANDBOX_STRATEGY is 'container'"
            )
        return self


class ServerConfig(BaseModel):
    """One external tool provider."""

    server_id: str
    transport: Literal["stdio", "websocket"] = "stdio"
    command: list[str] = Field(default_factory=list)
    url: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    cwd: Path | None = None
    handshake_timeout_s: float = Field(10.0, gt=0)
    call_timeout_s: float = Field(60.0, gt=0)

    @field_validator("server_id")
    @classmethod
    def _validate_server_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("server_id must be a non-empty string")
        return v

    @model_validator(mode="after")
    def _validate_transport(self) -> Self:
        if self.transport == "stdio" and not self.command:
            raise ValueError(f"Provider '{self.server_id}': stdio transport requires command")
        if self.transport == "websocket" and not self.url:
            raise ValueError(f"Provider '{self.server_id}': websocket transport requires url")
        return self


class ProviderSettings(BaseSettings):
    """External provider settings. Env vars prefixed with PROVIDERS_.

    servers may be given inline as JSON (PROVIDERS_SERVERS) or loaded from
    PROVIDERS_CONFIG_FILE, a JSON file holding {"servers": [...]}.
    """

    model_config = SettingsConfigDict(env_prefix="PROVIDERS_")

    servers: list[ServerConfig] = Field(default_factory=list)
    config_file: Path | None = None
    collision_policy: Literal["reject", "prefix"] = "reject"

    @model_validator(mode="after")
    def _load_config_file(self) -> Self:
        if self.config_file is not None:
            data = json.loads(self.config_file.read_text(encoding="utf-8"))
            self.servers = [
                *self.servers,
                *(ServerConfig.model_validate(s) for s in data.get("servers", [])),
            ]
        ids = [s.server_id for s in self.servers]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise ValueError(f"Duplicate provider server_id(s): {dupes}")
        return self


class LogSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOG_")

    json_output: bool = Field(False, validation_alias="LOG_JSON")
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v = v.upper()
        if v not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(allowed)} (got '{v}')")
        return v


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    approval: ApprovalSettings = Field(default_factory=ApprovalSettings)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    log: LogSettings = Field(default_factory=LogSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on missing required fields."""
    return Settings()
