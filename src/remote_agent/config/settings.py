"""Pydantic Settings models for remote-agent configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageSettings(BaseModel):
    """Durable state location."""

    db_path: Path = Field(default_factory=lambda: Path.home() / ".remote-agent" / "state.db")


class WorkspaceSettings(BaseModel):
    """Where canonical clones and worktrees live on disk."""

    path: Path = Path("/workspace")
    worktree_base: Path | None = None

    @field_validator("worktree_base", mode="before")
    @classmethod
    def expand_worktree_base(cls, v: object) -> Path | None:
        if v is None or str(v).strip() == "":
            return None
        return Path(v).expanduser()


class AgentSettings(BaseModel):
    """Agent backend (``claude -p``) configuration."""

    claude_executable: str = "claude"
    model: str | None = None
    permission_mode: str = "bypassPermissions"
    timeout: int = 1800


class GitSettings(BaseModel):
    """Timeouts applied to every git invocation."""

    timeout: int = 30


class GitHubSettings(BaseModel):
    """``gh`` CLI used to query the linked-issues relation."""

    gh_executable: str = "gh"
    timeout: int = 10


class DeliverySettings(BaseModel):
    """Surface delivery behaviour."""

    retry_attempts: int = 3
    retry_delay: float = 1.0
    bot_display_name: str = "The agent"

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retry_attempts must be >= 1")
        return v


DEFAULT_PHASE_TRANSITIONS: dict[str, list[str]] = {
    "execute": ["plan", "plan-feature"],
    "execute-github": ["plan-feature-github"],
}


class SessionSettings(BaseModel):
    """Session continuity rules."""

    phase_transitions: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_PHASE_TRANSITIONS.items()}
    )
    history_limit: int = 50


LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]


class RemoteAgentSettings(BaseSettings):
    """Root settings with layered config: defaults -> file -> env -> CLI."""

    model_config = SettingsConfigDict(
        env_prefix="REMOTE_AGENT_",
        env_nested_delimiter="__",
    )

    storage: StorageSettings = Field(default_factory=StorageSettings)
    workspace: WorkspaceSettings = Field(default_factory=WorkspaceSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    git: GitSettings = Field(default_factory=GitSettings)
    github: GitHubSettings = Field(default_factory=GitHubSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    log_level: LogLevel = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        normalized = str(v).strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("log_level must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG")
        return normalized
