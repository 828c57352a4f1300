"""Pydantic models for state DB rows."""

from __future__ import annotations

import json

from pydantic import BaseModel, Field, field_validator


class CommandDefinition(BaseModel):
    """A named command template file inside a codebase."""

    path: str
    description: str = ""


class CodebaseRecord(BaseModel):
    """Represents a row in the codebases table."""

    id: str
    name: str
    repository_url: str | None = None
    default_cwd: str
    commands: dict[str, CommandDefinition] = Field(default_factory=dict)
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: dict) -> "CodebaseRecord":
        data = dict(row)
        data["commands"] = json.loads(data.pop("commands_json", None) or "{}")
        return cls(**data)


class ConversationRecord(BaseModel):
    """Represents a row in the conversations table."""

    id: str
    platform_type: str
    platform_conversation_id: str
    codebase_id: str | None = None
    cwd: str | None = None
    worktree_path: str | None = None
    created_at: str
    updated_at: str


class ResumeRequest(BaseModel):
    """History digest to prepend to the next prompt exactly once."""

    count: int
    digest: str


class SessionMetadata(BaseModel):
    """The closed set of signals a session remembers between requests."""

    last_command: str | None = None
    resume_requested: ResumeRequest | None = None


class SessionRecord(BaseModel):
    """Represents a row in the sessions table."""

    id: str
    conversation_id: str
    codebase_id: str | None = None
    resume_token: str | None = None
    active: bool = True
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    started_at: str
    ended_at: str | None = None

    @field_validator("active", mode="before")
    @classmethod
    def coerce_active(cls, v: object) -> bool:
        return bool(v)

    @classmethod
    def from_row(cls, row: dict) -> "SessionRecord":
        data = dict(row)
        data["metadata"] = SessionMetadata.model_validate_json(
            data.pop("metadata_json", None) or "{}"
        )
        return cls(**data)


class CommandTemplateRecord(BaseModel):
    """Represents a row in the command_templates table."""

    id: str
    name: str
    description: str = ""
    content: str
    created_at: str
    updated_at: str


class MessageRecord(BaseModel):
    """Represents a row in the messages table."""

    id: int | None = None
    conversation_id: str
    sender: str
    content: str
    created_at: str
