"""Typed events yielded by an agent backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class AssistantText:
    """A block of prose the agent wrote for the user."""

    text: str


@dataclass(frozen=True)
class ToolCall:
    """The agent invoked a tool."""

    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Result:
    """Terminal event; carries the token that resumes this dialogue."""

    resume_token: str | None
    text: str = ""
    cost_usd: float = 0.0
    num_turns: int = 0


AgentEvent = Union[AssistantText, ToolCall, Result]
