"""Agent backend abstraction."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from remote_agent.agents.events import AgentEvent


@runtime_checkable
class AgentBackend(Protocol):
    """Protocol for agent execution backends."""

    def send_query(
        self, prompt: str, cwd: str, resume_token: str | None = None
    ) -> AsyncIterator[AgentEvent]:
        """Run one prompt and yield the agent's events in emission order.

        Args:
            prompt: The full prompt, including any prepended context.
            cwd: Working directory the agent operates in.
            resume_token: Token from a previous ``Result`` to continue that dialogue.

        Raises:
            AgentBackendError: If the backend fails before producing a result.
        """
        ...
