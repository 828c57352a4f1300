"""Console surface: delivers agent output to the terminal."""

from __future__ import annotations

from remote_agent.cli.display import print_agent_message
from remote_agent.core.streaming import StreamingMode


class ConsoleSurface:
    """Surface used by the operator CLI; prints every message it is given."""

    def __init__(self, platform_type: str = "cli", mode: StreamingMode = StreamingMode.STREAM) -> None:
        self.platform_type = platform_type
        self._mode = mode
        self.sent: list[tuple[str, str]] = []

    def get_streaming_mode(self, conversation_id: str) -> StreamingMode:
        return self._mode

    async def send_message(self, conversation_id: str, message: str) -> None:
        self.sent.append((conversation_id, message))
        print_agent_message(conversation_id, message)
